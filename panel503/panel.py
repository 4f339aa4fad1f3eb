"""
Panel 503 — Panel Client (status mirror)

The panel side of the protocol without any drawing. A render layer:
  - calls click(<button>) when the operator presses something,
  - calls poll(now) once per frame with its own clock,
  - reads snapshot() to get the lamp glows and toggle states to draw.

Only the receive thread writes PanelState; the render layer only reads it
through snapshot(). Losing the connection shows up as connected=False.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import List, Optional, Tuple

from .config import PanelConfig
from .frame import Frame, FrameError
from .payload import PayloadError, decode_bool, decode_glow, decode_glow_vector, encode_bool
from .transport import IOFault, MessageSocket, classify_fault

log = logging.getLogger("panel503.panel")


class Event(Enum):
    SHUT_DOWN = "SHUT"
    REQUEST_STATUS = "STAT"
    POWER_CHANGE = "POWER"
    INITIAL_INSTRUCTIONS = "INIT"
    NO_PROTECTION = "NOPRO"
    CLEAR = "CLEAR"
    MANUAL = "MANL"
    RESET = "RESET"
    PLOTTER_MANUAL = "PLTMN"


BOOL_EVENTS = {Event.POWER_CHANGE, Event.NO_PROTECTION, Event.MANUAL, Event.PLOTTER_MANUAL}


def encode_event(event: Event, arg: Optional[bool] = None) -> Tuple[str, bytes]:
    """Message code and payload for a panel event."""
    if event in BOOL_EVENTS:
        if arg is None:
            raise ValueError(f"{event.name} needs an on/off argument")
        return event.value, encode_bool(arg)
    return event.value, b""


# status code -> PanelState attribute, by payload type
BOOL_FIELDS = {
    "POWER": "power_on",
    "NOPRO": "no_protn",
    "MANL": "manual_state",
    "PLTMN": "plotter_manual",
    "RESET": "reset_state",
}
GLOW_FIELDS = {
    "BUSY": "busy_glow",
    "XFER": "transfer_glow",
    "AC": "air_cond_glow",
    "ERROR": "error_glow",
    "TAG": "tag_glow",
    "THOLD": "type_hold_glow",
    "BSPAR": "bs_parity_glow",
}


@dataclass
class PanelState:
    """Local mirror of the server's lamps and toggles."""
    next_status_clock: float = 0.0
    status_request_count: int = 0
    connected: bool = False
    # push-push (toggle) button states
    power_on: bool = False
    no_protn: bool = False
    plotter_manual: bool = False
    manual_state: bool = False
    reset_state: bool = False
    # lamp intensities
    busy_glow: float = 0.0
    transfer_glow: float = 0.0
    air_cond_glow: float = 0.0
    error_glow: float = 0.0
    tag_glow: float = 0.0
    type_hold_glow: float = 0.0
    bs_parity_glow: float = 0.0
    a_glow: List[float] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def snapshot(self) -> dict:
        """Thread-safe copy for the render layer."""
        with self.lock:
            snap = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "lock"}
            snap["a_glow"] = list(self.a_glow)
        return snap


class PanelClient:
    """Connection to the server plus the operator-intent translation."""

    BUTTONS = ("off", "on", "init", "noprot", "clear", "manual", "reset", "plotter")

    def __init__(self, config: Optional[PanelConfig] = None, state: Optional[PanelState] = None):
        self.config = config or PanelConfig()
        self.state = state or PanelState()
        self.msock: Optional[MessageSocket] = None
        self.sender = None
        self.error: Optional[BaseException] = None
        self._running = False
        self._rx_thread: Optional[threading.Thread] = None
        self._status_done = threading.Event()
        self.disconnected = threading.Event()

    # ── connection ──

    def connect(self) -> "PanelClient":
        cfg = self.config
        self.msock = MessageSocket.connect((cfg.host, cfg.port), cfg.panel_id,
                                           cfg.extended_frames, cfg.read_timeout)
        self.attach(self.msock)
        return self

    def attach(self, msock: MessageSocket):
        """Start the send and receive threads on an open connection."""
        self.msock = msock
        self.sender = msock.sender().start(name="panel-sender")
        with self.state.lock:
            self.state.connected = True
        self.disconnected.clear()
        self._running = True
        self._rx_thread = threading.Thread(target=self._receive_loop, name="panel-receiver",
                                           daemon=True)
        self._rx_thread.start()
        self.submit(Event.REQUEST_STATUS)   # initial server status

    def close(self, timeout: float = 2.0):
        """Send SHUT and tear the connection down."""
        if self.msock is None:
            return
        if self.connected:
            self.submit(Event.SHUT_DOWN)
        self._running = False
        self.sender.close()
        if self._rx_thread is not None:
            self._rx_thread.join(timeout)
        self.msock.close()
        self.msock = None
        with self.state.lock:
            self.state.connected = False
        self.disconnected.set()

    @property
    def connected(self) -> bool:
        with self.state.lock:
            return self.state.connected

    # ── outbound ──

    def submit(self, event: Event, arg: Optional[bool] = None):
        """Queue one event for the server."""
        code, payload = encode_event(event, arg)
        if event is Event.REQUEST_STATUS:
            with self.state.lock:
                self.state.status_request_count += 1
        self.sender.post(code, payload)

    def request_status(self, timeout: float = 2.0) -> bool:
        """Ask for a snapshot and wait until its ESTAT arrives."""
        self._status_done.clear()
        self.submit(Event.REQUEST_STATUS)
        return self._status_done.wait(timeout)

    def click(self, button: str, now: Optional[float] = None) -> bool:
        """
        Translate a button press into events, the way the panel gates them:
        power buttons only act on a change, everything else needs power.
        Returns True if anything was sent.
        """
        if button not in self.BUTTONS:
            raise ValueError(f"unknown button {button!r}")
        s = self.state
        with s.lock:
            power_on = s.power_on
            no_protn, manual, plotter = s.no_protn, s.manual_state, s.plotter_manual

        if button == "off":
            if not power_on:
                return False
            self.submit(Event.POWER_CHANGE, False)
            return True
        if button == "on":
            if power_on:
                return False
            self.submit(Event.POWER_CHANGE, True)
            with s.lock:
                s.status_request_count = 0
                if now is not None:
                    s.next_status_clock = now
            self.submit(Event.REQUEST_STATUS)   # bootstrap the status mechanism
            return True
        if not power_on:
            return False

        if button == "init":
            self.submit(Event.INITIAL_INSTRUCTIONS)
        elif button == "noprot":
            self.submit(Event.NO_PROTECTION, not no_protn)
        elif button == "clear":
            self.submit(Event.CLEAR)
        elif button == "manual":
            self.submit(Event.MANUAL, not manual)
        elif button == "reset":
            self.submit(Event.RESET)
        elif button == "plotter":
            self.submit(Event.PLOTTER_MANUAL, not plotter)
        return True

    def poll(self, now: float) -> bool:
        """Request status if powered, due, and not too many requests are pending."""
        s = self.state
        with s.lock:
            due = (s.connected and s.power_on and s.next_status_clock < now
                   and s.status_request_count <= self.config.max_outstanding_status)
            if due:
                s.next_status_clock = now + self.config.status_period
        if due:
            self.submit(Event.REQUEST_STATUS)
        return due

    # ── inbound ──

    def _receive_loop(self):
        receiver = self.msock.receiver()
        try:
            while self._running:
                if not self.sender.alive:
                    self.error = self.sender.error
                    log.error("Send to server failed: %s", self.error)
                    break
                try:
                    frame = receiver.receive()
                except (OSError, FrameError) as e:
                    fault = classify_fault(e)
                    if fault is IOFault.TRANSIENT:
                        log.debug("Receive timeout")
                        continue
                    if fault is IOFault.CLOSED:
                        log.info("Server closed the connection")
                    else:
                        self.error = e
                        log.error("Receive failed: %s", e)
                    break
                try:
                    self.apply(frame)
                except PayloadError as e:
                    self.error = e
                    log.error("Bad %s payload from server: %s", frame.code, e)
                    break
        finally:
            self._running = False
            with self.state.lock:
                self.state.connected = False
            self._status_done.set()
            self.disconnected.set()

    def apply(self, frame: Frame):
        """Apply one server message to the mirror (receive thread only)."""
        code, s = frame.code, self.state
        if code in GLOW_FIELDS:
            value = decode_glow(frame.payload)
            with s.lock:
                setattr(s, GLOW_FIELDS[code], value)
        elif code in BOOL_FIELDS:
            value = decode_bool(frame.payload)
            with s.lock:
                setattr(s, BOOL_FIELDS[code], value)
        elif code == "A":
            glow = decode_glow_vector(frame.payload)
            with s.lock:
                s.a_glow[:] = glow
        elif code == "ESTAT":
            with s.lock:
                if s.status_request_count > 0:
                    s.status_request_count -= 1
            self._status_done.set()
        elif code == "WRU":
            self.sender.post("IAM", self.config.panel_id.encode("utf-8"))
            with s.lock:
                s.status_request_count = 0
            self.submit(Event.REQUEST_STATUS)
        elif code in ("SHUT", "KILL"):
            log.info("Received %s from server", code)
            self._running = False
        else:
            log.warning("Unrecognized message code %r", code)
