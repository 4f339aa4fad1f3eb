"""
Panel 503 — Emulation Server
=============================

Owns the ground-truth machine state and serves it to panels.

Threads:
  accept loop      one, PanelServer.serve_forever()
  session          one receive-dispatch thread per panel connection
  session sender   one drain thread per connection (MessageSender.post)
  processor        one background tick loop advancing the A register

Every thread that touches ServerState does so under ``state.lock``, one
message or one increment batch at a time. A shared stop event is the
"keep running" flag; blocked reads notice it when their timeout expires.

Message codes handled from panels:
  STAT          status request -> full snapshot ending in ESTAT
  POWER <bool>  power on/off (resets toggles, snaps lamps)
  NOPRO/MANL/PLTMN <bool>   toggle buttons
  CLEAR         zero the A register
  RESET         self-expiring reset lamp (RESET_COUNTDOWN status polls)
  INIT          initial instructions (logged)
  SHUT / KILL   end this connection
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional, Tuple

from .clock import EmulationClock
from .config import (
    A_REG_BITS, A_REG_BOOT_VALUE, A_REG_POWER_SEED, POWER_SETTLE_TICKS,
    RESET_COUNTDOWN, TIMER_PERIOD, ServerConfig,
)
from .frame import Frame, FrameError
from .payload import PayloadError, decode_bool, encode_bool, encode_glow, encode_glow_vector
from .register import FlipFlop, Register32
from .transport import (
    IOFault, MessageListener, MessageSocket, classify_fault, identify,
)

log = logging.getLogger("panel503.server")

Message = Tuple[str, bytes]

# toggle message code -> ServerState attribute
TOGGLES = {
    "NOPRO": "no_protn",
    "MANL": "manual_state",
    "PLTMN": "plotter_manual",
}

# single-lamp message code -> ServerState attribute
LAMPS = {
    "XFER": "transfer_glow",
    "AC": "air_cond_glow",
    "ERROR": "error_glow",
    "TAG": "tag_glow",
    "THOLD": "type_hold_glow",
    "BSPAR": "bs_parity_glow",
}


# ═══════════════════════════════════════════════════════════════════════
# SHARED STATE
# ═══════════════════════════════════════════════════════════════════════

class ServerState:
    """
    Emulated machine state shared by all sessions and the processor.

    Methods below assume the caller holds ``lock``.
    """

    def __init__(self, clock: Optional[EmulationClock] = None):
        self.lock = threading.Lock()
        self.clock = clock or EmulationClock(0.0)
        self.reset_countdown = 0

        # push-push (toggle) button states
        self.power_on = False
        self.no_protn = False
        self.plotter_manual = False
        self.manual_state = False
        self.reset_state = False

        # lamps with no backing register yet
        self.transfer_glow = 0.0
        self.air_cond_glow = 0.0
        self.error_glow = 0.0
        self.tag_glow = 0.0
        self.type_hold_glow = 0.0
        self.bs_parity_glow = 0.0

        self.busy_ff = FlipFlop(self.clock)
        self.a_reg = Register32(A_REG_BITS, self.clock)
        self.a_reg.set(A_REG_BOOT_VALUE)

    def change_power(self, on: bool) -> bool:
        """Apply a power transition. Returns False if ``on`` is the current state."""
        if on == self.power_on:
            return False

        self.power_on = on
        self.manual_state = False
        self.plotter_manual = False
        self.no_protn = False
        self.reset_state = False
        self.reset_countdown = 0
        for attr in LAMPS.values():
            setattr(self, attr, 0.0)
        self.busy_ff.set(False)
        if on:
            self.a_reg.add(A_REG_POWER_SEED)
        else:
            self.a_reg.set(0)

        # long jump so the next glow update doesn't see a near-zero elapsed time
        self.clock.advance(POWER_SETTLE_TICKS)
        self.a_reg.update_glow(1.0)
        self.busy_ff.update_glow(1.0)
        return True

    def set_toggle(self, code: str, on: bool):
        setattr(self, TOGGLES[code], on)

    def arm_reset(self, polls: int = RESET_COUNTDOWN):
        self.reset_state = True
        self.reset_countdown = polls

    def count_status_poll(self):
        if self.reset_countdown > 0:
            self.reset_countdown -= 1
            if self.reset_countdown == 0:
                self.reset_state = False

    def request_status(self) -> List[Message]:
        """One STAT poll: tick the reset countdown, then snapshot."""
        self.count_status_poll()
        return self.snapshot()

    def clear(self):
        self.a_reg.set(0)

    def step(self, count: int, period: float = TIMER_PERIOD):
        """Run ``count`` processor increments."""
        a_reg, busy, clock = self.a_reg, self.busy_ff, self.clock
        for _ in range(count):
            previous = a_reg.read()
            a_reg.add(1)
            busy.set(previous & 1 == 0)
            clock.advance(period)

    def snapshot(self) -> List[Message]:
        """Full status push: toggles, lamps, A register, then ESTAT."""
        msgs: List[Message] = [
            ("POWER", encode_bool(self.power_on)),
            ("NOPRO", encode_bool(self.no_protn)),
            ("MANL", encode_bool(self.manual_state)),
            ("RESET", encode_bool(self.reset_state)),
            ("PLTMN", encode_bool(self.plotter_manual)),
        ]
        msgs.extend((code, encode_glow(getattr(self, attr))) for code, attr in LAMPS.items())
        msgs.append(("BUSY", encode_glow(self.busy_ff.read_glow())))
        msgs.append(("A", encode_glow_vector(self.a_reg.read_glow())))
        msgs.append(("ESTAT", b""))
        return msgs


# ═══════════════════════════════════════════════════════════════════════
# PER-CONNECTION DISPATCH
# ═══════════════════════════════════════════════════════════════════════

class ServerSession:
    """Receive-dispatch loop for one panel connection."""

    def __init__(self, state: ServerState, sender, receiver,
                 stop_event: Optional[threading.Event] = None, peer: str = "?"):
        self.state = state
        self.sender = sender
        self.receiver = receiver
        self.stop_event = stop_event or threading.Event()
        self.peer = peer
        self.running = True
        self.stats = {
            'frames_rx': 0,
            'status_polls': 0,
            'power_changes': 0,
            'timeouts': 0,
            'unknown_codes': 0,
        }
        self._handlers = {
            "STAT": self._handle_status,
            "POWER": self._handle_power,
            "NOPRO": self._handle_toggle,
            "MANL": self._handle_toggle,
            "PLTMN": self._handle_toggle,
            "CLEAR": self._handle_clear,
            "RESET": self._handle_reset,
            "INIT": self._handle_init,
            "SHUT": self._handle_shutdown,
            "KILL": self._handle_shutdown,
            "IAM": self._handle_iam,
        }

    def run(self):
        """
        Dispatch frames until SHUT/KILL, peer EOF, a failed send path, or
        server stop.

        Fatal faults (corrupt frame, bad payload, socket error) propagate
        to the caller, which tears down just this connection.
        """
        while self.running:
            try:
                frame = self.receiver.receive()
            except (OSError, FrameError) as e:
                fault = classify_fault(e)
                if fault is IOFault.TRANSIENT:
                    self.stats['timeouts'] += 1
                    log.debug("%s: read timeout", self.peer)
                elif fault is IOFault.CLOSED:
                    log.info("%s: connection closed by peer", self.peer)
                    self.running = False
                else:
                    raise
            else:
                self.dispatch(frame)

            if self.running and not self.sender.alive:
                log.info("%s: send path failed (%s), ending session", self.peer, self.sender.error)
                self.running = False

            if self.running and self.stop_event.is_set():
                self.running = False
                self.sender.post("KILL")

    def dispatch(self, frame: Frame):
        self.stats['frames_rx'] += 1
        handler = self._handlers.get(frame.code)
        if handler is None:
            self.stats['unknown_codes'] += 1
            log.warning("%s: unrecognized message code %r", self.peer, frame.code)
            return
        handler(frame)

    def _post_all(self, msgs: List[Message]):
        for code, payload in msgs:
            self.sender.post(code, payload)

    # ── handlers ──

    def _handle_status(self, frame: Frame):
        state = self.state
        with state.lock:
            msgs = state.request_status()
        self.stats['status_polls'] += 1
        self._post_all(msgs)

    def _handle_power(self, frame: Frame):
        on = decode_bool(frame.payload)
        log.info("%s: POWER %s", self.peer, "on" if on else "off")
        state = self.state
        with state.lock:
            changed = state.change_power(on)
            msgs = state.snapshot() if changed else []
        if changed:
            self.stats['power_changes'] += 1
            self._post_all(msgs)

    def _handle_toggle(self, frame: Frame):
        on = decode_bool(frame.payload)
        log.info("%s: %s %s", self.peer, frame.code, on)
        with self.state.lock:
            self.state.set_toggle(frame.code, on)

    def _handle_clear(self, frame: Frame):
        log.info("%s: CLEAR", self.peer)
        with self.state.lock:
            self.state.clear()

    def _handle_reset(self, frame: Frame):
        log.info("%s: RESET", self.peer)
        with self.state.lock:
            self.state.arm_reset()

    def _handle_init(self, frame: Frame):
        log.info("%s: INIT from %s", self.peer, frame.sender or self.peer)

    def _handle_shutdown(self, frame: Frame):
        log.info("%s: %s from %s", self.peer, frame.code, frame.sender or self.peer)
        self.running = False

    def _handle_iam(self, frame: Frame):
        log.debug("%s: late IAM ignored", self.peer)

    def dump_stats(self) -> str:
        lines = [f"=== Session {self.peer} ==="]
        for k, v in self.stats.items():
            lines.append(f"  {k}: {v}")
        return "\n".join(lines)


# ═══════════════════════════════════════════════════════════════════════
# PROCESSOR TICK LOOP
# ═══════════════════════════════════════════════════════════════════════

class Processor:
    """Background loop counting the A register up while power is on."""

    def __init__(self, state: ServerState, stop_event: threading.Event,
                 batch: int, tick_sleep: float, idle_sleep: float):
        self.state = state
        self.stop_event = stop_event
        self.batch = batch
        self.tick_sleep = tick_sleep
        self.idle_sleep = idle_sleep
        self.batches = 0
        self._thread: Optional[threading.Thread] = None

    def run(self):
        state = self.state
        while not self.stop_event.is_set():
            with state.lock:
                powered = state.power_on
                if powered:
                    state.step(self.batch)
            if powered:
                self.batches += 1
            self.stop_event.wait(self.tick_sleep if powered else self.idle_sleep)
        log.info("Processor stopped after %d batches", self.batches)

    def start(self):
        self._thread = threading.Thread(target=self.run, name="processor", daemon=True)
        self._thread.start()

    def join(self, timeout: Optional[float] = None):
        if self._thread is not None:
            self._thread.join(timeout)


# ═══════════════════════════════════════════════════════════════════════
# TCP SERVER
# ═══════════════════════════════════════════════════════════════════════

class PanelServer:
    """Accepts panel connections and runs a session thread for each."""

    def __init__(self, config: Optional[ServerConfig] = None,
                 state: Optional[ServerState] = None):
        self.config = config or ServerConfig()
        self.state = state or ServerState()
        self.stop_event = threading.Event()
        self.processor = Processor(self.state, self.stop_event, self.config.tick_batch,
                                   self.config.tick_sleep, self.config.idle_sleep)
        self.listener: Optional[MessageListener] = None
        self._sessions: Dict[int, ServerSession] = {}
        self._sessions_lock = threading.Lock()
        self._conn_threads: List[threading.Thread] = []
        self._accepted = 0
        self._serve_thread: Optional[threading.Thread] = None

    def bind(self) -> "PanelServer":
        cfg = self.config
        if self.listener is None:
            self.listener = MessageListener.bind(
                (cfg.host, cfg.port), cfg.server_id, cfg.extended_frames, cfg.read_timeout)
        return self

    @property
    def addr(self) -> Optional[Tuple[str, int]]:
        """Bound address, or None before bind()."""
        if self.listener is None:
            return None
        return self.listener.addr

    @property
    def session_count(self) -> int:
        with self._sessions_lock:
            return len(self._sessions)

    @property
    def thread_count(self) -> int:
        """Connection threads still running."""
        with self._sessions_lock:
            return len(self._conn_threads)

    def serve_forever(self):
        """Accept connections until shutdown() (or the stop event) is set."""
        self.bind()
        self.processor.start()
        try:
            while not self.stop_event.is_set():
                try:
                    msock = self.listener.accept(self.config.accept_timeout)
                except OSError:
                    if self.stop_event.is_set():
                        break
                    raise
                if msock is None:
                    continue
                self._accepted += 1
                t = threading.Thread(target=self._handle_connection, args=(msock,),
                                     name=f"session-{self._accepted}", daemon=True)
                with self._sessions_lock:
                    self._conn_threads.append(t)
                t.start()
        finally:
            self.stop_event.set()
            self.listener.close()
            self.processor.join(self.config.idle_sleep + 1.0)
            with self._sessions_lock:
                threads = list(self._conn_threads)
            for t in threads:
                t.join(self.config.read_timeout + 1.0)
            log.info("Server stopped")

    def start(self) -> "PanelServer":
        """Run serve_forever() on a background thread."""
        self.bind()
        self._serve_thread = threading.Thread(target=self.serve_forever, name="accept", daemon=True)
        self._serve_thread.start()
        return self

    def shutdown(self, timeout: Optional[float] = None):
        self.stop_event.set()
        if self._serve_thread is not None:
            self._serve_thread.join(timeout)

    def _handle_connection(self, msock: MessageSocket):
        try:
            self._serve_connection(msock)
        finally:
            with self._sessions_lock:
                self._conn_threads.remove(threading.current_thread())

    def _serve_connection(self, msock: MessageSocket):
        cfg = self.config
        try:
            peer = "%s:%s" % msock.peer_addr
        except (OSError, TypeError):
            peer = "?"

        if cfg.identify:
            peer_id = identify(msock, cfg.identify_timeout)
            if peer_id is None:
                log.info("%s: no identification, dropping connection", peer)
                msock.close()
                return
            peer = f"{peer_id}@{peer}"

        sender = msock.sender().start(name=f"sender-{peer}")
        session = ServerSession(self.state, sender, msock.receiver(), self.stop_event, peer)
        key = id(session)
        with self._sessions_lock:
            self._sessions[key] = session
        try:
            session.run()
        except (OSError, FrameError, PayloadError) as e:
            log.error("%s: session aborted: %s", peer, e)
        finally:
            with self._sessions_lock:
                del self._sessions[key]
            msock.close()
            log.info("%s: disconnected\n%s", peer, session.dump_stats())
