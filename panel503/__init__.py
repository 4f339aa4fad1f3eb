"""
Panel 503 — Front-Panel Emulation Substrate
============================================
Server/panel plumbing for emulating a vintage computer's operator console:
the server owns the machine state and counts the A register up while power
is on; panels connect over TCP, press buttons, and mirror the lamps.

Architecture:
    ┌─────────────┐  POWER/NOPRO/…   ┌──────────────┐  lock  ┌─────────────┐
    │ PanelClient │ ───────────────> │ ServerSession│ ─────> │ ServerState │
    │ (mirror)    │ <─────────────── │ (per panel)  │        │ A reg, lamps│
    └─────────────┘  STAT snapshot   └──────────────┘        └─────────────┘
                         ↑ frames ↓                                 ↑
                    ┌─────────────────┐                       ┌───────────┐
                    │  MessageSocket  │                       │ Processor │
                    │ frame + payload │                       │ tick loop │
                    └─────────────────┘                       └───────────┘

    - clock.py:     virtual-time counter, never the wall clock
    - register.py:  fixed-width registers whose bits drive lamp glow
    - payload.py:   bool / f32 / f32-vector payload layouts
    - frame.py:     minimal + extended frame encode, incremental decoder
    - transport.py: TCP listener/socket, sender thread, WRU/IAM handshake
    - server.py:    shared state, per-connection dispatch, tick loop
    - panel.py:     headless panel client mirroring server state
"""

__version__ = "0.1.0"

from .clock import EmulationClock, EmulationTick
from .config import PanelConfig, ServerConfig
from .frame import (
    Frame, FrameDecoder, FrameEndError, FrameError,
    decode_frame, encode_extended_frame, encode_frame,
)
from .payload import PayloadError
from .register import FlipFlop, Register, Register16, Register32, Register64
from .transport import (
    IOFault, MessageListener, MessageReceiver, MessageSender, MessageSocket,
    PeerClosedError, classify_fault, identify,
)
from .server import PanelServer, Processor, ServerSession, ServerState
from .panel import Event, PanelClient, PanelState, encode_event
