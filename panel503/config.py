"""
Panel 503 — Protocol / Timing Configuration
============================================

Constants shared by the server, the panel client and the CLI.

Virtual-time values are in emulated seconds and never derived from the
wall clock. Wall-clock values (timeouts, sleep periods) are real seconds.
"""

from __future__ import annotations

from dataclasses import dataclass

# =============================================================================
#  NETWORK
# =============================================================================
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 5030
SERVER_ID = "MF"              # sender id the server puts in extended frames
PANEL_ID = "PANEL"

ACCEPT_TIMEOUT = 1.0          # accept() wake-up so the stop flag is observed
READ_TIMEOUT = 5.0            # bounded socket reads; an idle peer is a timeout, not a hang
IDENTIFY_TIMEOUT = 2.0        # WRU -> IAM reply window


# =============================================================================
#  VIRTUAL TIME / LAMP MODEL
# =============================================================================
CLOCK_PERIOD = 0.30e-6        # one emulated clock period
LAMP_PERSISTENCE = 1.0 / 30.0 # glow time constant
TIMER_PERIOD = 7.2e-6         # emulated time per processor increment
POWER_SETTLE_TICKS = 1e6      # clock jump on a power transition

TICK_BATCH = 500              # increments per processor wake-up
TICK_SLEEP = 0.007            # wall-clock sleep between batches while powered
IDLE_SLEEP = 2.0              # wall-clock sleep while powered off


# =============================================================================
#  EMULATED MACHINE
# =============================================================================
A_REG_BITS = 30
A_REG_BOOT_VALUE = 1234567    # value loaded at server start
A_REG_POWER_SEED = 7654321    # added to A on power-on
RESET_COUNTDOWN = 15          # STAT polls before reset_state clears itself


# =============================================================================
#  PANEL POLLING
# =============================================================================
STATUS_PERIOD = 1.0 / 20.0    # panel STAT request interval (render clock)
MAX_OUTSTANDING_STATUS = 2


@dataclass
class ServerConfig:
    """Settings for one PanelServer instance."""
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    server_id: str = SERVER_ID
    extended_frames: bool = True
    identify: bool = True
    accept_timeout: float = ACCEPT_TIMEOUT
    read_timeout: float = READ_TIMEOUT
    identify_timeout: float = IDENTIFY_TIMEOUT
    tick_batch: int = TICK_BATCH
    tick_sleep: float = TICK_SLEEP
    idle_sleep: float = IDLE_SLEEP


@dataclass
class PanelConfig:
    """Settings for one PanelClient connection."""
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    panel_id: str = PANEL_ID
    extended_frames: bool = True
    read_timeout: float = READ_TIMEOUT
    status_period: float = STATUS_PERIOD
    max_outstanding_status: int = MAX_OUTSTANDING_STATUS
