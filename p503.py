#!/usr/bin/env python3
"""
p503 — Panel 503 Server / Panel Toolkit
========================================

    p503 serve    — Run the emulation server (TCP)
    p503 monitor  — Headless panel: mirror the lamps in a live table
    p503 send     — Send one panel event and exit

Usage:
    python p503.py <command> [options]
    python p503.py <command> --help

Examples:
    python p503.py serve --port 5030 -v
    python p503.py serve --no-identify --minimal-frames
    python p503.py monitor --power-on --seconds 10
    python p503.py send POWER off
    python p503.py send RESET
"""

import argparse
import logging
import signal
import sys
import time
from pathlib import Path

from rich.console import Console
from rich.live import Live
from rich.table import Table

from panel503 import __version__
from panel503.config import DEFAULT_HOST, DEFAULT_PORT, PanelConfig, ServerConfig
from panel503.log_setup import setup_logging
from panel503.panel import BOOL_EVENTS, Event, PanelClient
from panel503.server import PanelServer

console = Console()


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="p503",
        description="Panel 503 — front-panel emulation server and headless panel",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""commands:
  serve      Run the emulation server
  monitor    Connect as a panel and show the mirrored lamps
  send       Send a single panel event (POWER on, RESET, ...)
""",
    )
    parser.add_argument("--version", action="version", version=f"p503 {__version__}")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Enable verbose debug logging on the console")
    parser.add_argument("--log-dir", type=Path, default=None,
                        help="Directory for per-run log files (default: ./logs)")
    sub = parser.add_subparsers(dest="command", metavar="command")

    # ── serve ────────────────────────────────────────────────────────────
    p_srv = sub.add_parser("serve", help="Run the emulation server")
    _add_endpoint(p_srv)
    p_srv.add_argument("--no-identify", action="store_true",
                       help="Skip the WRU/IAM handshake on new connections")
    p_srv.add_argument("--minimal-frames", action="store_true",
                       help="Use minimal frames (no sender id / frame length)")

    # ── monitor ──────────────────────────────────────────────────────────
    p_mon = sub.add_parser("monitor", help="Mirror the panel lamps in a live table")
    _add_endpoint(p_mon)
    p_mon.add_argument("--minimal-frames", action="store_true",
                       help="Use minimal frames (must match the server)")
    p_mon.add_argument("--power-on", action="store_true", help="Press POWER ON after connecting")
    p_mon.add_argument("--seconds", type=float, default=0.0,
                       help="Stop after this many seconds (default: run until Ctrl-C)")

    # ── send ─────────────────────────────────────────────────────────────
    p_snd = sub.add_parser("send", help="Send one panel event")
    _add_endpoint(p_snd)
    p_snd.add_argument("--minimal-frames", action="store_true",
                       help="Use minimal frames (must match the server)")
    p_snd.add_argument("code", type=str.upper, choices=[e.value for e in Event],
                       help="Message code")
    p_snd.add_argument("state", nargs="?", choices=["on", "off"],
                       help="Switch state for POWER/NOPRO/MANL/PLTMN")

    # ── Parse and dispatch ───────────────────────────────────────────────
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    console_level = logging.DEBUG if args.verbose else logging.WARNING
    setup_logging(name="panel503", console_level=console_level, log_dir=args.log_dir)

    try:
        return COMMANDS[args.command](args)
    except OSError as e:
        console.print(f"[red]Error:[/red] {e}")
        return 1


def _add_endpoint(p):
    p.add_argument("--host", type=str, default=DEFAULT_HOST,
                   help=f"Server host (default: {DEFAULT_HOST})")
    p.add_argument("--port", type=int, default=DEFAULT_PORT,
                   help=f"Server port (default: {DEFAULT_PORT})")


def _server_config(args) -> ServerConfig:
    return ServerConfig(host=args.host, port=args.port,
                        identify=not args.no_identify,
                        extended_frames=not args.minimal_frames)


def _panel_config(args) -> PanelConfig:
    return PanelConfig(host=args.host, port=args.port,
                       extended_frames=not args.minimal_frames)


# ═════════════════════════════════════════════════════════════════════════════
# COMMAND IMPLEMENTATIONS
# ═════════════════════════════════════════════════════════════════════════════

# ── serve ────────────────────────────────────────────────────────────────
def cmd_serve(args):
    config = _server_config(args)
    server = PanelServer(config).bind()

    def _stop(signum, frame):
        logging.getLogger("panel503").info("Signal %d, shutting down", signum)
        server.stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    host, port = server.addr
    console.print(f"Panel 503 server listening on [bold]{host}:{port}[/bold] "
                  f"({'extended' if config.extended_frames else 'minimal'} frames, "
                  f"identify {'on' if config.identify else 'off'})")
    server.serve_forever()
    return 0


# ── monitor ──────────────────────────────────────────────────────────────
def status_table(snap: dict) -> Table:
    """Render a PanelState snapshot as a rich table."""
    table = Table(title="Panel 503", show_header=True, header_style="bold")
    table.add_column("Lamp / Switch")
    table.add_column("State", justify="right")

    def on_off(flag):
        return "[green]ON[/green]" if flag else "[dim]off[/dim]"

    table.add_row("Connected", on_off(snap["connected"]))
    table.add_row("Power", on_off(snap["power_on"]))
    table.add_row("No protection", on_off(snap["no_protn"]))
    table.add_row("Manual", on_off(snap["manual_state"]))
    table.add_row("Plotter manual", on_off(snap["plotter_manual"]))
    table.add_row("Reset", on_off(snap["reset_state"]))
    for label, key in (("Busy", "busy_glow"), ("Transfer", "transfer_glow"),
                       ("Air cond", "air_cond_glow"), ("Error", "error_glow"),
                       ("Tag", "tag_glow"), ("Type hold", "type_hold_glow"),
                       ("BS parity", "bs_parity_glow")):
        table.add_row(label, f"{snap[key]:.2f}")
    # MSB first, one digit per lamp (0-9 intensity)
    a_glow = snap["a_glow"]
    lamps = "".join(str(min(int(g * 10), 9)) for g in reversed(a_glow)) or "-"
    table.add_row("A register", lamps)
    return table


def cmd_monitor(args):
    client = PanelClient(_panel_config(args)).connect()
    try:
        if not client.request_status():
            console.print("[yellow]No status reply from server[/yellow]")
        if args.power_on:
            client.click("on", time.monotonic())

        deadline = time.monotonic() + args.seconds if args.seconds > 0 else None
        with Live(status_table(client.state.snapshot()), console=console,
                  refresh_per_second=10) as live:
            try:
                while client.connected:
                    now = time.monotonic()
                    if deadline is not None and now >= deadline:
                        break
                    client.poll(now)
                    live.update(status_table(client.state.snapshot()))
                    time.sleep(client.config.status_period)
            except KeyboardInterrupt:
                pass
        if not client.connected:
            console.print("[yellow]Server ended the connection[/yellow]")
    finally:
        client.close()
    return 0


# ── send ─────────────────────────────────────────────────────────────────
def cmd_send(args):
    event = Event(args.code)
    arg = None
    if event in BOOL_EVENTS:
        if args.state is None:
            console.print(f"[red]Error:[/red] {event.value} needs on or off")
            return 1
        arg = args.state == "on"

    client = PanelClient(_panel_config(args)).connect()
    try:
        # wait until the server has accepted us before sending
        if not client.request_status():
            console.print("[red]Error:[/red] no reply from server")
            return 1
        if event is not Event.SHUT_DOWN:
            client.submit(event, arg)
        console.print(f"Sent {event.value}" + (f" {args.state}" if arg is not None else ""))
    finally:
        client.close()
    return 0


# ═════════════════════════════════════════════════════════════════════════════
# COMMAND DISPATCH TABLE
# ═════════════════════════════════════════════════════════════════════════════

COMMANDS = {
    "serve": cmd_serve,
    "monitor": cmd_monitor,
    "send": cmd_send,
}


if __name__ == "__main__":
    sys.exit(main())
