#!/usr/bin/env python3
"""OSC-to-pi-blaster bridge: faders in, PWM duty cycles out.

Point a control surface at this box, map its OSC addresses to GPIO pins in
``config/pinmap.yaml`` and every fader move turns into a ``pin=value`` line
on pi-blaster's FIFO.  Anything not in the map is ignored.

References worth opening in a browser tab while you read this file:

* pi-blaster: https://github.com/sarfata/pi-blaster
* python-osc docs: https://pypi.org/project/python-osc/
"""

import argparse
import json
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path

import yaml
from pythonosc import osc_server

BRIDGE_DIR = Path(__file__).resolve().parent
if str(BRIDGE_DIR) not in sys.path:
    sys.path.insert(0, str(BRIDGE_DIR))

from config_validation import MAX_PORT, ValidationError, load_bridge_config
from osc_packets import PacketDecodeError, decode_packet
from osc_router import OSCRouter
from pin_blaster import TRACE, PinBlaster, PinBlasterError, SinkOpenError

REPO_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_CONFIG_PATH = (REPO_ROOT / "config/pinmap.yaml").resolve()

# How often serve_forever wakes up to notice a shutdown request.
POLL_INTERVAL = 1.0

EXIT_OK = 0
EXIT_RUNTIME_ERROR = 1
EXIT_CONFIG_ERROR = 2

logger = logging.getLogger("osc_piblaster_bridge")

logging.addLevelName(TRACE, "TRACE")


def level_from_verbosity(verbosity):
    """``-q`` → off, default → warnings, each ``-v`` one step chattier."""

    if verbosity < 0:
        return logging.CRITICAL + 1
    levels = [logging.WARNING, logging.INFO, logging.DEBUG]
    if verbosity < len(levels):
        return levels[verbosity]
    return TRACE


def init_logging(verbosity):
    logging.basicConfig(
        level=level_from_verbosity(verbosity),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
        force=True,
    )


class AuditLogger:
    """Append operator-facing events to ``logs/ops_events.jsonl``."""

    def __init__(self):
        log_dir_env = os.environ.get("PIBLASTER_BRIDGE_LOG_DIR")
        if log_dir_env:
            candidate = Path(log_dir_env)
            if candidate.is_absolute():
                log_dir = candidate
            else:
                log_dir = REPO_ROOT / candidate
        else:
            log_dir = REPO_ROOT / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        self.log_path = log_dir / "ops_events.jsonl"
        self.operator = (
            os.environ.get("OPERATOR_ID")
            or os.environ.get("USER")
            or os.environ.get("USERNAME")
            or "unknown"
        )
        self.host = os.environ.get("HOSTNAME", "unknown_host")

    def write(self, action, status="info", message=None, details=None):
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "operator": self.operator,
            "host": self.host,
            "action": action,
            "status": status,
        }
        if message:
            event["message"] = message
        if details is not None:
            event["details"] = details
        with self.log_path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(event, ensure_ascii=False) + "\n")


class DryRunSink:
    """Stand-in for the pi-blaster FIFO that just echoes lines to stdout."""

    def __init__(self, out=None):
        self.out = out or sys.stdout
        self.line_count = 0
        self.flush_count = 0

    def write(self, text: str) -> int:
        for line in text.splitlines():
            self.line_count += 1
            print(f"[dry-run] {line}", file=self.out)
        return len(text)

    def flush(self) -> None:
        self.flush_count += 1

    def close(self) -> None:
        print(
            f"[dry-run] pin blaster stub got {self.line_count} lines "
            f"over {self.flush_count} packets",
            file=self.out,
        )


class PacketDispatcher:
    """Stands in for ``pythonosc.dispatcher.Dispatcher``.

    The stock dispatcher flattens bundles and throws away type tags, so we
    take the raw datagram and hand the decoded packet to the router as-is.
    """

    def __init__(self, router: OSCRouter):
        self.router = router

    def call_handlers_for_packet(self, data: bytes, client_address):
        logger.log(TRACE, "Received %d bytes from %s", len(data), client_address)
        try:
            packet = decode_packet(data)
        except PacketDecodeError as exc:
            logger.warning("Dropping malformed datagram from %s: %s", client_address, exc)
            return []
        self.router.handle(packet)
        # newer python-osc releases send back whatever handlers return
        return []


class PiBlasterOSCServer(osc_server.BlockingOSCUDPServer):
    """Blocking OSC server that lets pin blaster failures stop the loop."""

    def handle_error(self, request, client_address):
        if isinstance(sys.exc_info()[1], PinBlasterError):
            raise
        super().handle_error(request, client_address)


def build_server(router, host="0.0.0.0", port=0):
    """Bind the UDP server; ``port=0`` picks an ephemeral port."""

    return PiBlasterOSCServer((host, port), PacketDispatcher(router))


def _interrupt(signum, frame):
    raise KeyboardInterrupt


def port_number(text):
    """argparse type for UDP ports, so bad values are a usage error."""

    try:
        port = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port: {text!r}") from None
    if not 0 <= port <= MAX_PORT:
        raise argparse.ArgumentTypeError(
            f"port must be within [0, {MAX_PORT}], got {port}"
        )
    return port


def parse_args(argv=None):
    ap = argparse.ArgumentParser(
        description=(
            "Listen for OSC control data and write pin=value lines to a "
            "pi-blaster FIFO."
        )
    )
    ap.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="How much information to print. Can be provided up to three times.",
    )
    ap.add_argument("-q", "--quiet", action="store_true", help="Print no output at all.")
    ap.add_argument(
        "-p",
        "--port",
        type=port_number,
        help="The port to listen on. Overrides the port set in the config file.",
    )
    ap.add_argument(
        "--config",
        default=str(DEFAULT_CONFIG_PATH),
        help=f"Path to the OSC→pin YAML (default: {DEFAULT_CONFIG_PATH}).",
    )
    ap.add_argument("--host", default="0.0.0.0", help="Interface to bind.")
    ap.add_argument(
        "--dry-run",
        action="store_true",
        help="Skip the pi-blaster FIFO and print the lines instead.",
    )
    return ap.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    init_logging(-1 if args.quiet else args.verbose)

    audit = AuditLogger()

    config_path = Path(args.config).expanduser()
    if not config_path.is_absolute():
        config_path = (Path.cwd() / config_path).resolve()
    try:
        conf = load_bridge_config(config_path)
    except (OSError, yaml.YAMLError) as exc:
        audit.write(
            "pinmap_load",
            status="error",
            message=f"Failed to load pin map {config_path}",
            details={"path": str(config_path), "error": str(exc)},
        )
        print(f"Failed to load {config_path}: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except ValidationError as exc:
        audit.write(
            "pinmap_validation",
            status="error",
            message="Pin map validation failed",
            details={"errors": exc.errors},
        )
        for line in exc.errors:
            print(f"config error: {line}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    logger.debug("Routing table: %s", dict(conf.routing_table))
    audit.write(
        "pinmap_load",
        status="info",
        message="Loaded pin map",
        details={
            "path": str(config_path),
            "paths": len(conf.routing_table),
            "pins": [pin.index for pin in conf.all_pins()],
        },
    )

    port = args.port if args.port is not None else conf.port
    if args.port is not None and args.port != conf.port:
        audit.write(
            "osc_port_override",
            status="info",
            message=f"Operator requested OSC port {port}",
            details={"source": "cli"},
        )

    if args.dry_run:
        pin_blaster = PinBlaster(DryRunSink(), conf.all_pins())
        print("[dry-run] pi-blaster writes suppressed; lines printed locally.")
    else:
        try:
            pin_blaster = PinBlaster.open(conf.piblaster, conf.all_pins())
        except SinkOpenError as exc:
            audit.write(
                "piblaster_open",
                status="error",
                message=str(exc),
                details={"path": conf.piblaster},
            )
            print(f"{exc} (is pi-blaster running?)", file=sys.stderr)
            return EXIT_RUNTIME_ERROR

    router = OSCRouter(pin_blaster, conf.routing_table)
    exit_code = EXIT_OK
    server = build_server(router, args.host, port)
    logger.info("Listening on address %s:%s", *server.server_address[:2])
    audit.write(
        "osc_bridge_boot",
        status="info",
        message=f"OSC→pi-blaster bridge listening on {server.server_address}",
        details={"piblaster": conf.piblaster, "dry_run": args.dry_run},
    )
    previous_term = signal.signal(signal.SIGTERM, _interrupt)
    try:
        server.serve_forever(poll_interval=POLL_INTERVAL)
    except KeyboardInterrupt:
        audit.write(
            "osc_bridge_shutdown",
            status="info",
            message="Operator interrupted bridge.",
        )
    except PinBlasterError as exc:
        logger.error("Pin blaster failure, shutting down: %s", exc)
        audit.write(
            "piblaster_error",
            status="error",
            message=str(exc),
            details={"type": type(exc).__name__},
        )
        exit_code = EXIT_RUNTIME_ERROR
    finally:
        signal.signal(signal.SIGTERM, previous_term)
        server.server_close()
        try:
            pin_blaster.close()
        except PinBlasterError as exc:
            logger.error("%s", exc)
            exit_code = EXIT_RUNTIME_ERROR
        audit.write(
            "osc_bridge_shutdown",
            status="closed",
            message="pi-blaster link closed{suffix}.".format(
                suffix=" (dry-run stub)" if args.dry_run else ""
            ),
        )
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
