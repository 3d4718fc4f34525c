#!/usr/bin/env python3
"""End-to-end loopback check for the OSC→pi-blaster bridge.

This harness pretends to be both ends of the rig: a TouchOSC tablet spraying
fader moves over UDP and the pi-blaster daemon reading the FIFO.  Run it
before load-in to catch config drift or a broken bridge without wiring a
single LED strip.
"""
from __future__ import annotations

import argparse
import importlib.util
import json
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

from pythonosc import osc_bundle_builder, osc_message_builder, udp_client

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

BRIDGE_PATH = REPO_ROOT / "software" / "osc-bridge" / "osc_piblaster_bridge.py"
spec = importlib.util.spec_from_file_location("osc_piblaster_bridge", BRIDGE_PATH)
if spec is None or spec.loader is None:  # pragma: no cover - sanity guard
    raise RuntimeError(f"Unable to load osc_piblaster_bridge from {BRIDGE_PATH}")
bridge = importlib.util.module_from_spec(spec)
spec.loader.exec_module(bridge)

# The bridge module put software/osc-bridge on sys.path for us.
from config_validation import load_bridge_config
from osc_router import OSCRouter, OscPath
from pin_blaster import PinBlaster, format_value, to_float32

NOISE_PATH = "/ping"


class PinBlasterLoopback:
    """Capture what the bridge writes to the FIFO, flushes included."""

    def __init__(self) -> None:
        self._events: List[Tuple[str, str]] = []
        self._lock = threading.Lock()

    def write(self, data: str) -> int:
        if not isinstance(data, str):
            raise TypeError("pi-blaster link expects text")
        with self._lock:
            for line in data.splitlines(keepends=True):
                self._events.append(("write", line))
        return len(data)

    def flush(self) -> None:
        with self._lock:
            self._events.append(("flush", ""))

    def close(self) -> None:  # pragma: no cover - symmetry with a real FIFO
        return None

    def events(self) -> List[Tuple[str, str]]:
        with self._lock:
            return list(self._events)

    def lines(self) -> List[str]:
        return [text for kind, text in self.events() if kind == "write"]

    def flush_count(self) -> int:
        return sum(1 for kind, _ in self.events() if kind == "flush")


@dataclass
class FixtureFrame:
    values: Dict[str, float]


def load_fixture_frames(path: Path) -> List[FixtureFrame]:
    """Read the recorded fader sweep: one ``{address: value}`` dict per frame."""

    payload = json.loads(Path(path).read_text())
    return [FixtureFrame(values=dict(frame)) for frame in payload["frames"]]


def expected_lines(frames: Iterable[FixtureFrame], routing_table) -> List[str]:
    """Work out which ``pin=value`` lines a correct bridge writes for ``frames``."""

    current = {}
    for pins in routing_table.values():
        for pin in pins:
            current[pin] = 0.0
    lines = []
    for frame in frames:
        for address, raw in frame.values.items():
            value = to_float32(raw)
            for pin in routing_table.get(OscPath(address), ()):
                if current[pin] != value:
                    current[pin] = value
                    lines.append(f"{pin.index}={format_value(value)}\n")
    return lines


def build_frame_bundle(frame: FixtureFrame):
    """Pack one frame as a bundle, plus the junk a real surface sends along."""

    builder = osc_bundle_builder.OscBundleBuilder(osc_bundle_builder.IMMEDIATELY)
    for address, value in frame.values.items():
        msg = osc_message_builder.OscMessageBuilder(address=address)
        msg.add_arg(float(value), osc_message_builder.OscMessageBuilder.ARG_TYPE_FLOAT)
        builder.add_content(msg.build())
    noise = osc_message_builder.OscMessageBuilder(address=NOISE_PATH)
    noise.add_arg(1.0, osc_message_builder.OscMessageBuilder.ARG_TYPE_FLOAT)
    builder.add_content(noise.build())
    return builder.build()


class BridgeHarness:
    """Run the real bridge server against a loopback pin blaster."""

    def __init__(self, mapping_path: Path, sink: PinBlasterLoopback, *, osc_port: int) -> None:
        self.conf = load_bridge_config(mapping_path)
        self.sink = sink
        self.pin_blaster = PinBlaster(sink, self.conf.all_pins())
        self.router = OSCRouter(self.pin_blaster, self.conf.routing_table)
        self.osc_port = osc_port
        self._server = None
        self._thread: threading.Thread | None = None
        self._started = threading.Event()

    def start(self) -> None:
        self._server = bridge.build_server(self.router, "127.0.0.1", self.osc_port)
        # Bind to an ephemeral port when osc_port == 0 so tests/CI don't clash
        # with a real bridge session.
        self.osc_port = self._server.server_address[1]
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            kwargs={"poll_interval": 0.05},
            daemon=True,
        )
        self._thread.start()
        self._started.set()

    @property
    def listening_port(self) -> int:
        return self.osc_port

    def wait_ready(self, timeout: float = 1.0) -> bool:
        return self._started.wait(timeout)

    def wait_for_flushes(self, count: int, timeout: float = 2.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self.sink.flush_count() >= count:
                return True
            time.sleep(0.005)
        return self.sink.flush_count() >= count

    def stop(self) -> None:
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread:
            self._thread.join(timeout=1)
            self._thread = None
        self._started.clear()


def assert_pin_activity(sink: PinBlasterLoopback, expected: List[str], packets: int) -> None:
    lines = sink.lines()
    if lines != expected:
        raise AssertionError(f"Bridge wrote {lines!r}, expected {expected!r}")
    if sink.flush_count() != packets:
        raise AssertionError(
            f"Expected one flush per packet ({packets}), saw {sink.flush_count()}"
        )
    events = sink.events()
    if events and events[-1][0] != "flush":
        raise AssertionError("Last packet was never flushed")


def replay(harness: BridgeHarness, frames: List[FixtureFrame], send_interval: float) -> int:
    client = udp_client.SimpleUDPClient("127.0.0.1", harness.listening_port)
    sent = 0
    for frame in frames:
        client.send(build_frame_bundle(frame))
        sent += 1
        time.sleep(max(0.0, send_interval))
    return sent


def main(argv: Iterable[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Spin up a bridge loopback smoke test.")

    default_mapping = (REPO_ROOT / "config" / "pinmap.yaml").resolve()
    default_fixture = (REPO_ROOT / "config" / "test-fixtures" / "fader_sweep.json").resolve()

    parser.add_argument(
        "--mapping",
        default=str(default_mapping),
        help=(
            "Path to the pin map YAML. Relative paths are resolved from the repo root"
            " (defaults to config/pinmap.yaml)."
        ),
    )
    parser.add_argument(
        "--fixture",
        default=str(default_fixture),
        help=(
            "Fader sweep JSON to replay. Relative paths are resolved from the repo"
            " root (defaults to config/test-fixtures/fader_sweep.json)."
        ),
    )
    parser.add_argument("--osc-port", type=int, default=9100, help="OSC port for the harness (0 = auto)")
    parser.add_argument(
        "--send-interval",
        type=float,
        default=0.01,
        help="Delay between OSC bundles in seconds",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=2.0,
        help="How long to wait for the bridge to flush every bundle",
    )
    args = parser.parse_args(list(argv) if argv is not None else None)

    def resolve_repo_path(value: str) -> Path:
        path = Path(value)
        if path.is_absolute():
            return path
        return (REPO_ROOT / path).resolve()

    fixture_path = resolve_repo_path(args.fixture)
    mapping_path = resolve_repo_path(args.mapping)
    if not fixture_path.is_file():
        print(f"Fixture file not found: {fixture_path}", file=sys.stderr)
        return 2

    frames = load_fixture_frames(fixture_path)
    sink = PinBlasterLoopback()
    harness = BridgeHarness(mapping_path, sink, osc_port=args.osc_port)
    harness.start()
    harness.wait_ready()
    try:
        sent = replay(harness, frames, args.send_interval)
        harness.wait_for_flushes(sent, timeout=args.timeout)
    finally:
        harness.stop()

    try:
        assert_pin_activity(sink, expected_lines(frames, harness.conf.routing_table), sent)
    except AssertionError as exc:
        print(f"✖ {exc}", file=sys.stderr)
        return 1

    print(f"✅ Bridge wrote {len(sink.lines())} pin lines for {sent} bundles.")
    print("✅ Idle repeats and unmapped noise stayed off the FIFO.")
    print("✅ Exactly one flush per bundle.")
    print("All green. Go run the real rig.")
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
