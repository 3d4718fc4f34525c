import io
import json
import logging
import socket
import sys
from pathlib import Path

import pytest
from pythonosc import osc_message_builder

REPO_ROOT = Path(__file__).resolve().parents[1]
BRIDGE_DIR = REPO_ROOT / "software" / "osc-bridge"
if str(BRIDGE_DIR) not in sys.path:
    sys.path.insert(0, str(BRIDGE_DIR))

import osc_piblaster_bridge as bridge
from osc_router import OSCRouter, OscPath
from pin_blaster import TRACE, GpioPin, PinBlaster, SinkWriteError


def read_actions(log_dir: Path):
    log_path = log_dir / "ops_events.jsonl"
    return [
        json.loads(line)["action"]
        for line in log_path.read_text().splitlines()
        if line.strip()
    ]


@pytest.fixture(autouse=True)
def restore_root_logger():
    # main() reconfigures the root logger; don't leak that into other tests
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def audit_dir(tmp_path, monkeypatch):
    log_dir = tmp_path / "logs"
    monkeypatch.setenv("PIBLASTER_BRIDGE_LOG_DIR", str(log_dir))
    return log_dir


def write_config(tmp_path: Path, piblaster: str) -> Path:
    path = tmp_path / "pinmap.yaml"
    path.write_text(
        f"""
port: 0
piblaster: {piblaster}
osc_pin_map:
  /1/fader1: [17, 18]
"""
    )
    return path


@pytest.mark.parametrize(
    "verbosity, level",
    [
        (-1, logging.CRITICAL + 1),
        (0, logging.WARNING),
        (1, logging.INFO),
        (2, logging.DEBUG),
        (3, TRACE),
        (7, TRACE),
    ],
)
def test_level_from_verbosity(verbosity, level):
    assert bridge.level_from_verbosity(verbosity) == level


def test_invalid_config_exits_with_code_2(tmp_path, audit_dir, capsys):
    path = tmp_path / "pinmap.yaml"
    path.write_text("osc_pin_map: {}\n")
    assert bridge.main(["--config", str(path), "-q"]) == bridge.EXIT_CONFIG_ERROR
    assert "missing required key 'piblaster'" in capsys.readouterr().err
    assert read_actions(audit_dir) == ["pinmap_validation"]


def test_missing_config_exits_with_code_2(tmp_path, audit_dir):
    missing = tmp_path / "nope.yaml"
    assert bridge.main(["--config", str(missing), "-q"]) == bridge.EXIT_CONFIG_ERROR
    assert read_actions(audit_dir) == ["pinmap_load"]


def test_missing_fifo_exits_with_code_1(tmp_path, audit_dir, capsys):
    config = write_config(tmp_path, str(tmp_path / "pi-blaster"))
    assert bridge.main(["--config", str(config), "-q"]) == bridge.EXIT_RUNTIME_ERROR
    assert "is pi-blaster running?" in capsys.readouterr().err
    assert read_actions(audit_dir) == ["pinmap_load", "piblaster_open"]


def test_dry_run_boots_and_shuts_down(tmp_path, audit_dir, monkeypatch, capsys):
    config = write_config(tmp_path, "/dev/pi-blaster")

    def fake_serve_forever(self, poll_interval=0.5):
        assert poll_interval == bridge.POLL_INTERVAL
        raise KeyboardInterrupt

    monkeypatch.setattr(bridge.PiBlasterOSCServer, "serve_forever", fake_serve_forever)
    exit_code = bridge.main(
        ["--config", str(config), "--dry-run", "--host", "127.0.0.1", "-p", "0", "-q"]
    )
    assert exit_code == bridge.EXIT_OK
    out = capsys.readouterr().out
    assert "pi-blaster writes suppressed" in out
    assert "got 0 lines over 0 packets" in out
    assert read_actions(audit_dir) == [
        "pinmap_load",
        "osc_bridge_boot",
        "osc_bridge_shutdown",
        "osc_bridge_shutdown",
    ]


def test_dry_run_sink_echoes_lines():
    out = io.StringIO()
    sink = bridge.DryRunSink(out)
    blaster = PinBlaster(sink, [GpioPin(17)])
    blaster.set(GpioPin(17), 0.5)
    blaster.flush()
    blaster.close()
    assert out.getvalue().splitlines() == [
        "[dry-run] 17=0.5",
        "[dry-run] pin blaster stub got 1 lines over 1 packets",
    ]


def test_pin_blaster_failure_stops_the_server():
    class DeadFifo(io.StringIO):
        def write(self, text):
            raise BrokenPipeError(32, "Broken pipe")

    table = {OscPath("/1/fader1"): (GpioPin(17),)}
    router = OSCRouter(PinBlaster(DeadFifo(), [GpioPin(17)]), table)
    server = bridge.build_server(router, "127.0.0.1", 0)
    try:
        msg = osc_message_builder.OscMessageBuilder(address="/1/fader1")
        msg.add_arg(1.0, osc_message_builder.OscMessageBuilder.ARG_TYPE_FLOAT)
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as client:
            client.sendto(msg.build().dgram, server.server_address)
        with pytest.raises(SinkWriteError):
            server.handle_request()
    finally:
        server.server_close()


def test_dispatcher_drops_malformed_datagrams(caplog):
    caplog.set_level(logging.WARNING, logger="osc_piblaster_bridge")

    class ExplodingRouter:
        def handle(self, packet):  # pragma: no cover - must not be reached
            raise AssertionError("router should not see garbage")

    dispatcher = bridge.PacketDispatcher(ExplodingRouter())
    assert dispatcher.call_handlers_for_packet(b"garbage", ("127.0.0.1", 1)) == []
    assert "Dropping malformed datagram" in caplog.text


@pytest.mark.parametrize("port", ["70000", "-1", "nine"])
def test_out_of_range_port_is_a_usage_error(port, audit_dir, capsys):
    with pytest.raises(SystemExit) as excinfo:
        bridge.main(["-p", port, "--dry-run", "-q"])
    assert excinfo.value.code == 2
    assert "--port" in capsys.readouterr().err
    assert not (audit_dir / "ops_events.jsonl").exists()


def test_port_bounds_are_accepted():
    assert bridge.parse_args(["-p", "0"]).port == 0
    assert bridge.parse_args(["--port", "65535"]).port == 65535
