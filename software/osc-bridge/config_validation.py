"""Config loading and validation for the OSC→pi-blaster bridge."""

from __future__ import annotations

import dataclasses
from pathlib import Path
from typing import Iterable, Mapping, MutableMapping, Tuple

import yaml

from osc_router import OscPath, RoutingTable, freeze_routing_table, pin_universe
from pin_blaster import GpioPin


class ValidationError(Exception):
    """Aggregates config validation failures."""

    def __init__(self, errors: Iterable[str]):
        messages = list(errors)
        super().__init__("; ".join(messages))
        self.errors = messages


@dataclasses.dataclass(frozen=True)
class BridgeConfig:
    routing_table: RoutingTable
    piblaster: str
    port: int

    def all_pins(self) -> Tuple[GpioPin, ...]:
        return pin_universe(self.routing_table)


REQUIRED_KEYS = ("osc_pin_map", "piblaster", "port")
MAX_PORT = 65535


# ---- validation primitives -------------------------------------------------


def _is_pin_index(value) -> bool:
    # yaml loads ``true`` as a bool, and bool is an int subclass
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _check_pins(value, path: str, errors: list[str]) -> None:
    if isinstance(value, list):
        if not value:
            errors.append(f"'{path}' needs at least one pin")
        for idx, item in enumerate(value):
            if not _is_pin_index(item):
                errors.append(f"'{path}[{idx}]' must be a non-negative integer")
    elif not _is_pin_index(value):
        errors.append(
            f"'{path}' must be a non-negative integer or a list of them"
        )


def validate_pinmap_config(cfg: Mapping, source: str = "pinmap") -> None:
    errors: list[str] = []
    if not isinstance(cfg, Mapping):
        raise ValidationError([f"{source}: config must be a mapping"])

    for key in REQUIRED_KEYS:
        if key not in cfg:
            errors.append(f"{source}: missing required key '{key}'")

    pin_map = cfg.get("osc_pin_map")
    if "osc_pin_map" in cfg:
        if not isinstance(pin_map, Mapping):
            errors.append(f"{source}: osc_pin_map needs to be a mapping")
        else:
            for osc_path, pins in pin_map.items():
                if not isinstance(osc_path, str) or not osc_path:
                    errors.append(
                        f"{source}: osc_pin_map key {osc_path!r} must be a "
                        "non-empty string"
                    )
                    continue
                _check_pins(pins, f"{source}.osc_pin_map.{osc_path}", errors)

    piblaster = cfg.get("piblaster")
    if "piblaster" in cfg and (not isinstance(piblaster, str) or not piblaster):
        errors.append(f"{source}: piblaster must be a non-empty path string")

    port = cfg.get("port")
    if "port" in cfg:
        if isinstance(port, bool) or not isinstance(port, int):
            errors.append(f"{source}: port must be an integer")
        elif not 0 <= port <= MAX_PORT:
            errors.append(f"{source}: port must be within [0, {MAX_PORT}]")

    if errors:
        raise ValidationError(errors)


def build_routing_table(pin_map: Mapping) -> RoutingTable:
    """Turn the validated ``osc_pin_map`` section into a routing table.

    A bare integer is shorthand for a one-pin list.  Duplicate pins under
    the same path are collapsed, keeping the first occurrence.
    """

    table = {}
    for osc_path, pins in pin_map.items():
        if not isinstance(pins, list):
            pins = [pins]
        table[OscPath(osc_path)] = tuple(dict.fromkeys(GpioPin(p) for p in pins))
    return freeze_routing_table(table)


def load_yaml(path: Path) -> MutableMapping:
    docs = list(yaml.safe_load_all(Path(path).read_text()))
    if len(docs) > 1:
        raise ValidationError([f"{Path(path).name}: only a single document is supported"])
    return (docs[0] if docs else None) or {}


def config_from_mapping(cfg: Mapping, source: str = "pinmap") -> BridgeConfig:
    validate_pinmap_config(cfg, source)
    return BridgeConfig(
        routing_table=build_routing_table(cfg["osc_pin_map"]),
        piblaster=cfg["piblaster"],
        port=cfg["port"],
    )


def load_bridge_config(
    path: Path, *, source_label: str | None = None
) -> BridgeConfig:
    path = Path(path)
    return config_from_mapping(load_yaml(path), source_label or path.name)
