#!/usr/bin/env python3
"""Validate one or more pin map files before plugging anything in."""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Iterable, List

import yaml

REPO_ROOT = Path(__file__).resolve().parents[1]
BRIDGE_DIR = REPO_ROOT / "software" / "osc-bridge"
if str(BRIDGE_DIR) not in sys.path:
    sys.path.insert(0, str(BRIDGE_DIR))

import config_validation as cv
DEFAULT_MAPPING = REPO_ROOT / "config" / "pinmap.yaml"


def validate(paths: Iterable[Path], *, verbose: bool = False) -> List[Path]:
    failures: List[Path] = []
    for path in paths:
        path = Path(path).resolve()
        if verbose:
            print(f"[validate] pinmap → {path}")
        try:
            conf = cv.load_bridge_config(path)
        except cv.ValidationError as exc:  # noqa: BLE001
            failures.append(path)
            for line in exc.errors:
                print(f"[validate] ✖ {line}")
            continue
        except (OSError, yaml.YAMLError) as exc:
            failures.append(path)
            print(f"[validate] ✖ {path.name}: {exc}")
            continue
        if verbose:
            pins = ", ".join(str(pin) for pin in conf.all_pins()) or "none"
            print(
                f"[validate]   {len(conf.routing_table)} path(s) → pins {pins}"
            )
    if failures:
        raise cv.ValidationError([f"{len(failures)} pin map(s) failed validation"])
    if verbose:
        print("[validate] all clear.")
    return failures


def main(argv: Iterable[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="Sanity-check OSC→pi-blaster pin maps")
    ap.add_argument(
        "mappings",
        nargs="*",
        type=Path,
        default=[DEFAULT_MAPPING],
        help="Pin map YAML file(s) (default: config/pinmap.yaml)",
    )
    ap.add_argument("--quiet", action="store_true", help="Suppress success chatter")
    args = ap.parse_args(list(argv) if argv is not None else None)

    try:
        validate(args.mappings, verbose=not args.quiet)
    except cv.ValidationError as exc:  # noqa: BLE001
        if not args.quiet:
            print("[validate] config errors detected")
        for line in exc.errors:
            print(f"[validate] ✖ {line}")
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
