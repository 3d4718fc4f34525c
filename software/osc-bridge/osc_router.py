"""Route decoded OSC packets onto pi-blaster pins.

Control surfaces (TouchOSC, Open Stage Control, a Max patch...) spray a lot
of traffic we don't care about.  Only addresses listed in the routing table
touch hardware; everything else falls through quietly.  One inbound packet,
however deeply bundled, ends with exactly one flush of the driver file.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from osc_packets import Bundle, Message, Packet
from pin_blaster import GpioPin, PinBlaster, to_float32

logger = logging.getLogger(__name__)

# Real controllers never nest more than a level or two; this only stops a
# hostile datagram from walking us into a RecursionError.
MAX_BUNDLE_DEPTH = 64

FLOAT_TAGS = {"f", "d"}


@dataclasses.dataclass(frozen=True)
class OscPath:
    path: str

    def __str__(self) -> str:
        return self.path


RoutingTable = Mapping[OscPath, Tuple[GpioPin, ...]]


def freeze_routing_table(table: Mapping) -> RoutingTable:
    """Return a read-only copy of ``table`` with tuple pin lists."""

    return MappingProxyType(
        {OscPath(str(path)): tuple(pins) for path, pins in table.items()}
    )


def pin_universe(table: RoutingTable) -> Tuple[GpioPin, ...]:
    """Every distinct pin in ``table``, first-seen order."""

    seen = {}
    for pins in table.values():
        for pin in pins:
            seen.setdefault(pin, None)
    return tuple(seen)


def coerce_argument(message: Message) -> Optional[float]:
    """Pull the single float out of ``message`` or return ``None``.

    Sloppy senders get a warning but still work: extra arguments are ignored
    and a 64-bit double is narrowed to 32 bits like the driver expects.
    """

    if len(message.args) != 1:
        logger.warning(
            "Received message on %s with %d arguments (should be 1)",
            message.address,
            len(message.args),
        )
    if not message.args:
        return None
    arg = message.args[0]
    if arg.tag not in FLOAT_TAGS:
        logger.warning(
            "Received unsupported argument type '%s' on %s, only float/double "
            "are supported",
            arg.tag,
            message.address,
        )
        return None
    return to_float32(arg.value)


class OSCRouter:
    """Turn OSC packets into :class:`PinBlaster` writes.

    ``routing_table`` is frozen on the way in; nothing mutates it later.
    """

    def __init__(self, pin_blaster: PinBlaster, routing_table: Mapping):
        self.pin_blaster = pin_blaster
        self.routing_table = freeze_routing_table(routing_table)
        self._lock = threading.Lock()

    def set_path(self, path: OscPath, value: float) -> None:
        """Set every pin assigned to ``path`` to ``value``."""

        logger.debug("Setting %s to %s", path, value)
        for pin in self.routing_table[path]:
            self.pin_blaster.set(pin, value)

    def _handle_message(self, message: Message) -> None:
        value = coerce_argument(message)
        if value is None:
            return
        path = OscPath(message.address)
        if path not in self.routing_table:
            logger.debug("Ignoring unmapped path %s", path)
            return
        self.set_path(path, value)

    def _handle_internal(self, packet: Packet, depth: int = 0) -> None:
        if isinstance(packet, Bundle):
            if depth >= MAX_BUNDLE_DEPTH:
                logger.warning(
                    "Dropping bundle nested deeper than %d levels", MAX_BUNDLE_DEPTH
                )
                return
            # First pin blaster failure aborts the rest of the bundle.
            for item in packet.content:
                self._handle_internal(item, depth + 1)
        else:
            self._handle_message(packet)

    def handle(self, packet: Packet) -> None:
        """Apply ``packet`` and flush the driver once.

        :class:`pin_blaster.PinBlasterError` propagates; writes that already
        happened for this packet stay written.
        """

        with self._lock:
            self._handle_internal(packet)
            self.pin_blaster.flush()
