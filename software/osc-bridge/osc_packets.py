"""Decoded OSC packets that keep each argument's type tag around.

python-osc hands back plain Python values, so a 32-bit ``f`` and a 64-bit
``d`` both come out as ``float``.  The router cares about the difference
(only those two tags are accepted), so we re-read the type tag string from
the datagram and pair each tag with its decoded value.

OSC 1.0: https://opensoundcontrol.stanford.edu/spec-1_0.html
"""

from __future__ import annotations

import dataclasses
from typing import Any, Tuple, Union

from pythonosc import osc_bundle, osc_message
from pythonosc.parsing import osc_types

ARRAY_TAG = "["


class PacketDecodeError(Exception):
    """Raised for datagrams that are neither a valid message nor a bundle."""


@dataclasses.dataclass(frozen=True)
class Argument:
    tag: str
    value: Any


@dataclasses.dataclass(frozen=True)
class Message:
    address: str
    args: Tuple[Argument, ...] = ()


@dataclasses.dataclass(frozen=True)
class Bundle:
    timetag: float
    content: Tuple["Packet", ...] = ()


Packet = Union[Message, Bundle]


def _top_level_tags(type_tags: str) -> list:
    """Collapse ``[...]`` runs into one array tag, one entry per parameter."""

    tags = []
    depth = 0
    for tag in type_tags:
        if tag == "[":
            if depth == 0:
                tags.append(ARRAY_TAG)
            depth += 1
        elif tag == "]":
            depth -= 1
        elif depth == 0:
            tags.append(tag)
    return tags


def _type_tags(dgram: bytes) -> str:
    _address, index = osc_types.get_string(dgram, 0)
    if index >= len(dgram):
        return ""
    type_tags, _index = osc_types.get_string(dgram, index)
    return type_tags[1:] if type_tags.startswith(",") else type_tags


def from_osc_message(msg: osc_message.OscMessage) -> Message:
    try:
        tags = _top_level_tags(_type_tags(msg.dgram))
    except osc_types.ParseError as exc:
        raise PacketDecodeError(f"bad type tag string: {exc}") from exc
    args = tuple(Argument(tag, value) for tag, value in zip(tags, msg.params))
    return Message(address=msg.address, args=args)


def from_osc_bundle(bundle: osc_bundle.OscBundle) -> Bundle:
    content = []
    for item in bundle:
        if isinstance(item, osc_bundle.OscBundle):
            content.append(from_osc_bundle(item))
        else:
            content.append(from_osc_message(item))
    return Bundle(timetag=bundle.timestamp, content=tuple(content))


def decode_packet(dgram: bytes) -> Packet:
    """Parse one UDP datagram into a :class:`Message` or :class:`Bundle`."""

    try:
        if osc_bundle.OscBundle.dgram_is_bundle(dgram):
            return from_osc_bundle(osc_bundle.OscBundle(dgram))
        if osc_message.OscMessage.dgram_is_message(dgram):
            return from_osc_message(osc_message.OscMessage(dgram))
    except (
        osc_bundle.ParseError,
        osc_message.ParseError,
        osc_types.ParseError,
    ) as exc:
        raise PacketDecodeError(str(exc)) from exc
    raise PacketDecodeError(f"datagram of {len(dgram)} bytes is not OSC")
