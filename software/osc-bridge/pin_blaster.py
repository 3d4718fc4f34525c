"""pi-blaster actuator: per-pin state plus the ``pin=value`` line writer.

pi-blaster (https://github.com/sarfata/pi-blaster) listens on a FIFO, usually
``/dev/pi-blaster``, and expects one ``<gpio>=<duty>`` line per update with
the duty cycle as a float between 0 and 1.  This module owns the only handle
to that FIFO and remembers what it last told each pin so idle faders do not
hammer the driver with the same value over and over.
"""

from __future__ import annotations

import dataclasses
import logging
import math
import os
import stat
import struct
from decimal import Decimal
from typing import Dict, Iterable, TextIO

logger = logging.getLogger(__name__)

# Below DEBUG; ``osc_piblaster_bridge`` registers the level name.
TRACE = 5


class PinBlasterError(Exception):
    """Base class for everything the actuator can raise."""


class UnconfiguredPin(PinBlasterError):
    """A pin was addressed that never appeared in the routing table."""

    def __init__(self, pin: "GpioPin"):
        super().__init__(f"pin {pin.index} has not been configured")
        self.pin = pin


class SinkOpenError(PinBlasterError):
    """The driver file could not be opened (missing FIFO, permissions...)."""


class SinkWriteError(PinBlasterError):
    """Appending a line to the driver file failed."""


class SinkSyncError(PinBlasterError):
    """Flushing the driver file failed."""


@dataclasses.dataclass(frozen=True, order=True)
class GpioPin:
    index: int

    def __post_init__(self):
        if isinstance(self.index, bool) or not isinstance(self.index, int):
            raise TypeError(f"pin index must be an int, got {self.index!r}")
        if self.index < 0:
            raise ValueError(f"pin index must be >= 0, got {self.index}")

    def __str__(self) -> str:
        return str(self.index)


def to_float32(value: float) -> float:
    """Round ``value`` to the nearest single-precision float.

    Out-of-range magnitudes saturate to infinity, same as a C cast.
    """

    try:
        return struct.unpack("<f", struct.pack("<f", value))[0]
    except OverflowError:
        return math.copysign(math.inf, value)


def format_value(value: float) -> str:
    """Render a single-precision value the way the driver line expects it.

    Shortest digits that survive a float32 round trip, never an exponent and
    never a dangling ``.0``: ``1.0 -> "1"``, ``0.75 -> "0.75"``, ``1e-7 ->
    "0.0000001"``.
    """

    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "inf" if value > 0 else "-inf"
    text = f"{value:.9g}"
    for digits in range(1, 10):
        candidate = f"{value:.{digits}g}"
        if to_float32(float(candidate)) == value:
            text = candidate
            break
    return format(Decimal(text), "f")


def _open_sink(path) -> TextIO:
    # O_APPEND without O_CREAT: a missing FIFO means pi-blaster isn't running,
    # and silently creating a regular file in /dev would hide that.
    try:
        fd = os.open(os.fspath(path), os.O_WRONLY | os.O_APPEND)
    except OSError as exc:
        raise SinkOpenError(f"cannot open pin blaster sink {path}: {exc}") from exc
    # line buffered so each set() hits the FIFO inside its own try block
    return os.fdopen(fd, "w", buffering=1, encoding="ascii", newline="\n")


class PinBlaster:
    """Write-on-change actuator in front of a pi-blaster style sink.

    ``stream`` is any text stream with ``write``/``flush``.  Use
    :meth:`open` for the real driver file.  Every pin in ``pins`` starts at
    ``0.0``; that baseline is *not* written to the sink, the driver is
    assumed to boot at zero as well.
    """

    def __init__(self, stream: TextIO, pins: Iterable[GpioPin]):
        self._stream = stream
        self._values: Dict[GpioPin, float] = {pin: 0.0 for pin in pins}
        self.lines_written = 0

    @classmethod
    def open(cls, sink_path, pins: Iterable[GpioPin]) -> "PinBlaster":
        """Open ``sink_path`` for appending and wrap it."""

        return cls(_open_sink(sink_path), pins)

    def values(self) -> Dict[GpioPin, float]:
        """Snapshot of the last value written (or assumed) per pin."""

        return dict(self._values)

    def set(self, pin: GpioPin, value: float) -> bool:
        """Queue ``value`` for ``pin``; returns ``True`` when a line was written."""

        if pin not in self._values:
            raise UnconfiguredPin(pin)
        value = to_float32(value)
        if value == self._values[pin]:
            return False
        self._values[pin] = value
        line = f"{pin.index}={format_value(value)}\n"
        logger.log(TRACE, "Writing %r to sink", line)
        try:
            self._stream.write(line)
        except OSError as exc:
            raise SinkWriteError(f"failed writing {line.strip()!r}: {exc}") from exc
        self.lines_written += 1
        return True

    def flush(self) -> None:
        """Push anything the stream still holds out to the driver.

        Regular files are fsynced on top of the flush.  FIFOs and character
        devices only get the flush, ``fsync`` is not defined for them.
        """

        try:
            self._stream.flush()
            if self._is_regular_file():
                os.fsync(self._stream.fileno())
        except OSError as exc:
            raise SinkSyncError(f"failed flushing pin blaster sink: {exc}") from exc

    def _is_regular_file(self) -> bool:
        try:
            fd = self._stream.fileno()
        except (AttributeError, OSError, ValueError):
            # in-memory streams (io.StringIO raises UnsupportedOperation)
            return False
        return stat.S_ISREG(os.fstat(fd).st_mode)

    def close(self) -> None:
        try:
            self._stream.close()
        except OSError as exc:
            raise SinkSyncError(f"failed closing pin blaster sink: {exc}") from exc

    def __enter__(self) -> "PinBlaster":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
