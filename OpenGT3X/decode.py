"""
GT3X Log Record Parser
============================================

Decodes the log.bin stream found inside a .gt3x archive into a table of
tri-axial acceleration samples with per-sample timestamps.

Stream Structure:
-----------------
The log is a flat sequence of self-delimited RECORDS:

RECORD
  ├─ Separator: 0x1E (1 byte)
  ├─ Header (7 bytes, little-endian)
  │    ├─ type: record type tag (1 byte), see RecordType
  │    ├─ payload_start: UNIX seconds when the payload starts (4 bytes)
  │    └─ size: payload length in bytes (2 bytes)
  ├─ Payload (size bytes)
  └─ Checksum (1 byte, consumed but not verified)

Only three record types are interpreted:
  - PARAMETERS (0x15): device attributes, including the logging start time
  - ACTIVITY   (0x00): one second of samples, 12-bit values bit-packed
  - ACTIVITY2  (0x1A): one second of samples, little-endian int16 values
Every other record is skipped by seeking over its payload.

Timestamps:
-----------
Samples inside an activity record are assumed evenly spaced across the one
second starting at payload_start. Sample i is stamped

    round(((payload_start - start_time) + i / sample_rate) * 100)

i.e. centiseconds elapsed since the start time from the PARAMETERS record.
The start time must therefore be read before the first activity record,
which is how devices write the log.

Output:
-------
Samples are decoded into a pre-allocated, zero-filled buffer of max_samples
rows. A record whose samples do not fit in the remaining rows stops the
parse. At the end the raw counts are divided by the scale factor, rounded to
3 decimals and the table is truncated to the rows actually written.
"""

import io
import logging
import os
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import BinaryIO, Callable, Dict, List, Optional, Union

import numpy as np
import pandas as pd

from .params import ParameterEntry, parse_parameters


logger = logging.getLogger(__name__)

# Protocol constants
RECORD_SEPARATOR = 0x1E
HEADER_SIZE = 7  # type (1) + payload_start (4) + size (2)
N_ACTIVITY_COLUMNS = 3
ACTIVITY_COLUMNS = ("X", "Y", "Z")
ACTIVITY2_SAMPLE_SIZE = 2 * N_ACTIVITY_COLUMNS
TIME_UNIT = 100  # timestamps are in 1/100 s
SIGNIF_DIGITS = 3


class RecordType(IntEnum):
    """Log record type tags."""

    ACTIVITY = 0x00  # 12-bit packed samples
    BATTERY = 0x02
    EVENT = 0x03
    HEART_RATE_BPM = 0x04
    LUX = 0x05
    METADATA = 0x06
    TAG = 0x07
    EPOCH = 0x09
    HEART_RATE_ANT = 0x0B
    EPOCH2 = 0x0C
    CAPSENSE = 0x0D
    HEART_RATE_BLE = 0x0E
    EPOCH3 = 0x0F
    EPOCH4 = 0x10
    PARAMETERS = 0x15
    SENSOR_SCHEMA = 0x18
    SENSOR_DATA = 0x19
    ACTIVITY2 = 0x1A  # int16 samples


@dataclass
class RecordHeader:
    """Header that follows every record separator."""

    type: int
    payload_start: int
    size: int

    @property
    def record_type(self) -> Optional[RecordType]:
        """The RecordType for this header, or None for an unknown tag."""
        try:
            return RecordType(self.type)
        except ValueError:
            return None

    @classmethod
    def from_bytes(cls, data: bytes) -> "RecordHeader":
        if len(data) < HEADER_SIZE:
            raise ValueError(f"Record header too short: {len(data)} < {HEADER_SIZE}")
        rtype, payload_start, size = struct.unpack_from("<BIH", data, 0)
        return cls(type=rtype, payload_start=payload_start, size=size)


class SampleBuffer:
    """
    Fixed-capacity output table.

    Holds `capacity` zero-filled rows of X/Y/Z samples and a parallel
    timestamp vector. `total_records` is the write cursor: rows before it
    belong to decoded records, rows after it are still zero.
    """

    def __init__(self, capacity: int):
        self.capacity = capacity
        self.samples = np.zeros((capacity, N_ACTIVITY_COLUMNS), dtype=np.float64)
        self.timestamps = np.zeros(capacity, dtype=np.int64)
        self.total_records = 0

    @property
    def remaining(self) -> int:
        return self.capacity - self.total_records

    def write(self, values: np.ndarray, timestamps: List[int]) -> None:
        """
        Append one record's rows at the cursor.

        `values` may hold fewer than 3 * len(timestamps) entries when the
        stream ran out; the missing cells stay zero.
        """
        n_samples = len(timestamps)
        if n_samples > self.remaining:
            raise ValueError(
                f"{n_samples} rows do not fit in the remaining {self.remaining}"
            )

        start = self.total_records
        block = np.zeros(n_samples * N_ACTIVITY_COLUMNS, dtype=np.float64)
        block[: len(values)] = values
        self.samples[start : start + n_samples] = block.reshape(
            n_samples, N_ACTIVITY_COLUMNS
        )
        self.timestamps[start : start + n_samples] = timestamps
        self.total_records += n_samples


@dataclass
class DecoderContext:
    """State shared by the record decoders for one parse."""

    sample_rate: int
    start_time: int = 0
    verbose: bool = False
    debug: bool = False
    parameters: List[ParameterEntry] = field(default_factory=list)


@dataclass
class ParsedLog:
    """Decoded activity samples and metadata."""

    samples: np.ndarray  # (n, 3) scaled X, Y, Z
    timestamps: np.ndarray  # (n,) centiseconds since start_time
    start_time: int
    sample_rate: int
    parameters: List[ParameterEntry] = field(default_factory=list)

    @property
    def total_records(self) -> int:
        return len(self.timestamps)

    @property
    def time_seconds(self) -> np.ndarray:
        """Absolute sample times in UNIX seconds."""
        return self.start_time + self.timestamps / TIME_UNIT


def _round_half_away(x):
    """Round half away from zero (C `round`), for scalars and arrays."""
    return np.sign(x) * np.floor(np.abs(x) + 0.5)


def create_timestamp(
    payload_start: int, sample_index: int, sample_rate: int, start_time: int
) -> int:
    """Centiseconds between `start_time` and sample `sample_index` of a record."""
    elapsed = (payload_start - start_time) + sample_index * (1.0 / sample_rate)
    return int(_round_half_away(elapsed * TIME_UNIT))


def _record_timestamps(header: RecordHeader, n_samples: int, ctx: DecoderContext) -> List[int]:
    return [
        create_timestamp(header.payload_start, i, ctx.sample_rate, ctx.start_time)
        for i in range(n_samples)
    ]


def expected_sample_count(header: RecordHeader) -> int:
    """Number of samples a record carries, 0 for non-activity records."""
    if header.type == RecordType.ACTIVITY:
        return (header.size * 2) // 9
    if header.type == RecordType.ACTIVITY2:
        return (header.size // 2) // 3
    return 0


# ============================================================================
# Activity decoders
# ============================================================================


def _sign_extend_12(value: int) -> int:
    if value & 0x800:
        value -= 0x1000
    return value


def _packed_size(n_values: int) -> int:
    """Bytes holding `n_values` 12-bit fields: 3 bytes per pair, 2 for an odd tail."""
    return (n_values // 2) * 3 + (n_values % 2) * 2


class _NibbleReader:
    """
    Sequential reader for 12-bit big-endian packed fields.

    Fields alternate between two alignments for the whole record:

        even: [AAAAAAAA][AAAA bbbb]   field = byte0 << 4 | high nibble of byte1
        odd:            [.... BBBB][BBBBBBBB]
                        carried low nibble << 8 | next byte

    The phase flag and the carried byte are the only state.
    """

    def __init__(self, data: bytes):
        self._data = data
        self._pos = 0
        self._odd = False
        self._current = 0

    def read(self) -> Optional[int]:
        """Next signed field, or None when the data is exhausted."""
        data = self._data
        if not self._odd:
            if self._pos + 2 > len(data):
                return None
            high = data[self._pos]
            self._current = data[self._pos + 1]
            self._pos += 2
            value = ((high & 0xFF) << 4) | ((self._current & 0xF0) >> 4)
        else:
            if self._pos >= len(data):
                return None
            value = (self._current & 0x0F) << 8
            self._current = data[self._pos]
            self._pos += 1
            value |= self._current & 0xFF

        self._odd = not self._odd
        return _sign_extend_12(value)


def parse_activity(
    stream: BinaryIO,
    header: RecordHeader,
    n_samples: int,
    buffer: SampleBuffer,
    ctx: DecoderContext,
) -> None:
    """
    Decode an ACTIVITY record (12-bit packed samples) into `buffer`.

    Reads only the bytes that `n_samples` full samples occupy. If the stream
    ends early, decoding stops and the rest of the record's cells stay zero.
    """
    if ctx.debug:
        print(f"Start: {buffer.total_records} Records: {n_samples}")

    n_values = n_samples * N_ACTIVITY_COLUMNS
    reader = _NibbleReader(stream.read(_packed_size(n_values)))

    values = []
    for _ in range(n_values):
        value = reader.read()
        if value is None:
            break
        values.append(value)

    buffer.write(np.array(values, dtype=np.float64), _record_timestamps(header, n_samples, ctx))


def parse_activity2(
    stream: BinaryIO,
    header: RecordHeader,
    n_samples: int,
    buffer: SampleBuffer,
    ctx: DecoderContext,
) -> None:
    """Decode an ACTIVITY2 record (int16 X, Y, Z per sample) into `buffer`."""
    if ctx.debug:
        print(f"Start: {buffer.total_records} Records: {n_samples}")

    data = stream.read(n_samples * ACTIVITY2_SAMPLE_SIZE)
    n_values = len(data) // 2
    values = np.frombuffer(data[: n_values * 2], dtype="<i2").astype(np.float64)

    buffer.write(values, _record_timestamps(header, n_samples, ctx))


def _parse_parameters_record(
    stream: BinaryIO,
    header: RecordHeader,
    n_samples: int,
    buffer: SampleBuffer,
    ctx: DecoderContext,
) -> None:
    ctx.start_time, entries = parse_parameters(
        stream, header.size, ctx.start_time, verbose=ctx.verbose
    )
    ctx.parameters.extend(entries)


def _skip_record(
    stream: BinaryIO,
    header: RecordHeader,
    n_samples: int,
    buffer: SampleBuffer,
    ctx: DecoderContext,
) -> None:
    stream.seek(header.size, io.SEEK_CUR)


RecordHandler = Callable[
    [BinaryIO, RecordHeader, int, SampleBuffer, DecoderContext], None
]

# Record types with a decoder; everything else falls through to _skip_record
RECORD_HANDLERS: Dict[RecordType, RecordHandler] = {
    RecordType.PARAMETERS: _parse_parameters_record,
    RecordType.ACTIVITY: parse_activity,
    RecordType.ACTIVITY2: parse_activity2,
}


# ============================================================================
# Framing
# ============================================================================


def read_header(stream: BinaryIO) -> Optional[RecordHeader]:
    """Read a record header, or None if the stream ends inside it."""
    data = stream.read(HEADER_SIZE)
    if len(data) < HEADER_SIZE:
        return None
    return RecordHeader.from_bytes(data)


def _validate_arguments(max_samples: int, scale_factor: float, sample_rate: int) -> None:
    if isinstance(max_samples, bool) or not isinstance(max_samples, (int, np.integer)):
        raise ValueError("max_samples must be an integer")
    if max_samples <= 0:
        raise ValueError("max_samples must be positive")
    if scale_factor <= 0:
        raise ValueError("scale_factor must be positive")
    if sample_rate <= 0:
        raise ValueError("sample_rate must be positive")


def finalize(
    buffer: SampleBuffer,
    ctx: DecoderContext,
    scale_factor: float,
    digits: int = SIGNIF_DIGITS,
) -> ParsedLog:
    """Scale and round the written rows, then truncate to them."""
    n = buffer.total_records
    multiplier = 10.0**digits

    if ctx.verbose:
        print("Scaling...")
    scaled = _round_half_away((buffer.samples[:n] / scale_factor) * multiplier) / multiplier

    if ctx.verbose:
        print("Removing excess rows")
    return ParsedLog(
        samples=scaled,
        timestamps=buffer.timestamps[:n].copy(),
        start_time=ctx.start_time,
        sample_rate=ctx.sample_rate,
        parameters=ctx.parameters,
    )


def parse_log(
    stream: BinaryIO,
    max_samples: int,
    scale_factor: float,
    sample_rate: int,
    verbose: bool = False,
    debug: bool = False,
) -> ParsedLog:
    """
    Parse activity samples from a GT3X log stream.

    Parameters:
    -----------
    stream : BinaryIO
        Seekable binary stream positioned at the start of log.bin. The caller
        owns it and is responsible for closing it.
    max_samples : int
        Maximum number of sample rows to decode. Parsing stops at the first
        record that would not fit.
    scale_factor : float
        Raw counts per g; samples are divided by it.
    sample_rate : int
        Samples per second, used to space timestamps within a record.
    verbose : bool
        Print the parameter dump and progress messages.
    debug : bool
        Print a line for every activity record.

    Returns:
    --------
    ParsedLog : samples (n, 3), timestamps (n,), start_time, sample_rate
    """
    _validate_arguments(max_samples, scale_factor, sample_rate)

    buffer = SampleBuffer(max_samples)
    ctx = DecoderContext(sample_rate=sample_rate, verbose=verbose, debug=debug)

    while True:
        item = stream.read(1)
        if not item:
            break

        if item[0] != RECORD_SEPARATOR:
            logger.warning(
                "Byte 0x%02X at offset %d was not a record separator",
                item[0],
                stream.tell() - 1,
            )
            continue

        header = read_header(stream)
        if header is None:
            break

        n_samples = expected_sample_count(header)
        if n_samples > buffer.remaining:
            logger.warning(
                "max_samples reached prematurely: record at %d holds %d samples, "
                "%d rows left",
                header.payload_start,
                n_samples,
                buffer.remaining,
            )
            break

        handler = RECORD_HANDLERS.get(header.record_type, _skip_record)
        handler(stream, header, n_samples, buffer, ctx)

        stream.read(1)  # checksum

    if verbose:
        print(f"Sample size: {buffer.total_records}")

    return finalize(buffer, ctx, scale_factor)


def read_log(
    path: Union[str, os.PathLike],
    max_samples: int,
    scale_factor: float,
    sample_rate: int,
    verbose: bool = False,
    debug: bool = False,
) -> ParsedLog:
    """Open a log.bin file and parse it with parse_log()."""
    with open(path, "rb") as f:
        return parse_log(
            f,
            max_samples=max_samples,
            scale_factor=scale_factor,
            sample_rate=sample_rate,
            verbose=verbose,
            debug=debug,
        )


def to_dataframe(parsed: ParsedLog) -> pd.DataFrame:
    """
    Convert a ParsedLog to a DataFrame.

    Returns:
    --------
    pd.DataFrame : columns [time, X, Y, Z], time in UNIX seconds

    Example:
    --------
    >>> parsed = read_log("log.bin", max_samples=30 * 3600, scale_factor=341, sample_rate=30)
    >>> df = to_dataframe(parsed)
    >>> print(df.columns.tolist())
    ['time', 'X', 'Y', 'Z']
    """
    data = np.column_stack((parsed.time_seconds, parsed.samples))
    return pd.DataFrame(data, columns=["time", *ACTIVITY_COLUMNS])
