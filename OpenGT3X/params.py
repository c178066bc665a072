"""
GT3X Parameter Records
======================

PARAMETERS records (type 0x15) are written once when the device starts
logging. The payload is a flat list of 8-byte entries:

    [address (2 bytes LE)][key (2 bytes LE)][value (4 bytes LE)]

  - address 0: device attributes. A handful of keys hold floats packed in a
    custom 32-bit format (see decode_float_parameter).
  - address 1, key 12: logging start time, UNIX seconds. This is the zero
    point for every sample timestamp in the log.

Everything else is read and kept only for reporting.
"""

import struct
import sys
from dataclasses import dataclass
from typing import BinaryIO, List, Tuple, Union


PARAMETER_ENTRY_SIZE = 8

# Float-encoded parameters
PARAM_FLOAT_MAXIMUM = 8388608.0  # 2^23
PARAM_ENCODED_MINIMUM = 0x00800000
PARAM_ENCODED_MAXIMUM = 0x007FFFFF
PARAM_SIGNIFICAND_MASK = 0x00FFFFFF
PARAM_EXPONENT_MASK = 0xFF000000
PARAM_EXPONENT_OFFSET = 24

DEVICE_ADDRESS = 0
CLOCK_ADDRESS = 1
START_TIME_KEY = 12
FLOAT_PARAMETER_KEYS = frozenset({49, 51, 55, 57, 58})


@dataclass
class ParameterEntry:
    """One address/key/value triple from a PARAMETERS record."""

    address: int
    key: int
    value: int
    decoded: Union[int, float]

    @property
    def is_start_time(self) -> bool:
        return self.address == CLOCK_ADDRESS and self.key == START_TIME_KEY


def decode_float_parameter(value: int) -> float:
    """
    Decode a float parameter value.

    The top byte is a signed exponent, the low 24 bits a signed significand
    normalised by 2^23. Two reserved encodings stand for +/- the largest
    double.

    Parameters:
    -----------
    value : int
        Raw unsigned 32-bit value from the parameter entry

    Returns:
    --------
    float : Decoded value
    """
    if value == PARAM_ENCODED_MAXIMUM:
        return sys.float_info.max
    if value == PARAM_ENCODED_MINIMUM:
        return -sys.float_info.max

    exponent = (value & PARAM_EXPONENT_MASK) >> PARAM_EXPONENT_OFFSET
    if exponent & 0x80:
        exponent -= 0x100

    significand = value & PARAM_SIGNIFICAND_MASK
    if significand & PARAM_ENCODED_MINIMUM:
        significand -= 0x1000000

    return (significand / PARAM_FLOAT_MAXIMUM) * 2.0**exponent


def _decode_entry(address: int, key: int, value: int) -> ParameterEntry:
    if address == DEVICE_ADDRESS and key in FLOAT_PARAMETER_KEYS:
        decoded: Union[int, float] = decode_float_parameter(value)
    else:
        decoded = value
    return ParameterEntry(address=address, key=key, value=value, decoded=decoded)


def parse_parameters(
    stream: BinaryIO, size: int, start_time: int, verbose: bool = False
) -> Tuple[int, List[ParameterEntry]]:
    """
    Read a PARAMETERS payload of `size` bytes from `stream`.

    Only `size // 8` whole entries are consumed; a trailing remainder is left
    unread. If the stream ends mid-entry, the block ends early.

    Returns:
    --------
    tuple : (start_time, entries)
        start_time is the value of the last start-time entry in the block, or
        the incoming `start_time` if the block has none.
    """
    n_params = size // PARAMETER_ENTRY_SIZE
    entries: List[ParameterEntry] = []

    if verbose:
        print("---GT3X PARAMETERS")

    for _ in range(n_params):
        raw = stream.read(PARAMETER_ENTRY_SIZE)
        if len(raw) < PARAMETER_ENTRY_SIZE:
            break

        address, key, value = struct.unpack("<HHI", raw)
        entry = _decode_entry(address, key, value)
        entries.append(entry)

        if entry.is_start_time:
            start_time = value

        if verbose:
            label = " (start time)" if entry.is_start_time else ""
            print(f"address: {address} key: {key}{label} value: {entry.decoded}")

    if verbose:
        print("---END PARAMETERS\n")

    return start_time, entries
