"""OpenGT3X: Minimal utilities for decoding GT3X accelerometer logs."""

from .decode import ParsedLog, RecordType, parse_log, read_log, to_dataframe
from .params import decode_float_parameter

__version__ = "0.1.0"
