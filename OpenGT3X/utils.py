from datetime import datetime, timezone


def start_datetime(start_time: int) -> datetime:
    """
    Convert a log start time to a UTC datetime.

    Parameters:
    -----------
    start_time : int
        UNIX seconds, as read from the PARAMETERS record

    Returns:
    --------
    datetime : timezone-aware UTC datetime
    """
    return datetime.fromtimestamp(start_time, tz=timezone.utc)


def format_start_time(start_time: int) -> str:
    """Start time in ISO 8601 format with UTC timezone."""
    return start_datetime(start_time).isoformat()
