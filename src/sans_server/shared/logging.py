"""Logging configuration for sans-server."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any


def setup_logging(level: int | str = logging.INFO) -> None:
    """
    Configure logging for the application.

    Args:
        level: Logging level (default: INFO)
    """
    format_string = "%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d | %(message)s"

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    formatter = logging.Formatter(format_string, datefmt="%Y-%m-%d %H:%M:%S")
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


def format_seconds(seconds: float) -> str:
    """Format a duration in seconds with millisecond precision."""
    return f"{seconds:.3f}s"


def fixed_length(value: str, length: int) -> str:
    """Pad or truncate a value to exactly ``length`` characters."""
    return value[:length].ljust(length)


def format_event(
    record: dict[str, Any],
    *,
    widths: tuple[int, int],
    grouped: bool,
    timestamp: bool,
    time_diff: bool,
    duration: bool,
    verbose: bool,
) -> str:
    """
    Render one aggregated log event as a single line.

    Args:
        record: Event data with category, action, message, details, now, diff, duration and request_id
        widths: Column widths for the category and action columns
        grouped: Grouped output omits the request id
        timestamp: Include the ISO timestamp of the event
        time_diff: Include the time elapsed since the previous event
        duration: Include the time elapsed since the request started
        verbose: Append the event details as JSON

    Returns:
        Formatted line
    """
    parts = [
        fixed_length(record["category"].lower(), widths[0]),
        fixed_length(record["action"], widths[1]),
    ]
    if not grouped:
        parts.append(record["request_id"])
    if timestamp:
        parts.append(datetime.fromtimestamp(record["now"], tz=timezone.utc).isoformat())
    if time_diff:
        parts.append("+" + format_seconds(record["diff"]))
    if duration:
        parts.append("@" + format_seconds(record["duration"]))
    parts.append(record["message"])

    line = "  ".join(parts)
    if verbose and record["details"]:
        details = json.dumps(record["details"], indent=2, default=repr)
        line += "\n" + "\n".join("\t" + row for row in details.splitlines())
    return line
