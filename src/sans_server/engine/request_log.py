"""Aggregation of request events into log output."""

from datetime import datetime, timezone
from typing import Any

from sans_server.engine.request import Request
from sans_server.shared.config import LogSettings
from sans_server.shared.logging import format_event, format_seconds, get_logger
from sans_server.shared.models import LogEvent, ResponseState

logger = get_logger(__name__)

MAX_COLUMN = 24


class RequestLog:
    """
    Collects the events of one request.

    Grouped logs are queued and written as one block by ``flush`` once the
    request has settled; otherwise each event is written as it arrives.
    """

    def __init__(self, settings: LogSettings, request: Request, start: float):
        self._settings = settings
        self._request = request
        self._start = start
        self._prev = start
        self._queue: list[dict[str, Any]] = []

    def record(self, event: LogEvent) -> None:
        now = event.timestamp
        data = {
            "category": event.category,
            "action": event.action,
            "message": event.message,
            "details": event.details,
            "now": now,
            "diff": now - self._prev,
            "duration": now - self._start,
            "request_id": self._request.id,
        }
        self._prev = now
        if self._settings.grouped:
            self._queue.append(data)
        else:
            logger.info(self._format(data, (MAX_COLUMN, MAX_COLUMN)))

    def flush(self, state: ResponseState) -> None:
        if not self._settings.grouped:
            return

        widths = (
            min(MAX_COLUMN, max((len(d["category"]) for d in self._queue), default=0)),
            min(MAX_COLUMN, max((len(d["action"]) for d in self._queue), default=0)),
        )
        duration = (self._queue[-1]["now"] if self._queue else self._start) - self._start
        req = self._request

        lines = [f"{state.status_code} {req.raw_method} {req.url}"]
        if state.status_code == 302:
            lines.append(f"  Redirect To: {state.headers.get('location', '')}")
        lines.append(f"  ID: {req.id}")
        lines.append(f"  Start: {datetime.fromtimestamp(self._start, tz=timezone.utc).isoformat()}")
        lines.append(f"  Duration: {format_seconds(duration)}")
        lines.append("  Events:")
        lines.extend("    " + self._format(data, widths) for data in self._queue)
        self._queue.clear()

        logger.info("\n".join(lines))

    def _format(self, data: dict[str, Any], widths: tuple[int, int]) -> str:
        settings = self._settings
        return format_event(
            data,
            widths=widths,
            grouped=settings.grouped,
            timestamp=settings.timestamp,
            time_diff=settings.time_diff,
            duration=settings.duration,
            verbose=settings.verbose,
        )
