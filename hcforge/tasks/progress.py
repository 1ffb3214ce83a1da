"""Progress marker parsing and per-job progress tracking.

Startup scripts print lines of the form::

    [hc-forge-progress] <percent> <message>

Every other output line is treated as plain log output.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from hcforge.constants import PROGRESS_TAG
from hcforge.types import ProgressInfo, utcnow

_MARKER = re.compile(rf"{re.escape(PROGRESS_TAG)}\s+(-?\d+)(?:\s+(.*))?$")


@dataclass(frozen=True, slots=True)
class ProgressMarker:
    percent: int
    message: str | None = None


def parse_progress_line(line: str) -> ProgressMarker | None:
    """Extract a progress marker, clamping the percent to 0-100.

    Example:
        >>> parse_progress_line("[hc-forge-progress] 26 apt metadata refreshed.")
        ProgressMarker(percent=26, message='apt metadata refreshed.')
    """
    m = _MARKER.search(line.strip())
    if m is None:
        return None
    percent = max(0, min(100, int(m.group(1))))
    message = (m.group(2) or "").strip() or None
    return ProgressMarker(percent=percent, message=message)


class ProgressTracker:
    """Progress of startup jobs, keyed by resource id.

    Percent only moves forward while a job runs; the last line follows
    whatever the job printed most recently.
    """

    def __init__(self) -> None:
        self._progress: dict[str, ProgressInfo] = {}

    def start(self, resource_id: str, session_id: str) -> ProgressInfo:
        info = ProgressInfo(session_id=session_id, started_at=utcnow(), percent=0)
        self._progress[resource_id] = info
        return info

    def observe(self, resource_id: str, line: str) -> ProgressInfo | None:
        info = self._progress.get(resource_id)
        if info is None or not info.running:
            return None
        text = line.strip()
        if not text:
            return info

        marker = parse_progress_line(text)
        if marker is None:
            info.last_line = text
            return info

        if info.percent is None or marker.percent >= info.percent:
            info.percent = marker.percent
        if marker.message:
            info.last_line = marker.message
        return info

    def finish(self, resource_id: str, *, success: bool, message: str | None = None) -> ProgressInfo | None:
        """Replace the running entry with its final snapshot."""
        info = self._progress.get(resource_id)
        if info is None:
            return None
        final = ProgressInfo(
            session_id=None,
            started_at=info.started_at,
            finished_at=utcnow(),
            percent=100 if success else info.percent,
            last_line=message or info.last_line,
        )
        self._progress[resource_id] = final
        return final

    def get(self, resource_id: str) -> ProgressInfo | None:
        return self._progress.get(resource_id)

    def discard(self, resource_id: str) -> None:
        self._progress.pop(resource_id, None)

    def clear(self) -> None:
        self._progress.clear()

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self._progress
