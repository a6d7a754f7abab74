"""
Parses yt-dlp's textual progress output.

Nothing in this module touches a process or a socket: the queue processor
feeds it decoded stdout chunks and decides what to do with the results.
"""
import re
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Tuple

# [download]  10.5% of ~   4.77MiB at  148.53KiB/s ETA 00:15 (frag 2/38)
FRAGMENT_PROGRESS_RE = re.compile(
    r'\[download\]\s+(\d+(?:\.\d+)?)%\s+of\s+~\s*(\S+)\s+at\s+(\S+)\s+ETA\s+(\S+)\s+\(frag\s+\d+/\d+\)'
)
# [download]  12.3% of 123.45MB at 456.78KiB/s ETA 10:21
PROGRESS_RE = re.compile(
    r'\[download\]\s+(\d+(?:\.\d+)?)%\s+of\s+(\S+)\s+at\s+(\S+)\s+ETA\s+(\S+)'
)
# [download] Destination: video_title.mp4
DESTINATION_RE = re.compile(r'\[download\]\s+Destination:\s+(.+)')
# [info] video_title: Downloading 1 format(s): 22
INFO_TITLE_RE = re.compile(r'\[info\]\s+(.+?):\s+Downloading')

_LINE_BREAK_RE = re.compile(r'\r\n|\r|\n')


def split_lines(buffer: str, chunk: str) -> Tuple[str, List[str]]:
    """
    Appends ``chunk`` to ``buffer`` and cuts off every complete line.

    Returns:
        The unterminated remainder and the complete, stripped, non-blank lines.
    """
    parts = _LINE_BREAK_RE.split(buffer + chunk)
    remainder = parts.pop()
    return remainder, [line.strip() for line in parts if line.strip()]


@dataclass(frozen=True)
class ProgressEvent:
    """One recognised line. ``kind`` is 'progress', 'destination' or 'title'."""
    kind: str
    percentage: Optional[float] = None
    file_size: Optional[str] = None
    speed: Optional[str] = None
    eta: Optional[str] = None
    approximate: bool = False
    filename: Optional[str] = None


def parse_progress_line(line: str) -> Optional[ProgressEvent]:
    """Returns the event a line describes, or None for anything unrecognised."""
    if match := FRAGMENT_PROGRESS_RE.search(line):
        percentage, file_size, speed, eta = match.groups()
        return ProgressEvent('progress', float(percentage), file_size, speed, eta, approximate=True)
    if match := PROGRESS_RE.search(line):
        percentage, file_size, speed, eta = match.groups()
        return ProgressEvent('progress', float(percentage), file_size, speed, eta)
    if match := DESTINATION_RE.search(line):
        return ProgressEvent('destination', filename=match.group(1).strip())
    if match := INFO_TITLE_RE.search(line):
        return ProgressEvent('title', filename=match.group(1).strip())
    return None


@dataclass
class ProgressRecord:
    """What is currently known about one in-flight download."""
    percentage: Optional[float] = None
    file_size: Optional[str] = None
    speed: Optional[str] = None
    eta: Optional[str] = None
    approximate: bool = False
    filename: Optional[str] = None

    def apply(self, event: ProgressEvent) -> bool:
        """
        Folds an event into the record.

        Returns:
            True if this event made the filename known for the first time.
        """
        had_filename = self.filename is not None
        if event.kind == 'progress':
            self.percentage = event.percentage
            self.file_size = event.file_size
            self.speed = event.speed
            self.eta = event.eta
            self.approximate = event.approximate
        elif event.kind == 'destination':
            self.filename = event.filename
        elif event.kind == 'title' and not had_filename:
            # The info line only names the video; a destination line wins.
            self.filename = event.filename
        return not had_filename and self.filename is not None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class BroadcastThrottle:
    """Lets at most one notification per ``interval`` seconds through for each job."""

    def __init__(self, interval: float = 1.0):
        self.interval = interval
        self._last_emitted: Dict[str, float] = {}

    def should_emit(self, job_id: str, force: bool = False, now: Optional[float] = None) -> bool:
        """
        Decides whether an update for ``job_id`` may be forwarded now, and records it if so.

        ``force`` bypasses the interval.
        """
        now = time.monotonic() if now is None else now
        last = self._last_emitted.get(job_id)
        if force or last is None or now - last >= self.interval:
            self._last_emitted[job_id] = now
            return True
        return False

    def forget(self, job_id: str):
        self._last_emitted.pop(job_id, None)
