"""Lists and deletes the files in the finished-downloads folder."""
import asyncio
import logging
import os
import re
import stat
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

import aiofiles.os

from .constants import SYSTEM_FILES
from .exceptions import AccessDeniedError, NotFoundError
from .validators import validate_filename

VIDEO_RE = re.compile(r'\.(mkv|mp4|webm|avi|mov)$', re.IGNORECASE)
SUBTITLE_RE = re.compile(r'\.(srt|vtt|dfxp|ass|ttml|sbv|lrc)$', re.IGNORECASE)


def format_file_size(size: int) -> str:
    """Formats a byte count for display, e.g. ``1.5 MB``."""
    if size <= 0:
        return '0 Bytes'
    units = ['Bytes', 'KB', 'MB', 'GB', 'TB']
    index = 0
    value = float(size)
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{round(value, 2):g} {units[index]}"


class DownloadedFilesService:
    """
    Read and delete access to completed downloads.

    Every filename coming from a client is checked to resolve to a direct
    child of the downloads folder before it is touched.
    """
    def __init__(self, downloads_dir: Path):
        self.downloads_dir = Path(downloads_dir)
        self.logger = logging.getLogger(__name__)

    def _describe(self, path: Path, stats: os.stat_result) -> Dict[str, Any]:
        return {
            'name': path.name,
            'extension': path.suffix.lower(),
            'size': stats.st_size,
            'formatted_size': format_file_size(stats.st_size),
            'modified': datetime.fromtimestamp(stats.st_mtime, timezone.utc).isoformat(),
            'is_video': bool(VIDEO_RE.search(path.name)),
            'is_subtitle': bool(SUBTITLE_RE.search(path.name)),
        }

    async def get_downloaded_files(self) -> List[Dict[str, Any]]:
        """Returns every finished file, sorted by name. A missing folder yields []."""
        try:
            names = await asyncio.to_thread(os.listdir, self.downloads_dir)
        except FileNotFoundError:
            return []

        files = []
        for name in names:
            if name in SYSTEM_FILES:
                continue
            path = self.downloads_dir / name
            try:
                stats = await aiofiles.os.stat(path)
            except FileNotFoundError:
                continue
            if not stat.S_ISREG(stats.st_mode):
                continue
            files.append(self._describe(path, stats))
        return sorted(files, key=lambda f: f['name'])

    async def resolve_file(self, filename: str) -> Path:
        """
        Maps a client-supplied name to a file inside the downloads folder.

        Raises:
            ValidationError: If the name is empty or contains a path component.
            AccessDeniedError: If the name resolves outside the downloads folder.
            NotFoundError: If there is no such file.
        """
        validated_filename = validate_filename(filename)
        downloads_dir = self.downloads_dir.resolve()
        path = (downloads_dir / validated_filename).resolve()
        if path.parent != downloads_dir:
            self.logger.warning(f"Access denied for file outside downloads directory: {filename}")
            raise AccessDeniedError("Access denied")
        if not await aiofiles.os.path.isfile(path):
            self.logger.warning(f"File not found: {filename}")
            raise NotFoundError("File not found")
        return path

    async def get_file_stats(self, filename: str) -> Dict[str, Any]:
        path = await self.resolve_file(filename)
        return self._describe(path, await aiofiles.os.stat(path))

    async def delete_file(self, filename: str) -> Dict[str, str]:
        """
        Deletes one finished file.

        Raises:
            NotFoundError: If the file does not exist (or vanished meanwhile).
        """
        path = await self.resolve_file(filename)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            raise NotFoundError("File not found") from None
        self.logger.info(f"File deleted: {path.name}")
        return {'message': 'File deleted successfully', 'type': 'success'}
