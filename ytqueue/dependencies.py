"""Locates yt-dlp and FFmpeg and reports their versions."""
import re
import sys
import shutil
import asyncio
import logging
from pathlib import Path
from typing import Dict, List, Optional

from .constants import APP_PATH, SUBPROCESS_CREATION_FLAGS

FFMPEG_VERSION_RE = re.compile(r'ffmpeg version (\S+)')


class DependencyManager:
    """Finds the external tools the queue depends on."""

    def __init__(self, app_path: Path = APP_PATH):
        self.app_path = app_path
        self.logger = logging.getLogger(__name__)
        self.yt_dlp_path: Optional[Path] = None
        self.ffmpeg_path: Optional[Path] = None
        self.versions: Dict[str, Optional[str]] = {'yt_dlp': None, 'ffmpeg': None}

    async def initialize(self):
        """Asynchronously finds paths and versions to avoid blocking the event loop."""
        self.logger.info("Initializing dependency paths...")
        self.yt_dlp_path, self.ffmpeg_path = await asyncio.gather(
            asyncio.to_thread(self.find_yt_dlp),
            asyncio.to_thread(self.find_ffmpeg)
        )
        self.logger.info(f"yt-dlp path: {self.yt_dlp_path}")
        self.logger.info(f"FFmpeg path: {self.ffmpeg_path}")

        yt_dlp_version, ffmpeg_version = await asyncio.gather(
            self.get_version(self.yt_dlp_path),
            self.get_version(self.ffmpeg_path)
        )
        self.versions = {'yt_dlp': yt_dlp_version, 'ffmpeg': ffmpeg_version}
        self.logger.info(f"Version detection completed: yt-dlp {yt_dlp_version or 'not available'}, "
                         f"ffmpeg {ffmpeg_version or 'not available'}")

    def find_yt_dlp(self) -> Optional[Path]:
        """Finds the yt-dlp executable."""
        self.yt_dlp_path = self._find_executable('yt-dlp')
        return self.yt_dlp_path

    def find_ffmpeg(self) -> Optional[Path]:
        """Finds the ffmpeg executable."""
        self.ffmpeg_path = self._find_executable('ffmpeg')
        return self.ffmpeg_path

    def _find_executable(self, name: str) -> Optional[Path]:
        """Finds an executable, preferring a locally managed one."""
        local_path = self.app_path / (f'{name}.exe' if sys.platform == 'win32' else name)
        if local_path.exists():
            return local_path
        path_in_system = shutil.which(name)
        return Path(path_in_system) if path_in_system else None

    async def get_version(self, executable_path: Optional[Path]) -> Optional[str]:
        """Returns the version an executable reports, or None if it cannot be run."""
        if not executable_path or not executable_path.exists():
            return None
        is_ffmpeg = 'ffmpeg' in executable_path.name.lower()
        command: List[str] = [str(executable_path), '-version' if is_ffmpeg else '--version']

        kwargs = {'stdout': asyncio.subprocess.PIPE, 'stderr': asyncio.subprocess.PIPE}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS

        process = None
        try:
            process = await asyncio.create_subprocess_exec(*command, **kwargs)
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=15)
        except asyncio.TimeoutError:
            if process and process.returncode is None:
                process.kill()
            self.logger.warning(f"Version check timed out for {executable_path}")
            return None
        except OSError as e:
            self.logger.debug(f"Cannot execute {executable_path}: {e}")
            return None

        if process.returncode != 0:
            return None

        output = (stdout_bytes or stderr_bytes).decode('utf-8', 'replace').strip()
        if is_ffmpeg:
            match = FFMPEG_VERSION_RE.search(output)
            return match.group(1) if match else None
        return output.splitlines()[0] if output else None

    @property
    def is_yt_dlp_available(self) -> bool:
        return self.yt_dlp_path is not None
