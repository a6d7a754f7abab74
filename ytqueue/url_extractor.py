"""
Provides methods to extract information from URLs using yt-dlp.
"""

import asyncio
import json
import sys
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from .exceptions import MetadataExtractionError
from .constants import SUBPROCESS_CREATION_FLAGS


def metadata_from_info(info: Dict[str, Any]) -> Dict[str, Any]:
    """
    Picks the fields the queue cares about out of a ``--dump-json`` document.

    The size comes from the first of ``filesize_approx``, ``filesize`` and the
    first requested format's ``filesize``; failing those it is estimated from
    the total bitrate and the duration.
    """
    requested_formats = info.get('requested_formats') or [{}]
    filesize = (
        info.get('filesize_approx')
        or info.get('filesize')
        or requested_formats[0].get('filesize')
        or None
    )

    filesize_estimated = False
    if not filesize and info.get('tbr') and info.get('duration'):
        # tbr is in KBit/s
        filesize = round(info['tbr'] * info['duration'] * 1024 / 8)
        filesize_estimated = True

    return {
        'title': info.get('title'),
        'filesize': filesize,
        'filesize_estimated': filesize_estimated,
        'duration': info.get('duration'),
        'uploader': info.get('uploader'),
        'upload_date': info.get('upload_date'),
        'view_count': info.get('view_count'),
        'like_count': info.get('like_count'),
        'description': info.get('description'),
        'thumbnail': info.get('thumbnail'),
    }


class MetadataExtractor:
    """
    Runs yt-dlp in describe-only mode to learn about a URL without downloading it.

    Every public method resolves to None on failure: callers treat metadata
    as a nice-to-have.
    """
    def __init__(self, yt_dlp_path: Union[Path, str] = 'yt-dlp'):
        """
        Initializes the MetadataExtractor.

        Args:
            yt_dlp_path: The path to the yt-dlp executable.
        """
        self.yt_dlp_path = yt_dlp_path
        self.logger = logging.getLogger(__name__)

    def _parse_yt_dlp_error(self, stderr: str) -> str:
        """
        Parses stderr from yt-dlp to find a concise error message.

        Args:
            stderr: The standard error string from the yt-dlp process.

        Returns:
            A concise error message, or the last line of stderr as a fallback.
        """
        if not stderr or not stderr.strip():
            return "yt-dlp returned an error with no output."

        for line in stderr.strip().splitlines():
            if line.lower().startswith('error:'):
                error_msg = line[6:].strip()
                return error_msg[:200] + "..." if len(error_msg) > 200 else error_msg

        return stderr.strip().splitlines()[-1]

    async def _run_command(self, command: List[str], timeout: float) -> Tuple[str, str]:
        """
        A robust wrapper for running a yt-dlp command.

        Args:
            command: The command and its arguments as a list of strings.
            timeout: The timeout in seconds for the command.

        Returns:
            A tuple of (stdout, stderr) on success.

        Raises:
            MetadataExtractionError: On any failure (e.g., timeout, non-zero exit code).
        """
        kwargs = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS

        process = None
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs
            )
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
            stdout = stdout_bytes.decode('utf-8', 'replace')
            stderr = stderr_bytes.decode('utf-8', 'replace')

        except FileNotFoundError:
            self.logger.error(f"yt-dlp executable not found at: {self.yt_dlp_path}")
            raise MetadataExtractionError("yt-dlp executable not found.")
        except asyncio.TimeoutError:
            await self._kill(process)
            self.logger.warning(f"yt-dlp command timed out after {timeout}s: {' '.join(command)}")
            raise MetadataExtractionError("Metadata command timed out.")
        except OSError as e:
            self.logger.error(f"OS error running yt-dlp: {e}")
            raise MetadataExtractionError(f"OS error: {e}")
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        if process.returncode != 0:
            error_msg = self._parse_yt_dlp_error(stderr)
            self.logger.warning(f"yt-dlp command failed for '{command[-1]}': {error_msg}")
            raise MetadataExtractionError(error_msg)

        return stdout, stderr

    async def _kill(self, process: Optional[asyncio.subprocess.Process]):
        if process is None or process.returncode is not None:
            return
        try:
            process.kill()
            await process.wait()
        except ProcessLookupError:
            pass # Already gone

    async def extract_metadata(self, url: str, timeout: float = 15.0) -> Optional[Dict[str, Any]]:
        """
        Describes a single URL.

        Args:
            url: The URL to probe.
            timeout: Seconds after which the probe is killed.

        Returns:
            The metadata dictionary, or None if it could not be obtained.
        """
        command = [str(self.yt_dlp_path), '--dump-json', '--no-download', '--no-warnings', '--no-playlist', url]
        try:
            stdout, _ = await self._run_command(command, timeout=timeout)
        except MetadataExtractionError:
            return None

        if not stdout.strip():
            return None
        try:
            # One JSON document per line; only the first describes the requested item.
            info = json.loads(stdout.strip().splitlines()[0])
        except json.JSONDecodeError as e:
            self.logger.warning(f"Could not parse yt-dlp metadata for {url}: {e}")
            return None
        if not isinstance(info, dict):
            return None
        return metadata_from_info(info)

    async def extract_title(self, url: str, timeout: float = 15.0) -> Optional[str]:
        """Quickly retrieves just the title for a URL."""
        metadata = await self.extract_metadata(url, timeout)
        return metadata.get('title') if metadata else None
