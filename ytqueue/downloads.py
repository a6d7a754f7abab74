"""Polls the job queue and supervises one yt-dlp process per active job."""
import asyncio
import codecs
import os
import re
import sys
import time
import shutil
import signal
import logging
import subprocess
from pathlib import Path
from typing import Any, Callable, Coroutine, Dict, List, Optional, Set, Union

from .config import Settings
from .constants import (
    CANCEL_CLEANUP_CUTOFF_SECONDS, PARTIAL_SUFFIXES, SUBPROCESS_CREATION_FLAGS, SYSTEM_FILES
)
from .exceptions import DownloadError, JobNotFoundError, YtQueueError
from .jobs import Job, JobManager, JobState
from .notifications import NotificationService
from .progress import BroadcastThrottle, ProgressRecord, parse_progress_line, split_lines

Broadcast = Callable[[], Coroutine[Any, Any, None]]

# Per-format streams yt-dlp writes before merging them, e.g. "clip.f137.mp4".
INTERMEDIATE_FORMAT_RE = re.compile(r'\.f\d+\.\w+$')
STDERR_TAIL_CHARS = 2000


def build_format_selector(video_quality: str) -> str:
    """Prefers H.264 MP4 video with M4A audio, height-capped unless the quality is 'no-limit'."""
    if video_quality == 'no-limit':
        return ('bestvideo[ext=mp4][vcodec^=avc1]+bestaudio[ext=m4a]/bestvideo[ext=mp4]+bestaudio[ext=m4a]/'
                'bestvideo[ext=mp4]+bestaudio/best')
    height = video_quality.rstrip('p')
    return (f'bestvideo[height<={height}][ext=mp4][vcodec^=avc1]+bestaudio[ext=m4a]/'
            f'bestvideo[height<={height}][ext=mp4]+bestaudio[ext=m4a]/'
            f'bestvideo[height<={height}][ext=mp4]+bestaudio/best[height<={height}]')


def build_yt_dlp_command(settings: Settings, url: str, yt_dlp_path: Union[Path, str] = 'yt-dlp') -> List[str]:
    """Builds the full yt-dlp command line for downloading ``url``."""
    command = [
        str(yt_dlp_path),
        # Network retries are left to yt-dlp itself.
        '--fragment-retries', '20',
        '--retries', 'infinite',
        '--socket-timeout', '30',
        '--newline',
        '-o', '%(title)s.%(ext)s',
        '--format', build_format_selector(settings.video_quality),
    ]
    if settings.rate_limit != 'no-limit':
        command.extend(['--limit-rate', settings.rate_limit])
    if settings.subtitles:
        command.append('--write-subs')
        if settings.sub_language:
            command.extend(['--sub-lang', settings.sub_language])
        command.extend(['--convert-subs', 'srt'])
    if settings.auto_subs:
        command.append('--write-auto-subs')
    command.append(url)
    return command


class QueueProcessor:
    """
    Moves queued jobs through yt-dlp.

    Every ``poll_interval`` seconds, queued jobs are started in order until
    ``max_concurrent`` downloads are in flight. Each download runs in its own
    task which resolves the job through the JobManager when the process exits.
    """
    def __init__(self, job_manager: JobManager, settings_provider: Callable[[], Settings],
                 partials_dir: Path, downloads_dir: Path,
                 notifications: Optional[NotificationService] = None, *,
                 poll_interval: float = 5.0, max_concurrent: int = 1, progress_interval: float = 1.0,
                 cancel_grace_period: float = 1.0, yt_dlp_path: Union[Path, str] = 'yt-dlp',
                 broadcast: Optional[Broadcast] = None):
        """
        Initializes the QueueProcessor.

        Args:
            job_manager: Owner of the job records.
            settings_provider: Returns the current settings; read once per download.
            partials_dir: Working directory for yt-dlp.
            downloads_dir: Where completed files are moved.
            notifications: Receives a notification per completed download.
            poll_interval: Seconds between queue polls.
            max_concurrent: Maximum number of simultaneous downloads.
            progress_interval: Minimum seconds between progress broadcasts per job.
            cancel_grace_period: Seconds a cancelled process gets before it is killed.
            yt_dlp_path: The yt-dlp executable.
            broadcast: Async callable telling clients that state changed.
        """
        self.job_manager = job_manager
        self.settings_provider = settings_provider
        self.partials_dir = Path(partials_dir)
        self.downloads_dir = Path(downloads_dir)
        self.notifications = notifications
        self.poll_interval = poll_interval
        self.max_concurrent = max_concurrent
        self.cancel_grace_period = cancel_grace_period
        self.yt_dlp_path = yt_dlp_path
        self.broadcast = broadcast
        self.logger = logging.getLogger(__name__)

        self.is_processing: bool = False
        self.active_downloads: Dict[str, asyncio.Task] = {}
        self.active_processes: Dict[str, asyncio.subprocess.Process] = {}
        self.download_progress: Dict[str, ProgressRecord] = {}
        self.cancelled_jobs: Set[str] = set()
        self.throttle = BroadcastThrottle(progress_interval)
        self._poll_task: Optional[asyncio.Task] = None

    async def _broadcast(self):
        if self.broadcast is None:
            return
        try:
            await self.broadcast()
        except Exception:
            self.logger.exception("Error broadcasting state change")

    async def start(self):
        """Starts polling. The first poll happens immediately."""
        if self.is_processing:
            self.logger.warning("Queue processor already running")
            return

        self.logger.info("Starting queue processor")
        await asyncio.to_thread(self.partials_dir.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(self.downloads_dir.mkdir, parents=True, exist_ok=True)
        self.is_processing = True
        self._poll_task = asyncio.create_task(self._poll_loop(), name="queue-processor")

    async def _poll_loop(self):
        try:
            while self.is_processing:
                try:
                    await self.process_queue()
                except Exception:
                    self.logger.exception("Queue poll failed, retrying on the next tick")
                await asyncio.sleep(self.poll_interval)
        except asyncio.CancelledError:
            self.logger.debug("Queue poll task cancelled.")

    async def stop(self):
        """Stops polling and waits for every in-flight download to be resolved."""
        self.logger.info("Stopping queue processor")
        self.is_processing = False

        if self._poll_task is not None:
            self._poll_task.cancel()
            await asyncio.gather(self._poll_task, return_exceptions=True)
            self._poll_task = None

        in_flight = list(self.active_downloads.values())
        if in_flight:
            self.logger.info(f"Waiting for {len(in_flight)} active download(s) to complete")
            await asyncio.gather(*in_flight, return_exceptions=True)

    async def process_queue(self):
        """One poll: starts queued jobs until the concurrency limit is reached."""
        if not self.is_processing:
            return
        try:
            if len(self.active_downloads) >= self.max_concurrent:
                return

            for job in await self.job_manager.get_queued_jobs():
                if len(self.active_downloads) >= self.max_concurrent or not self.is_processing:
                    break
                if job.id in self.active_downloads:
                    # Requeued by a failure whose task has not finished cleaning up.
                    continue
                await self.start_download(job)
        except (YtQueueError, OSError):
            self.logger.exception("Error processing queue")

    async def start_download(self, job: Job) -> bool:
        """
        Moves ``job`` to active and launches its download task.

        Returns:
            False if the job was no longer queued.
        """
        active_job = await self.job_manager.move_job(job.id, JobState.ACTIVE, expected_state=JobState.QUEUED)
        if active_job is None:
            self.logger.info(f"Job {job.id} left the queue before it could start, skipping")
            return False

        task = asyncio.create_task(self._run_job(active_job), name=f"download-{job.id[:12]}")
        self.active_downloads[job.id] = task
        self.logger.info(f"Started download: {job.url} (id: {job.id}, retry: {job.retry_count})")
        await self._broadcast()
        return True

    async def _run_job(self, job: Job):
        """Runs one download and resolves the job, always clearing per-job state."""
        try:
            try:
                await self.download_video(job)
            except DownloadError as e:
                await self.handle_download_error(job, e)
            else:
                if job.id in self.cancelled_jobs:
                    self.logger.info(f"Download for cancelled job {job.id} exited cleanly, ignoring")
                else:
                    await self.complete_download(job)
        except Exception:
            self.logger.exception(f"Unexpected error during download for job {job.id}")
        finally:
            self.active_downloads.pop(job.id, None)
            self.active_processes.pop(job.id, None)
            self.download_progress.pop(job.id, None)
            self.throttle.forget(job.id)
            self.cancelled_jobs.discard(job.id)

    async def download_video(self, job: Job):
        """
        Executes the yt-dlp subprocess for a single job.

        Raises:
            DownloadError: If yt-dlp cannot be started or exits non-zero.
        """
        command = build_yt_dlp_command(self.settings_provider(), job.url, self.yt_dlp_path)
        self.logger.debug(f"[{job.id[:12]}] Running: {' '.join(command)}")

        if job.id in self.cancelled_jobs:
            raise DownloadError("Download cancelled before yt-dlp was started")

        kwargs: Dict[str, Any] = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS | subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            # Own process group, so ffmpeg children die with yt-dlp.
            kwargs['start_new_session'] = True

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.partials_dir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs
            )
        except OSError as e:
            self.logger.error(f"Failed to spawn yt-dlp for {job.url}: {e}")
            raise DownloadError(f"Failed to start yt-dlp: {e}") from e

        self.active_processes[job.id] = process
        if job.id in self.cancelled_jobs:
            # Cancelled while the process was being spawned.
            await self._terminate(process, force=True)
            await process.wait()
            raise DownloadError("Download cancelled while yt-dlp was starting", exit_code=process.returncode)

        stderr_task = asyncio.create_task(self._read_stderr(process))
        try:
            await self._consume_stdout(job.id, process)
            return_code = await process.wait()
            stderr = await stderr_task
        except asyncio.CancelledError:
            await self._terminate(process, force=True)
            stderr_task.cancel()
            raise

        if return_code != 0:
            raise DownloadError(f"yt-dlp exited with code {return_code}", exit_code=return_code, stderr=stderr)
        self.logger.info(f"Download completed successfully: {job.url}")

    async def _consume_stdout(self, job_id: str, process: asyncio.subprocess.Process):
        assert process.stdout is not None
        decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        buffer = ''
        while True:
            chunk = await process.stdout.read(4096)
            if not chunk:
                break
            buffer, lines = split_lines(buffer, decoder.decode(chunk))
            for line in lines:
                await self.handle_output_line(job_id, line)
        _, lines = split_lines(buffer, decoder.decode(b'', final=True) + '\n')
        for line in lines:
            await self.handle_output_line(job_id, line)

    async def _read_stderr(self, process: asyncio.subprocess.Process) -> str:
        assert process.stderr is not None
        tail = ''
        while True:
            chunk = await process.stderr.read(4096)
            if not chunk:
                return tail
            tail = (tail + chunk.decode('utf-8', 'replace'))[-STDERR_TAIL_CHARS:]

    async def handle_output_line(self, job_id: str, line: str):
        """Feeds one stdout line into the job's progress record, broadcasting if allowed."""
        self.logger.debug(f"[{job_id[:12]}] {line}")
        event = parse_progress_line(line)
        if event is None:
            return
        progress = self.download_progress.setdefault(job_id, ProgressRecord())
        filename_detected = progress.apply(event)
        if self.throttle.should_emit(job_id, force=filename_detected):
            await self._broadcast()

    async def complete_download(self, job: Job):
        """Success path: record the title, drop the job, publish the files."""
        progress = self.download_progress.get(job.id)
        filename = Path(progress.filename).name if progress and progress.filename else None
        try:
            if filename:
                await self.job_manager.update_job(job.id, {'title': filename}, expected_state=JobState.ACTIVE)
            await self.job_manager.delete_job(job.id)
        except JobNotFoundError:
            self.logger.warning(f"Job {job.id} was removed while downloading")
        except (YtQueueError, OSError):
            self.logger.exception(f"Error completing download for {job.url}")

        await self.move_downloaded_files()
        await self._broadcast()
        self.logger.info(f"Download completed: {job.url} (id: {job.id})")

        if self.notifications is not None:
            try:
                await self.notifications.add_download_completion_notification(job.url, job.id, filename or job.title)
            except OSError as e:
                self.logger.error(f"Error saving completion notification: {e}")

    async def handle_download_error(self, job: Job, error: BaseException):
        """Failure path: hand the job to the retry policy unless it was cancelled."""
        if job.id in self.cancelled_jobs:
            self.logger.info(f"Ignoring error for cancelled job: {job.id}")
            return

        stderr = getattr(error, 'stderr', '') or ''
        self.logger.error(f"Download failed for {job.url} (id: {job.id}): {error}"
                          + (f"\n{stderr.strip()}" if stderr.strip() else ''))
        try:
            failed_job = await self.job_manager.handle_job_failure(job.id, error)
        except JobNotFoundError:
            self.logger.warning(f"Failed job {job.id} no longer exists, nothing to retry")
            return
        except (YtQueueError, OSError):
            self.logger.exception(f"Error handling download failure for {job.url}")
            return

        await self._broadcast()
        if failed_job.state == JobState.FAILED:
            self.logger.info(f"Max retries ({self.job_manager.max_retries}) reached for {job.url}, marked as failed")
        else:
            self.logger.info(f"Moved failed download back to queue: {job.url} "
                             f"(retry {failed_job.retry_count}/{self.job_manager.max_retries})")

    def _list_partials(self) -> List[Path]:
        if not self.partials_dir.is_dir():
            return []
        return [item for item in self.partials_dir.iterdir() if item.is_file() and item.name not in SYSTEM_FILES]

    async def move_downloaded_files(self):
        """Moves finished files from the partials folder to the downloads folder."""
        items = await asyncio.to_thread(self._list_partials)
        for item in items:
            # Leave other downloads' work in progress alone.
            if item.suffix in PARTIAL_SUFFIXES or INTERMEDIATE_FORMAT_RE.search(item.name):
                continue
            try:
                await asyncio.to_thread(shutil.move, str(item), str(self.downloads_dir / item.name))
            except OSError as e:
                self.logger.warning(f"Failed to move file {item.name}: {e}")

    async def cleanup_active_download_files(self, cutoff_seconds: float = CANCEL_CLEANUP_CUTOFF_SECONDS) -> int:
        """
        Deletes recently modified files from the partials folder.

        Concurrent downloads share the folder, so files cannot be attributed
        to one job; recency is the heuristic.
        """
        cutoff = time.time() - cutoff_seconds
        count = 0
        for item in await asyncio.to_thread(self._list_partials):
            try:
                if (await asyncio.to_thread(item.stat)).st_mtime > cutoff:
                    await asyncio.to_thread(item.unlink)
                    count += 1
            except OSError as e:
                self.logger.warning(f"Failed to clean up file {item.name}: {e}")
        return count

    async def cleanup_partial_files(self) -> int:
        """Deletes everything left in the partials folder by a previous run."""
        count = 0
        for item in await asyncio.to_thread(self._list_partials):
            try:
                await asyncio.to_thread(item.unlink)
                count += 1
            except OSError as e:
                self.logger.error(f"Error deleting abandoned file {item.name}: {e}")
        if count > 0:
            self.logger.info(f"Deleted {count} abandoned download file(s).")
        return count

    async def _terminate(self, process: asyncio.subprocess.Process, force: bool = False):
        """Signals the process group; SIGKILL if ``force``."""
        if process.returncode is not None:
            return
        try:
            if sys.platform == 'win32':
                if force:
                    process.kill()
                else:
                    process.send_signal(signal.CTRL_BREAK_EVENT)
            else:
                os.killpg(os.getpgid(process.pid), signal.SIGKILL if force else signal.SIGTERM)
        except (ProcessLookupError, OSError):
            pass # Already gone

    async def cancel_download(self, job_id: str):
        """
        Stops an active download and deletes its job.

        The id is marked cancelled before the process is signalled, so the
        exit handler never sends it back to the queue. A download whose
        process has not been spawned yet is stopped by its own task as soon
        as the spawn returns.

        Raises:
            JobNotFoundError: If there is no active download for ``job_id``.
        """
        task = self.active_downloads.get(job_id)
        if task is None:
            raise JobNotFoundError(job_id)

        self.logger.info(f"Cancelling download for job: {job_id}")
        self.cancelled_jobs.add(job_id)
        try:
            process = self.active_processes.get(job_id)
            if process is not None:
                await self._terminate(process)
                try:
                    await asyncio.wait_for(process.wait(), timeout=self.cancel_grace_period)
                except asyncio.TimeoutError:
                    self.logger.warning(f"Force killing process for job: {job_id}")
                    await self._terminate(process, force=True)
            # Let the exit handler observe the cancellation and clean up.
            done, _ = await asyncio.wait({task}, timeout=self.cancel_grace_period)
            if not done:
                self.logger.warning(f"Download task for job {job_id} did not exit, cancelling it")
                task.cancel()
                await asyncio.wait({task}, timeout=self.cancel_grace_period)

            removed = await self.cleanup_active_download_files()
            self.logger.debug(f"Removed {removed} partial file(s) for cancelled job {job_id}")
            try:
                await self.job_manager.delete_job(job_id)
            except JobNotFoundError:
                self.logger.info(f"Cancelled job {job_id} was already removed")
        except Exception:
            self.cancelled_jobs.discard(job_id)
            self.logger.exception(f"Error cancelling download for job {job_id}")
            raise

        self.active_downloads.pop(job_id, None)
        self.active_processes.pop(job_id, None)
        self.download_progress.pop(job_id, None)
        self.throttle.forget(job_id)
        await self._broadcast()
        self.logger.info(f"Successfully cancelled download for job: {job_id}")

    def get_status(self) -> Dict[str, Any]:
        return {
            'is_processing': self.is_processing,
            'active_downloads': len(self.active_downloads),
            'max_concurrent': self.max_concurrent,
            'poll_interval': self.poll_interval,
            'current_downloads': [
                {'id': job_id, **progress.to_dict()} for job_id, progress in self.download_progress.items()
            ],
            'cancelled_jobs': len(self.cancelled_jobs),
        }
