"""
Defines the main AppController class, which orchestrates the application's logic.
"""
import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from ._version import __version__
from .app_updater import AppUpdater
from .config import ConfigManager, Settings
from .constants import USER_DATA_DIR
from .dependencies import DependencyManager
from .downloaded_files import DownloadedFilesService
from .downloads import QueueProcessor
from .exceptions import JobNotFoundError, YtQueueError, ValidationError
from .jobs import Job, JobManager, JobState
from .notifications import NotificationService
from .store import DirectoryJobStore, JobStore
from .title_enhancement import TitleEnhancementService
from .url_extractor import MetadataExtractor
from .validators import validate_url


class AppController:
    """The central controller for the application's business logic."""

    def __init__(self, config_manager: ConfigManager, config: Settings, data_dir: Path = USER_DATA_DIR,
                 store: Optional[JobStore] = None, dep_manager: Optional[DependencyManager] = None):
        """
        Initializes the AppController.

        Args:
            config_manager: The manager for handling configuration persistence.
            config: The loaded application settings.
            data_dir: Root for jobs, partial downloads, finished downloads and notifications.
            store: Job store to use instead of the on-disk one under ``data_dir``.
            dep_manager: Dependency locator to use instead of the default one.
        """
        self.config_manager = config_manager
        self.config = config
        self.data_dir = Path(data_dir)
        self.logger = logging.getLogger(__name__)
        self._broadcast_callback: Optional[Callable[[], Awaitable[None]]] = None
        self._background_tasks: Set[asyncio.Task] = set()

        # Backend Managers
        self.store = store or DirectoryJobStore(self.data_dir / 'jobs', [state.value for state in JobState])
        self.job_manager = JobManager(self.store, max_retries=config.max_retries)
        self.notifications = NotificationService(self.data_dir / 'notifications.json')
        self.downloaded_files = DownloadedFilesService(self.data_dir / 'downloads')
        self.dep_manager = dep_manager or DependencyManager()
        self.extractor = MetadataExtractor()
        self.queue_processor = QueueProcessor(
            self.job_manager,
            lambda: self.config,
            self.data_dir / 'partials',
            self.data_dir / 'downloads',
            self.notifications,
            poll_interval=config.poll_interval,
            max_concurrent=config.max_concurrent_downloads,
            broadcast=self.broadcast,
        )
        self.title_enhancement = TitleEnhancementService(
            self.job_manager, self.extractor, config.title_enhancement, broadcast=self.broadcast
        )
        self.app_updater = AppUpdater(self.config, self.notifications)

    def set_broadcast(self, callback: Optional[Callable[[], Awaitable[None]]]):
        """Sets the push-channel callback used to tell clients that state changed."""
        self._broadcast_callback = callback

    async def broadcast(self):
        if self._broadcast_callback is not None:
            await self._broadcast_callback()

    async def startup(self, require_yt_dlp: bool = True):
        """
        Prepares the queue and starts the background services.

        Raises:
            YtQueueError: If yt-dlp is required but cannot be found.
        """
        await self.dep_manager.initialize()
        if self.dep_manager.yt_dlp_path:
            self.queue_processor.yt_dlp_path = self.dep_manager.yt_dlp_path
            self.extractor.yt_dlp_path = self.dep_manager.yt_dlp_path
        elif require_yt_dlp:
            raise YtQueueError("yt-dlp not found in PATH. Please install yt-dlp to use this application.")

        if isinstance(self.store, DirectoryJobStore):
            await self.store.ensure_directories()

        # Anything still active was interrupted by an unclean shutdown.
        await self.queue_processor.cleanup_partial_files()
        await self.job_manager.cleanup_interrupted_jobs()

        await self.queue_processor.start()
        await self.title_enhancement.start()

        if self.config.check_for_updates_on_startup:
            task = asyncio.create_task(self.app_updater.check_for_updates(self.dep_manager.versions.get('yt_dlp')))
            self._background_tasks.add(task)
            task.add_done_callback(self._handle_task_exception)

    async def shutdown(self):
        """Stops polling and waits for in-flight downloads to be resolved."""
        self.logger.info("Application shutting down.")
        await self.queue_processor.stop()
        await self.title_enhancement.stop()
        for task in list(self._background_tasks):
            task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

    def _handle_task_exception(self, task: asyncio.Task) -> None:
        """Callback to log exceptions from fire-and-forget tasks."""
        self._background_tasks.discard(task)
        try:
            task.result()
        except asyncio.CancelledError:
            pass  # Expected
        except Exception:
            self.logger.exception(f"Exception in background task {task.get_name()}:")

    async def add_job(self, url: str) -> Job:
        """
        Validates ``url`` and queues it.

        Raises:
            ValidationError: If the URL is not acceptable.
            JobExistsError: If the URL is already in the queue.
        """
        validated_url = validate_url(url)
        job = await self.job_manager.create_job(validated_url)
        self.logger.info(f"Job added to queue: {validated_url}")
        await self.broadcast()
        return job

    async def remove_job(self, job_id: str) -> Dict[str, str]:
        """
        Removes a job, cancelling its download first if it is active.

        Raises:
            ValidationError: If no id was given.
            JobNotFoundError: If there is no such job.
        """
        if not job_id or not job_id.strip():
            raise ValidationError("Invalid job id provided")
        job_id = job_id.strip()

        job = await self.job_manager.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        if job.state == JobState.ACTIVE and job_id in self.queue_processor.active_downloads:
            try:
                await self.queue_processor.cancel_download(job_id)
                self.logger.info(f"Active download cancelled: {job_id}")
                return {'message': "Download cancelled successfully", 'type': 'success'}
            except (YtQueueError, OSError) as e:
                self.logger.error(f"Failed to cancel download for {job_id}: {e}")
                try:
                    await self.job_manager.delete_job(job_id)
                except JobNotFoundError:
                    pass  # The exit handler got there first
                await self.broadcast()
                return {'message': "Download job deleted (cancellation failed, but job removed)", 'type': 'warning'}

        await self.job_manager.delete_job(job_id)
        self.logger.info(f"Job deleted from queue: {job_id}")
        await self.broadcast()
        return {'message': "Download job deleted from queue successfully", 'type': 'success'}

    async def delete_downloaded_file(self, filename: str) -> Dict[str, str]:
        """Deletes one finished download and tells clients the file list changed."""
        result = await self.downloaded_files.delete_file(filename)
        await self.broadcast()
        return result

    async def retry_job(self, job_id: str) -> Job:
        """Requeues a job that ran out of retries."""
        job = await self.job_manager.retry_failed_job(job_id)
        await self.broadcast()
        return job

    async def get_state(self) -> Dict[str, Any]:
        """Everything a client needs to render the queue."""
        queued, active, failed = await asyncio.gather(
            self.job_manager.get_queued_jobs(),
            self.job_manager.get_active_jobs(),
            self.job_manager.get_failed_jobs(),
        )
        progress = {entry['id']: entry for entry in self.queue_processor.get_status()['current_downloads']}

        def with_progress(job: Job) -> Dict[str, Any]:
            data = job.to_dict()
            if job.id in progress:
                data['progress'] = {k: v for k, v in progress[job.id].items() if k != 'id'}
            return data

        return {
            'queued': [job.to_dict() for job in queued],
            'active': [with_progress(job) for job in active],
            'failed': [job.to_dict() for job in failed],
            'counts': {
                'queued': len(queued),
                'active': len(active),
                'failed': len(failed),
                'total': len(queued) + len(active) + len(failed),
            },
            'processor': self.queue_processor.get_status(),
            'title_enhancement': self.title_enhancement.get_status(),
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }

    async def save_settings(self, new_settings_data: Dict[str, Any]) -> Settings:
        """
        Validates, saves and applies new settings.

        Raises:
            ValidationError: If any value is invalid.
        """
        was_enhancing = self.config.title_enhancement.enabled
        self.config = await asyncio.to_thread(self.config_manager.update, self.config, new_settings_data)

        self.job_manager.max_retries = self.config.max_retries
        self.queue_processor.max_concurrent = self.config.max_concurrent_downloads
        self.queue_processor.poll_interval = self.config.poll_interval
        self.title_enhancement.settings = self.config.title_enhancement
        self.app_updater.config = self.config

        if self.queue_processor.is_processing:
            if self.config.title_enhancement.enabled and not was_enhancing:
                await self.title_enhancement.start()
            elif not self.config.title_enhancement.enabled and was_enhancing:
                await self.title_enhancement.stop()
        return self.config

    def get_versions(self) -> Dict[str, Optional[str]]:
        return {'app': __version__, **self.dep_manager.versions}
