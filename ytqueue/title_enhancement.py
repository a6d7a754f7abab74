"""Backfills titles and size estimates for jobs in the background."""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

from .config import TitleEnhancementSettings
from .downloads import Broadcast
from .exceptions import YtQueueError
from .jobs import Job, JobManager, JobState
from .url_extractor import MetadataExtractor


class TitleEnhancementService:
    """
    Probes queued jobs without a title, and active jobs without a size estimate.

    A queued job is probed for a title once. A successful probe marks it
    with ``title_checked`` whether or not a title came back.

    This service is strictly best effort: a failed probe leaves the job as it
    was, and no error ever reaches the download pipeline. Probes can take
    seconds, so the job is re-read before and after each one and the result
    is discarded if the job moved in the meantime.
    """
    ELIGIBLE_STATES = (JobState.QUEUED, JobState.ACTIVE)

    def __init__(self, job_manager: JobManager, extractor: MetadataExtractor,
                 settings: Optional[TitleEnhancementSettings] = None,
                 broadcast: Optional[Broadcast] = None):
        self.job_manager = job_manager
        self.extractor = extractor
        self.settings = settings or TitleEnhancementSettings()
        self.broadcast = broadcast
        self.logger = logging.getLogger(__name__)

        self.is_running: bool = False
        self.processing: Set[str] = set()
        self._probe_tasks: Set[asyncio.Task] = set()
        self._poll_task: Optional[asyncio.Task] = None

    @property
    def poll_interval(self) -> float:
        return self.settings.poll_interval

    @property
    def max_title_checks(self) -> int:
        return self.settings.max_title_checks

    async def start(self):
        if self.is_running:
            self.logger.warning("Title enhancement service already running")
            return
        if not self.settings.enabled:
            self.logger.info("Title enhancement service is disabled in settings")
            return

        self.logger.info("Starting title enhancement service")
        self.is_running = True
        self._poll_task = asyncio.create_task(self._poll_loop(), name="title-enhancement")

    async def _poll_loop(self):
        try:
            while self.is_running:
                try:
                    await self.process_enhancement_queue()
                except Exception:
                    self.logger.exception("Enhancement poll failed, retrying on the next tick")
                await asyncio.sleep(self.poll_interval)
        except asyncio.CancelledError:
            self.logger.debug("Title enhancement poll task cancelled.")

    async def stop(self):
        self.logger.info("Stopping title enhancement service")
        self.is_running = False
        tasks = list(self._probe_tasks)
        if self._poll_task is not None:
            tasks.append(self._poll_task)
            self._poll_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def get_jobs_needing_enhancement(self) -> List[Job]:
        queued = await self.job_manager.get_queued_jobs()
        active = await self.job_manager.get_active_jobs()
        return (
            [job for job in queued
             if not job.title and not job.metadata.get('title_checked') and job.id not in self.processing]
            + [job for job in active if not job.metadata.get('filesize') and job.id not in self.processing]
        )

    async def process_enhancement_queue(self):
        """One poll: starts probes up to the concurrency limit."""
        if not self.is_running:
            return
        try:
            candidates = await self.get_jobs_needing_enhancement()
        except (YtQueueError, OSError):
            self.logger.exception("Error processing enhancement queue")
            return

        for job in candidates[:max(0, self.max_title_checks - len(self.processing))]:
            # Claimed here, not in the task, so the next poll cannot pick it again.
            self.processing.add(job.id)
            task = asyncio.create_task(self.enhance_job_metadata(job, claimed=True))
            self._probe_tasks.add(task)
            task.add_done_callback(self._probe_tasks.discard)

    def _build_update(self, job: Job, metadata: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if job.state == JobState.QUEUED:
            # Marked even without a title so the job is not probed again.
            update: Dict[str, Any] = {'metadata': {**metadata, 'title_checked': True}}
            if metadata.get('title'):
                update['title'] = metadata['title']
            return update
        # Active: only fill in a size estimate the download has not got yet.
        if job.metadata.get('filesize') or not metadata.get('filesize'):
            return None
        return {'metadata': {'filesize': metadata['filesize'],
                             'filesize_estimated': metadata.get('filesize_estimated', False)}}

    async def enhance_job_metadata(self, job: Job, claimed: bool = False) -> bool:
        """
        Probes one job and applies what was learned.

        Returns:
            True if the job was updated.
        """
        if not claimed:
            if job.id in self.processing:
                return False
            self.processing.add(job.id)

        try:
            current = await self.job_manager.get_job(job.id)
            if current is None or current.state not in self.ELIGIBLE_STATES:
                self.logger.info(f"Job {job.id} no longer in valid state, skipping metadata enhancement")
                return False

            self.logger.info(f"Enhancing metadata for job: {current.url}")
            metadata = await self.extractor.extract_metadata(current.url, self.settings.timeout)
            if not metadata:
                self.logger.warning(f"Failed to extract metadata for job: {current.url}")
                return False

            latest = await self.job_manager.get_job(job.id)
            if latest is None or latest.state != current.state:
                self.logger.info(f"Job {job.id} state changed during metadata extraction, skipping update")
                return False

            update = self._build_update(latest, metadata)
            if update is None:
                return False
            if await self.job_manager.update_job(job.id, update, expected_state=latest.state) is None:
                self.logger.info(f"Job {job.id} state changed before metadata could be saved, skipping update")
                return False

            self.logger.info(f"Enhanced job {job.id} with metadata: {metadata.get('title') or 'filesize update'}")
            if self.broadcast is not None:
                try:
                    await self.broadcast()
                except Exception:
                    self.logger.exception("Error broadcasting state change")
            return True
        except (YtQueueError, OSError):
            self.logger.exception(f"Metadata enhancement failed for job {job.id}")
            return False
        finally:
            self.processing.discard(job.id)

    def get_status(self) -> Dict[str, Any]:
        return {
            'is_running': self.is_running,
            'processing': len(self.processing),
            'max_title_checks': self.max_title_checks,
            'poll_interval': self.poll_interval,
        }
