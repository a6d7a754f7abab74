import asyncio
import os
import time
from unittest.mock import AsyncMock

import pytest

from ytqueue.config import Settings
from ytqueue.downloads import QueueProcessor, build_format_selector, build_yt_dlp_command
from ytqueue.exceptions import JobNotFoundError
from ytqueue.jobs import JobManager, JobState
from ytqueue.notifications import DOWNLOAD_COMPLETE, NotificationService


async def wait_until(predicate, timeout: float = 10.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.05)


@pytest.fixture
def dirs(tmp_path):
    partials = tmp_path / 'partials'
    downloads = tmp_path / 'downloads'
    partials.mkdir()
    downloads.mkdir()
    return partials, downloads


@pytest.fixture
def notifications(tmp_path):
    return NotificationService(tmp_path / 'notifications.json')


@pytest.fixture
def make_processor(job_manager: JobManager, dirs, notifications):
    partials, downloads = dirs

    def factory(**kwargs) -> QueueProcessor:
        kwargs.setdefault('broadcast', AsyncMock())
        kwargs.setdefault('cancel_grace_period', 5.0)
        return QueueProcessor(job_manager, Settings, partials, downloads, notifications, **kwargs)

    return factory


class TestCommandBuilder:
    def test_default_settings(self):
        command = build_yt_dlp_command(Settings(), 'https://x.test/a', '/opt/yt-dlp')
        assert command[0] == '/opt/yt-dlp'
        assert command[-1] == 'https://x.test/a'
        assert command[command.index('--limit-rate') + 1] == '180K'
        assert command[command.index('--sub-lang') + 1] == 'en'
        assert command[command.index('--convert-subs') + 1] == 'srt'
        assert '--write-subs' in command
        assert '--write-auto-subs' in command
        assert '--newline' in command
        assert command[command.index('-o') + 1] == '%(title)s.%(ext)s'

    def test_optional_flags_are_left_out(self):
        settings = Settings(rate_limit='no-limit', subtitles=False, auto_subs=False)
        command = build_yt_dlp_command(settings, 'https://x.test/a')
        assert command[0] == 'yt-dlp'
        for flag in ('--limit-rate', '--write-subs', '--sub-lang', '--convert-subs', '--write-auto-subs'):
            assert flag not in command

    def test_format_selector_caps_height(self):
        assert 'height<=720' in build_format_selector('720p')
        assert 'height' not in build_format_selector('no-limit')

    def test_command_uses_selected_quality(self):
        command = build_yt_dlp_command(Settings(video_quality='1080p'), 'https://x.test/a')
        assert command[command.index('--format') + 1] == build_format_selector('1080p')


class TestOutputHandling:
    async def test_progress_is_throttled_but_filename_forces_broadcast(self, make_processor):
        processor = make_processor(progress_interval=60.0)

        await processor.handle_output_line('job', '[download]   1.0% of 10.00MiB at 1.00MiB/s ETA 00:09')
        await processor.handle_output_line('job', '[download]   2.0% of 10.00MiB at 1.00MiB/s ETA 00:08')
        assert processor.broadcast.await_count == 1

        await processor.handle_output_line('job', '[download] Destination: clip.mp4')
        assert processor.broadcast.await_count == 2

        await processor.handle_output_line('job', '[download] Destination: clip.m4a')
        await processor.handle_output_line('job', 'noise that is not progress')
        assert processor.broadcast.await_count == 2

        progress = processor.download_progress['job']
        assert progress.percentage == 2.0
        assert progress.filename == 'clip.m4a'

    async def test_broadcast_errors_are_contained(self, make_processor):
        processor = make_processor(broadcast=AsyncMock(side_effect=RuntimeError('socket gone')))
        await processor.handle_output_line('job', '[download] Destination: clip.mp4')
        assert processor.download_progress['job'].filename == 'clip.mp4'


class TestFileHandling:
    async def test_only_finished_files_are_moved(self, make_processor, dirs):
        partials, downloads = dirs
        for name in ('a.mp4', 'a.en.srt', 'b.mp4.part', 'c.f137.mp4', 'd.ytdl', '.DS_Store'):
            (partials / name).write_text('x')

        await make_processor().move_downloaded_files()

        assert sorted(p.name for p in downloads.iterdir()) == ['a.en.srt', 'a.mp4']
        assert sorted(p.name for p in partials.iterdir()) == ['.DS_Store', 'b.mp4.part', 'c.f137.mp4', 'd.ytdl']

    async def test_cancel_cleanup_only_touches_recent_files(self, make_processor, dirs):
        partials, _ = dirs
        old = partials / 'old.mp4.part'
        new = partials / 'new.mp4.part'
        old.write_text('x')
        new.write_text('x')
        an_hour_ago = time.time() - 3600
        os.utime(old, (an_hour_ago, an_hour_ago))

        assert await make_processor().cleanup_active_download_files(cutoff_seconds=300) == 1
        assert old.exists()
        assert not new.exists()

    async def test_startup_sweep_removes_everything_but_system_files(self, make_processor, dirs):
        partials, _ = dirs
        for name in ('a.mp4', 'b.part', 'Thumbs.db'):
            (partials / name).write_text('x')

        assert await make_processor().cleanup_partial_files() == 2
        assert [p.name for p in partials.iterdir()] == ['Thumbs.db']


class TestQueueProcessor:
    async def test_successful_download(self, make_processor, job_manager, dirs, notifications, fake_yt_dlp):
        partials, downloads = dirs
        processor = make_processor(yt_dlp_path=fake_yt_dlp)
        job = await job_manager.create_job('https://x.test/ok')

        assert await processor.start_download(job) is True
        await processor.active_downloads[job.id]

        assert await job_manager.get_job(job.id) is None
        assert sorted(p.name for p in downloads.iterdir()) == ['Some Video.en.srt', 'Some Video.mp4']
        assert list(partials.iterdir()) == []
        assert processor.active_downloads == {}
        assert processor.active_processes == {}
        assert processor.download_progress == {}
        assert processor.broadcast.await_count >= 2

        [notification] = await notifications.get_notifications()
        assert notification['type'] == DOWNLOAD_COMPLETE
        assert notification['job_id'] == job.id
        assert notification['filename'] == 'Some Video.mp4'

    async def test_failed_download_is_requeued(self, make_processor, job_manager, fake_yt_dlp):
        processor = make_processor(yt_dlp_path=fake_yt_dlp)
        job = await job_manager.create_job('https://x.test/fail')

        await processor.start_download(job)
        await processor.active_downloads[job.id]

        requeued = await job_manager.get_job(job.id)
        assert requeued.state == JobState.QUEUED
        assert requeued.retry_count == 1
        assert 'exited with code 1' in requeued.metadata['last_error']

    async def test_exhausted_retries_move_to_failed(self, make_processor, job_manager, fake_yt_dlp):
        job_manager.max_retries = 1
        processor = make_processor(yt_dlp_path=fake_yt_dlp)
        job = await job_manager.create_job('https://x.test/fail')

        await processor.start_download(job)
        await processor.active_downloads[job.id]

        assert (await job_manager.get_job(job.id)).state == JobState.FAILED
        assert await job_manager.get_queued_jobs() == []

    async def test_missing_executable_counts_as_failure(self, make_processor, job_manager, tmp_path):
        processor = make_processor(yt_dlp_path=tmp_path / 'no-such-yt-dlp')
        job = await job_manager.create_job('https://x.test/ok')

        await processor.start_download(job)
        await processor.active_downloads[job.id]

        failed = await job_manager.get_job(job.id)
        assert failed.state == JobState.QUEUED
        assert failed.retry_count == 1
        assert 'Failed to start yt-dlp' in failed.metadata['last_error']

    async def test_job_that_left_the_queue_is_not_started(self, make_processor, job_manager):
        processor = make_processor()
        job = await job_manager.create_job('https://x.test/ok')
        await job_manager.delete_job(job.id)

        assert await processor.start_download(job) is False
        assert processor.active_downloads == {}

    async def test_process_queue_respects_concurrency(self, make_processor, job_manager, fake_yt_dlp):
        processor = make_processor(yt_dlp_path=fake_yt_dlp, max_concurrent=1)
        first = await job_manager.create_job('https://x.test/hang/1', sort_order=1)
        second = await job_manager.create_job('https://x.test/hang/2', sort_order=2)

        await processor.process_queue()
        assert processor.active_downloads == {}

        processor.is_processing = True
        await processor.process_queue()
        await processor.process_queue()

        assert list(processor.active_downloads) == [first.id]
        assert (await job_manager.get_job(second.id)).state == JobState.QUEUED

        await wait_until(lambda: first.id in processor.active_processes)
        await processor.cancel_download(first.id)

    async def test_cancel_active_download(self, make_processor, job_manager, dirs, fake_yt_dlp):
        partials, _ = dirs
        processor = make_processor(yt_dlp_path=fake_yt_dlp)
        job = await job_manager.create_job('https://x.test/hang')

        await processor.start_download(job)
        task = processor.active_downloads[job.id]
        await wait_until(lambda: (partials / 'Hanging Video.mp4.part').exists())

        await processor.cancel_download(job.id)

        assert task.done()
        assert await job_manager.get_job(job.id) is None
        assert await job_manager.get_queued_jobs() == []
        assert list(partials.iterdir()) == []
        assert processor.active_downloads == {}
        assert processor.cancelled_jobs == set()
        assert processor.download_progress == {}

    async def test_cancel_unknown_download(self, make_processor):
        with pytest.raises(JobNotFoundError):
            await make_processor().cancel_download('nope')

    async def test_stop_waits_for_in_flight_downloads(self, make_processor, job_manager, fake_yt_dlp):
        processor = make_processor(yt_dlp_path=fake_yt_dlp, poll_interval=60.0)
        await processor.start()
        job = await job_manager.create_job('https://x.test/ok')
        await processor.process_queue()

        await processor.stop()

        assert processor.is_processing is False
        assert processor.active_downloads == {}
        assert await job_manager.get_job(job.id) is None

    async def test_status(self, make_processor):
        processor = make_processor(max_concurrent=2)
        await processor.handle_output_line('abc', '[download] Destination: clip.mp4')
        status = processor.get_status()
        assert status['is_processing'] is False
        assert status['max_concurrent'] == 2
        assert status['current_downloads'][0]['id'] == 'abc'
        assert status['current_downloads'][0]['filename'] == 'clip.mp4'

    async def test_cancel_before_process_is_spawned(self, make_processor, job_manager, dirs, notifications,
                                                    fake_yt_dlp):
        _, downloads = dirs
        processor = make_processor(yt_dlp_path=fake_yt_dlp)
        job = await job_manager.create_job('https://x.test/ok')

        await processor.start_download(job)
        task = processor.active_downloads[job.id]
        assert job.id not in processor.active_processes

        await processor.cancel_download(job.id)

        assert task.done()
        assert await job_manager.get_job(job.id) is None
        assert list(downloads.iterdir()) == []
        assert await notifications.get_notifications() == []
        assert processor.active_downloads == {}
        assert processor.active_processes == {}
        assert processor.cancelled_jobs == set()

    async def test_poll_loop_survives_a_failing_tick(self, make_processor, job_manager, monkeypatch, fake_yt_dlp):
        processor = make_processor(yt_dlp_path=fake_yt_dlp, poll_interval=0.01)
        job = await job_manager.create_job('https://x.test/ok')

        real_get_queued_jobs = job_manager.get_queued_jobs
        failures = []

        async def flaky_get_queued_jobs():
            if not failures:
                failures.append(1)
                raise TypeError("'<' not supported between instances of 'str' and 'int'")
            return await real_get_queued_jobs()

        monkeypatch.setattr(job_manager, 'get_queued_jobs', flaky_get_queued_jobs)

        await processor.start()
        for _ in range(200):
            if await job_manager.get_job(job.id) is None:
                break
            await asyncio.sleep(0.05)
        poll_task = processor._poll_task
        assert not poll_task.done()
        await processor.stop()

        assert failures == [1]
        assert await job_manager.get_job(job.id) is None
