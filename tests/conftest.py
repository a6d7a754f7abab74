"""Shared fixtures for the ytqueue test suite."""
import stat
import sys
import textwrap
from pathlib import Path

import pytest

from ytqueue.jobs import JobManager, JobState
from ytqueue.store import DirectoryJobStore, MemoryJobStore

STATES = [state.value for state in JobState]

# Stands in for yt-dlp. Behaviour is picked from the URL, which yt-dlp receives last.
FAKE_YT_DLP_SOURCE = textwrap.dedent('''
    import json
    import sys
    import time

    args = sys.argv[1:]
    url = args[-1]

    if '--version' in args:
        print('2024.08.06')
        sys.exit(0)

    if '--dump-json' in args:
        if 'slow' in url:
            time.sleep(30)
        if 'garbage' in url:
            print('this is not json')
            sys.exit(0)
        if 'broken' in url:
            print('ERROR: Unsupported URL: ' + url, file=sys.stderr)
            sys.exit(1)
        print(json.dumps({
            'title': 'Probed Title',
            'tbr': 1000,
            'duration': 8,
            'uploader': 'someone',
        }))
        sys.exit(0)

    if 'hang' in url:
        print('[download] Destination: Hanging Video.mp4', flush=True)
        open('Hanging Video.mp4.part', 'w').close()
        time.sleep(60)
        sys.exit(0)

    if 'fail' in url:
        print('[info] Broken: Downloading 1 format(s): 22', flush=True)
        print('ERROR: Unable to download video data: HTTP Error 403', file=sys.stderr)
        sys.exit(1)

    print('[info] Some Video: Downloading 1 format(s): 22', flush=True)
    print('[download] Destination: Some Video.mp4', flush=True)
    sys.stdout.write('[download]  50.0% of 10.00MiB at  1.00MiB/s ETA 00:05\\r')
    sys.stdout.flush()
    print('[download] 100.0% of 10.00MiB at  1.00MiB/s ETA 00:00', flush=True)
    with open('Some Video.mp4', 'w') as f:
        f.write('video')
    with open('Some Video.en.srt', 'w') as f:
        f.write('subs')
    sys.exit(0)
''')


@pytest.fixture
def memory_store() -> MemoryJobStore:
    return MemoryJobStore(STATES)


@pytest.fixture
def directory_store(tmp_path: Path) -> DirectoryJobStore:
    return DirectoryJobStore(tmp_path / 'jobs', STATES)


@pytest.fixture
def job_manager(memory_store: MemoryJobStore) -> JobManager:
    return JobManager(memory_store, max_retries=3)


@pytest.fixture
def fake_yt_dlp(tmp_path: Path) -> Path:
    """A POSIX executable that behaves like a tiny subset of yt-dlp."""
    if sys.platform == 'win32':
        pytest.skip("fake yt-dlp executable requires a POSIX shell")
    script = tmp_path / 'fake_yt_dlp.py'
    script.write_text(FAKE_YT_DLP_SOURCE, encoding='utf-8')
    wrapper = tmp_path / 'yt-dlp'
    wrapper.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{script}" "$@"\n', encoding='utf-8')
    wrapper.chmod(wrapper.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return wrapper
