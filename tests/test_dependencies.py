import stat
import sys

import pytest

from ytqueue.dependencies import DependencyManager

pytestmark = pytest.mark.skipif(sys.platform == 'win32', reason="uses POSIX shell scripts")


def make_script(path, body):
    path.write_text(f'#!/bin/sh\n{body}\n', encoding='utf-8')
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path


async def test_local_yt_dlp_is_preferred(fake_yt_dlp):
    manager = DependencyManager(app_path=fake_yt_dlp.parent)
    assert manager.find_yt_dlp() == fake_yt_dlp
    assert manager.is_yt_dlp_available
    assert await manager.get_version(fake_yt_dlp) == '2024.08.06'


async def test_ffmpeg_version_is_parsed(tmp_path):
    ffmpeg = make_script(tmp_path / 'ffmpeg', 'echo "ffmpeg version 6.1.1-static Copyright (c) 2000-2023"')
    manager = DependencyManager(app_path=tmp_path)
    assert manager.find_ffmpeg() == ffmpeg
    assert await manager.get_version(ffmpeg) == '6.1.1-static'


async def test_failing_executable_has_no_version(tmp_path):
    broken = make_script(tmp_path / 'yt-dlp', 'exit 2')
    assert await DependencyManager(app_path=tmp_path).get_version(broken) is None


async def test_missing_executable_has_no_version(tmp_path):
    manager = DependencyManager(app_path=tmp_path)
    assert await manager.get_version(None) is None
    assert await manager.get_version(tmp_path / 'nothing-here') is None


async def test_initialize_records_versions(fake_yt_dlp):
    manager = DependencyManager(app_path=fake_yt_dlp.parent)
    await manager.initialize()
    assert manager.yt_dlp_path == fake_yt_dlp
    assert manager.versions['yt_dlp'] == '2024.08.06'
