import os

import pytest

from ytqueue.downloaded_files import DownloadedFilesService, format_file_size
from ytqueue.exceptions import AccessDeniedError, NotFoundError, ValidationError
from ytqueue.validators import validate_filename


@pytest.fixture
def downloads(tmp_path):
    directory = tmp_path / 'downloads'
    directory.mkdir()
    (directory / 'b clip.MP4').write_text('video', encoding='utf-8')
    (directory / 'a clip.en.srt').write_text('subs', encoding='utf-8')
    (directory / 'notes.txt').write_text('x' * 2048, encoding='utf-8')
    (directory / '.DS_Store').write_text('', encoding='utf-8')
    (directory / 'subfolder').mkdir()
    return directory


@pytest.fixture
def service(downloads):
    return DownloadedFilesService(downloads)


class TestFormatFileSize:
    @pytest.mark.parametrize('size, expected', [
        (0, '0 Bytes'),
        (500, '500 Bytes'),
        (1024, '1 KB'),
        (1536, '1.5 KB'),
        (5 * 1024 * 1024, '5 MB'),
    ])
    def test_format(self, size, expected):
        assert format_file_size(size) == expected


class TestValidateFilename:
    def test_trims(self):
        assert validate_filename('  clip.mp4 ') == 'clip.mp4'

    @pytest.mark.parametrize('filename', [None, '', 3])
    def test_requires_a_name(self, filename):
        with pytest.raises(ValidationError, match='required'):
            validate_filename(filename)

    def test_rejects_blank(self):
        with pytest.raises(ValidationError, match='empty'):
            validate_filename('   ')

    @pytest.mark.parametrize('filename', ['..', '../etc/passwd', 'a/b.mp4', 'a\\b.mp4'])
    def test_rejects_path_components(self, filename):
        with pytest.raises(ValidationError, match='Invalid filename'):
            validate_filename(filename)


class TestDownloadedFilesService:
    async def test_listing(self, service):
        files = await service.get_downloaded_files()

        assert [f['name'] for f in files] == ['a clip.en.srt', 'b clip.MP4', 'notes.txt']
        subs, video, notes = files
        assert video['extension'] == '.mp4'
        assert video['is_video'] is True and video['is_subtitle'] is False
        assert subs['is_subtitle'] is True and subs['is_video'] is False
        assert notes['size'] == 2048
        assert notes['formatted_size'] == '2 KB'
        assert notes['modified'].endswith('+00:00')

    async def test_listing_of_missing_folder_is_empty(self, tmp_path):
        assert await DownloadedFilesService(tmp_path / 'nowhere').get_downloaded_files() == []

    async def test_file_stats(self, service):
        stats = await service.get_file_stats('notes.txt')
        assert stats['name'] == 'notes.txt'
        assert stats['size'] == 2048

    async def test_delete(self, service, downloads):
        result = await service.delete_file('b clip.MP4')
        assert result == {'message': 'File deleted successfully', 'type': 'success'}
        assert not (downloads / 'b clip.MP4').exists()

    async def test_delete_missing_file(self, service):
        with pytest.raises(NotFoundError):
            await service.delete_file('gone.mp4')

    async def test_directory_is_not_a_file(self, service):
        with pytest.raises(NotFoundError):
            await service.delete_file('subfolder')

    async def test_traversal_is_rejected(self, service, tmp_path):
        (tmp_path / 'secret.txt').write_text('secret', encoding='utf-8')
        with pytest.raises(ValidationError):
            await service.delete_file('../secret.txt')
        assert (tmp_path / 'secret.txt').exists()

    @pytest.mark.skipif(not hasattr(os, 'symlink') or os.name == 'nt', reason="needs POSIX symlinks")
    async def test_symlink_out_of_the_folder_is_denied(self, service, downloads, tmp_path):
        secret = tmp_path / 'secret.txt'
        secret.write_text('secret', encoding='utf-8')
        (downloads / 'escape.txt').symlink_to(secret)

        with pytest.raises(AccessDeniedError):
            await service.delete_file('escape.txt')
        with pytest.raises(AccessDeniedError):
            await service.get_file_stats('escape.txt')
        assert secret.exists()
