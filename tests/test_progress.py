import pytest

from ytqueue.progress import (
    BroadcastThrottle, ProgressEvent, ProgressRecord, parse_progress_line, split_lines
)


class TestSplitLines:
    def test_keeps_unterminated_remainder(self):
        remainder, lines = split_lines('', '[download]  1.0% of 10MiB')
        assert remainder == '[download]  1.0% of 10MiB'
        assert lines == []

    def test_joins_buffer_and_chunk(self):
        remainder, lines = split_lines('[download] Dest', 'ination: a.mp4\nnext')
        assert lines == ['[download] Destination: a.mp4']
        assert remainder == 'next'

    @pytest.mark.parametrize('separator', ['\n', '\r', '\r\n'])
    def test_all_line_endings(self, separator):
        _, lines = split_lines('', f'one{separator}two{separator}')
        assert lines == ['one', 'two']

    def test_blank_lines_are_dropped(self):
        _, lines = split_lines('', '\n\n   \nvalue\r\n\r\n')
        assert lines == ['value']


class TestParseProgressLine:
    def test_plain_progress(self):
        event = parse_progress_line('[download]  12.3% of 123.45MiB at 456.78KiB/s ETA 10:21')
        assert event == ProgressEvent('progress', 12.3, '123.45MiB', '456.78KiB/s', '10:21')

    def test_fragment_progress_is_approximate(self):
        event = parse_progress_line('[download]  10.5% of ~   4.77MiB at  148.53KiB/s ETA 00:15 (frag 2/38)')
        assert event.kind == 'progress'
        assert event.percentage == 10.5
        assert event.file_size == '4.77MiB'
        assert event.speed == '148.53KiB/s'
        assert event.eta == '00:15'
        assert event.approximate is True

    def test_destination(self):
        event = parse_progress_line('[download] Destination: My Video [abc].mp4')
        assert event == ProgressEvent('destination', filename='My Video [abc].mp4')

    def test_info_title(self):
        event = parse_progress_line('[info] Some Title: Downloading 1 format(s): 22')
        assert event.kind == 'title'
        assert event.filename == 'Some Title'

    @pytest.mark.parametrize('line', [
        '',
        '[youtube] abc: Downloading webpage',
        '[Merger] Merging formats into "a.mp4"',
        'WARNING: something',
    ])
    def test_unrecognised_lines(self, line):
        assert parse_progress_line(line) is None


class TestProgressRecord:
    def test_progress_updates_fields(self):
        record = ProgressRecord()
        assert record.apply(ProgressEvent('progress', 50.0, '10MiB', '1MiB/s', '00:05')) is False
        assert record.to_dict() == {
            'percentage': 50.0, 'file_size': '10MiB', 'speed': '1MiB/s', 'eta': '00:05',
            'approximate': False, 'filename': None,
        }

    def test_first_filename_is_reported_once(self):
        record = ProgressRecord()
        assert record.apply(ProgressEvent('destination', filename='a.mp4')) is True
        assert record.apply(ProgressEvent('destination', filename='a.m4a')) is False
        assert record.filename == 'a.m4a'

    def test_title_does_not_override_destination(self):
        record = ProgressRecord()
        record.apply(ProgressEvent('destination', filename='a.mp4'))
        record.apply(ProgressEvent('title', filename='A title'))
        assert record.filename == 'a.mp4'

    def test_destination_overrides_title(self):
        record = ProgressRecord()
        assert record.apply(ProgressEvent('title', filename='A title')) is True
        assert record.apply(ProgressEvent('destination', filename='a.mp4')) is False
        assert record.filename == 'a.mp4'


class TestBroadcastThrottle:
    def test_first_update_passes(self):
        throttle = BroadcastThrottle(1.0)
        assert throttle.should_emit('a', now=100.0) is True

    def test_updates_within_interval_are_dropped(self):
        throttle = BroadcastThrottle(1.0)
        throttle.should_emit('a', now=100.0)
        assert throttle.should_emit('a', now=100.5) is False
        assert throttle.should_emit('a', now=101.0) is True

    def test_jobs_are_throttled_independently(self):
        throttle = BroadcastThrottle(1.0)
        throttle.should_emit('a', now=100.0)
        assert throttle.should_emit('b', now=100.1) is True

    def test_force_bypasses_interval(self):
        throttle = BroadcastThrottle(1.0)
        throttle.should_emit('a', now=100.0)
        assert throttle.should_emit('a', force=True, now=100.1) is True
        assert throttle.should_emit('a', now=100.5) is False

    def test_forget_resets_job(self):
        throttle = BroadcastThrottle(1.0)
        throttle.should_emit('a', now=100.0)
        throttle.forget('a')
        throttle.forget('missing')
        assert throttle.should_emit('a', now=100.1) is True
