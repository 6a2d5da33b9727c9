"""
Unit tests for durations, sizes and retries (zfs2s3/utils).
"""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from zfs2s3.utils.retry import retry_call
from zfs2s3.utils.units import GIB, MIB, TIB, format_size, parse_duration, parse_size


class TestParseDuration:
    """Test parse_duration."""

    @pytest.mark.parametrize('text,expected', [
        ('90d', timedelta(days=90)),
        ('12w', timedelta(weeks=12)),
        ('1h 30m', timedelta(hours=1, minutes=30)),
        ('45s', timedelta(seconds=45)),
        ('2 days', timedelta(days=2)),
    ])
    def test_durations(self, text, expected):
        assert parse_duration(text) == expected

    def test_minutes_and_months_differ(self):
        assert parse_duration('1m') == timedelta(minutes=1)
        assert parse_duration('1M') > timedelta(days=30)

    @pytest.mark.parametrize('text', ['', '   ', '90', 'd', '3 fortnights', '1d!'])
    def test_invalid_durations(self, text):
        with pytest.raises(ValueError):
            parse_duration(text)


class TestParseSize:
    """Test parse_size and format_size."""

    @pytest.mark.parametrize('value,expected', [
        (1024, 1024),
        ('5TiB', 5 * TIB),
        ('50 GiB', 50 * GIB),
        ('500MB', 500 * 1000 ** 2),
        ('8M', 8 * MIB),
        ('1.5GiB', int(1.5 * GIB)),
        ('100', 100),
    ])
    def test_sizes(self, value, expected):
        assert parse_size(value) == expected

    @pytest.mark.parametrize('value', [-1, True, 'lots', '5 XB', ''])
    def test_invalid_sizes(self, value):
        with pytest.raises(ValueError):
            parse_size(value)

    def test_format_size(self):
        assert format_size(512) == '512 B'
        assert format_size(5 * MIB) == '5.00 MiB'
        assert format_size(int(1.5 * TIB)) == '1.50 TiB'


class TestRetryCall:
    """Test retry_call."""

    @patch('zfs2s3.utils.retry.time.sleep')
    def test_succeeds_after_failures(self, mock_sleep):
        func = MagicMock(side_effect=[OSError('blip'), OSError('blip'), 'ok'])

        assert retry_call(func, 'a', attempts=3, delay=1.0, backoff=2.0, key='b') == 'ok'

        func.assert_called_with('a', key='b')
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0]

    @patch('zfs2s3.utils.retry.time.sleep')
    def test_last_error_is_raised(self, mock_sleep):
        func = MagicMock(side_effect=OSError('down'))

        with pytest.raises(OSError, match='down'):
            retry_call(func, attempts=2, delay=0)

        assert func.call_count == 2

    @patch('zfs2s3.utils.retry.time.sleep')
    def test_non_retryable_error_is_raised_at_once(self, mock_sleep):
        func = MagicMock(side_effect=ValueError('bad request'))

        with pytest.raises(ValueError):
            retry_call(func, attempts=5, should_retry=lambda e: isinstance(e, OSError))

        assert func.call_count == 1
        mock_sleep.assert_not_called()

    def test_at_least_one_attempt(self):
        func = MagicMock(return_value=42)

        assert retry_call(func, attempts=0) == 42
