"""Tests for retry backoff and DLQ routing decisions."""

from datetime import datetime, timedelta, timezone

from canvascast.domain.retry import calculate_next_run, should_move_to_dead_letter_queue


def test_backoff_doubles_per_retry():
    now = datetime.now(timezone.utc)
    first = calculate_next_run(1, base_delay_seconds=10, jitter=False) - now
    second = calculate_next_run(2, base_delay_seconds=10, jitter=False) - now
    third = calculate_next_run(3, base_delay_seconds=10, jitter=False) - now
    assert timedelta(seconds=9) < first <= timedelta(seconds=11)
    assert timedelta(seconds=19) < second <= timedelta(seconds=21)
    assert timedelta(seconds=39) < third <= timedelta(seconds=41)


def test_backoff_is_capped():
    now = datetime.now(timezone.utc)
    delay = calculate_next_run(30, base_delay_seconds=10, max_delay_seconds=60, jitter=False) - now
    assert delay <= timedelta(seconds=61)


def test_jitter_stays_within_ten_percent():
    now = datetime.now(timezone.utc)
    delay = calculate_next_run(1, base_delay_seconds=100) - now
    assert timedelta(seconds=99) < delay <= timedelta(seconds=111)


def test_should_move_to_dead_letter_queue():
    assert should_move_to_dead_letter_queue(0) is False
    assert should_move_to_dead_letter_queue(2) is False
    assert should_move_to_dead_letter_queue(3) is True
    assert should_move_to_dead_letter_queue(1, max_retries=1) is True
