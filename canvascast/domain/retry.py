import random
from datetime import datetime, timedelta, timezone

MAX_RETRY_COUNT = 3

def calculate_next_run(
    retry_count: int,
    base_delay_seconds: int = 10,
    max_delay_seconds: int = 3600,
    jitter: bool = True
) -> datetime:
    """
    Calculates the next run time using exponential backoff with optional jitter.

    Formula:
        delay = min(base * (2 ^ (retry_count - 1)), max_delay)
        if jitter:
            delay = delay + random_uniform(0, 0.1 * delay)

    Args:
        retry_count: Retries scheduled so far, including the one being scheduled.
                     retry_count=1 means "we failed once, when should we try again?"
                     and yields the base delay.

    Returns:
        datetime: The calculated future timestamp (UTC).
    """
    exponent = max(retry_count - 1, 0)

    # 2^20 seconds is far past any sensible max_delay
    safe_exponent = min(exponent, 20)

    delay = base_delay_seconds * (2 ** safe_exponent)

    if delay > max_delay_seconds:
        delay = max_delay_seconds

    if jitter:
        # Up to 10% jitter to avoid thundering herd
        delay += random.uniform(0, delay * 0.1)

    return datetime.now(timezone.utc) + timedelta(seconds=delay)

def should_move_to_dead_letter_queue(retry_count: int, max_retries: int = MAX_RETRY_COUNT) -> bool:
    """A job that already used `max_retries` automatic retries is parked on its next failure."""
    return retry_count >= max_retries
