# marketplace/utils/retry.py
import requests
import redis
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    wait_random,
    retry_if_exception_type,
)


def http_retry():
    # only transport failures; a 4xx/5xx answer is not retried
    return retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.3, min=0.3, max=3),
        retry=retry_if_exception_type(requests.ConnectionError),
    )


def redis_retry():
    return retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        retry=retry_if_exception_type(redis.RedisError),
    )


def allocation_retry(exc_type: type[Exception]):
    """Retry a unit of work that lost a race for a sequential identifier."""
    return retry(
        reraise=True,
        stop=stop_after_attempt(5),
        wait=wait_random(min=0, max=0.05),
        retry=retry_if_exception_type(exc_type),
    )
