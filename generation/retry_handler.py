import logging
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type, before_sleep_log
from typing import Callable, Any

from utils.errors import RateLimitedError
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)


class RetryHandler:
    """Retries rate-limited generation calls with a doubling delay.

    Only ``RateLimitedError`` is retried; every other failure propagates on
    the first attempt.
    """

    def __init__(
        self,
        max_retries: int = config.MAX_RETRIES,
        base_delay: float = config.RETRY_DELAY_SECONDS,
        max_delay: float = config.RETRY_MAX_DELAY_SECONDS
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    async def execute_with_retry(
        self,
        func: Callable,
        *args,
        **kwargs
    ) -> Any:
        @retry(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay),
            retry=retry_if_exception_type(RateLimitedError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )
        async def _wrapper():
            return await func(*args, **kwargs)

        return await _wrapper()
