import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryScheduler:
    """非同期処理を一定間隔で最大N回まで再試行する

    待機時間は固定（指数バックオフなし）。失敗は毎回ログに残し、
    最後の試行の例外はそのまま呼び出し元に送出する。
    """

    def __init__(
        self,
        max_attempts: int = 3,
        delay_seconds: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._max_attempts = max_attempts
        self._delay = delay_seconds
        self._sleep = sleep

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        max_attempts: Optional[int] = None,
        delay: Optional[float] = None,
    ) -> T:
        attempts = self._max_attempts if max_attempts is None else max_attempts
        wait = self._delay if delay is None else delay
        if attempts < 1:
            raise ValueError(f"max_attempts must be >= 1 (got {attempts})")

        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except Exception as e:
                logger.warning("処理失敗 (試行 %d/%d): %s", attempt, attempts, e)
                if attempt >= attempts:
                    raise
                await self._sleep(wait)
