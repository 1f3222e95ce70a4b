"""
步骤重试机制
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterator, Optional, Tuple

from ..models.workflow import RetryConfig
from ..exceptions import StepExecutionError, RetryExhaustedError


logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """重试策略：最多 max_retries + 1 次尝试，每次失败后等待 delay_ms 并乘以退避系数"""
    max_retries: int = 0
    delay_ms: float = 1000
    backoff_multiplier: float = 1.0

    @classmethod
    def from_config(cls, config: Optional[RetryConfig]) -> "RetryPolicy":
        if config is None:
            return cls()
        return cls(
            max_retries=max(0, config.max_retries),
            delay_ms=max(0, config.delay_ms),
            backoff_multiplier=config.backoff_multiplier or 1.0,
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delays(self) -> Iterator[float]:
        """依次产出每次重试前的等待时间（秒）"""
        delay = self.delay_ms
        for _ in range(self.max_retries):
            yield delay / 1000.0
            delay *= self.backoff_multiplier


RetryCallback = Callable[[int, Exception, float], Awaitable[None]]


async def run_with_retry(
    operation: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    step_id: str,
    on_retry: Optional[RetryCallback] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
) -> Tuple[Any, int]:
    """
    按重试策略执行操作

    Args:
        operation: 无参协程函数
        policy: 重试策略
        step_id: 步骤ID（用于错误信息）
        on_retry: 重试前回调 (attempt, error, delay_seconds)
        sleep: 等待函数

    Returns:
        Tuple[Any, int]: (结果, 尝试次数)

    Raises:
        StepExecutionError: 唯一一次尝试失败
        RetryExhaustedError: 所有重试均失败
    """
    delays = policy.delays()
    attempt = 0

    while True:
        attempt += 1
        try:
            return await operation(), attempt
        except Exception as e:
            delay = next(delays, None)
            if delay is None:
                if attempt > 1:
                    raise RetryExhaustedError(step_id, attempt, e) from e
                raise StepExecutionError(step_id, attempt, e) from e

            logger.warning(
                f"Step {step_id} attempt {attempt}/{policy.max_attempts} failed: {e}; "
                f"retrying in {delay:.3f}s"
            )
            if on_retry:
                await on_retry(attempt, e, delay)
            await sleep(delay)
