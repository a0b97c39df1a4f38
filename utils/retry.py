"""
재시도 컴비네이터

프로바이더 호출마다 제각각이던 재시도 루프를 하나로 통합합니다.
tenacity 기반: 지수 백오프 + 랜덤 지터, transient ProviderError만 재시도.
결과는 예외 대신 RetryResult로 돌려줍니다.
"""

import time
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

from pydantic import BaseModel, Field
from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from utils.errors import PopcornError, is_transient
from utils.logger import get_logger

logger = get_logger("retry")

T = TypeVar("T")


class RetryPolicy(BaseModel):
    """Backoff policy shared by every provider call."""
    max_attempts: int = Field(default=3, ge=1, description="총 시도 횟수 (첫 시도 포함)")
    base_delay_sec: float = Field(default=1.0, ge=0, description="지수 백오프 기준 지연")
    max_delay_sec: float = Field(default=8.0, ge=0, description="백오프 상한")
    jitter_sec: float = Field(default=0.5, ge=0, description="추가 랜덤 지연 상한")


@dataclass
class RetryResult(Generic[T]):
    value: Optional[T] = None
    error: Optional[PopcornError] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value or raise the final error."""
        if self.error is not None:
            raise self.error
        return self.value


def retry_with_backoff(
    operation: Callable[[], T],
    policy: Optional[RetryPolicy] = None,
    retry_on: Callable[[BaseException], bool] = is_transient,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> RetryResult[T]:
    """
    Run ``operation`` until it succeeds, raises a non-retryable error, or the
    attempt budget is spent.

    Only PopcornError subclasses are folded into the result; anything else is a
    programming error and propagates.
    """
    policy = policy or RetryPolicy()
    wait = wait_exponential(multiplier=policy.base_delay_sec, max=policy.max_delay_sec)
    if policy.jitter_sec > 0:
        wait = wait + wait_random(0, policy.jitter_sec)

    def _before_sleep(retry_state):
        exc = retry_state.outcome.exception()
        logger.warning(
            f"{label} attempt {retry_state.attempt_number}/{policy.max_attempts} failed: {exc}; retrying"
        )

    retrying = Retrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait,
        retry=retry_if_exception(retry_on),
        reraise=True,
        sleep=sleep,
        before_sleep=_before_sleep,
    )

    attempts = 0
    try:
        for attempt in retrying:
            with attempt:
                attempts += 1
                value = operation()
        return RetryResult(value=value, attempts=attempts)
    except PopcornError as e:
        return RetryResult(error=e, attempts=attempts)
