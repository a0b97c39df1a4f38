"""
POPCORN 에러 분류

- ValidationError: 잘못된 입력 / 구조가 깨진 플랜 (시퀀스 전체 중단)
- PlanningError: 플랜 생성 실패 (ValidationError 하위, 시퀀스 전체 중단)
- ProviderError: 외부 프로바이더 비정상 응답 (transient면 재시도)
- TaskTimeoutError: 폴링 예산 소진 (ProviderError와 구분)
- NotFoundError: 알 수 없는 프로젝트/잡

부분 실패(PartialFailure)는 예외가 아니라 schemas.UnitFailure 레코드로 남긴다.
"""

from typing import Optional


class PopcornError(Exception):
    """Base class for every orchestrator error."""


class ValidationError(PopcornError):
    """Malformed input or a structurally invalid plan."""


class PlanningError(ValidationError):
    """No usable plan could be produced; nothing downstream can run."""


class ProviderError(PopcornError):
    """Non-success response from an external provider."""

    def __init__(
        self,
        message: str,
        provider: str = "unknown",
        status_code: Optional[int] = None,
        transient: bool = False,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.transient = transient

    @classmethod
    def from_status(cls, provider: str, status_code: int, body: str = "") -> "ProviderError":
        # 429 and 5xx are worth another attempt, other 4xx are not
        transient = status_code == 429 or status_code >= 500
        return cls(
            f"{provider} responded {status_code}: {body[:300]}",
            provider=provider,
            status_code=status_code,
            transient=transient,
        )


class TaskTimeoutError(PopcornError):
    """Poll budget exhausted before the provider reached a terminal state."""

    def __init__(self, message: str, attempts: int = 0, elapsed_sec: float = 0.0):
        super().__init__(message)
        self.attempts = attempts
        self.elapsed_sec = elapsed_sec


def is_transient(exc: BaseException) -> bool:
    """True for errors worth retrying."""
    return isinstance(exc, ProviderError) and exc.transient


class NotFoundError(PopcornError):
    """Unknown project, job or frame."""
