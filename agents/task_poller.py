"""
Async Task Poller: "작업 생성 → 상태 폴링 → 종료 결과" 범용 클라이언트.

스레드를 1분씩 붙잡는 sleep 루프 대신 명시적인 상태 머신으로 구성한다.
- start(payload): 작업 제출 (재시도 컴비네이터 경유) → PollHandle
- advance(handle): 폴링 시점이 되었으면 1회 폴링, 종료 시 결과 반환
- wait(handle) / wait_all(handles): 주입된 clock/sleep으로 상태 머신 구동

종료 결과는 Success(url) / ProviderFailure(reason) / Timeout 중 정확히 하나.
상태 조회 자체의 일시 오류(네트워크, non-2xx)는 종료 결과가 아니며
시도 횟수만 소모한다. 작업이 무엇을 나타내는지는 알지 못한다.
"""

import time
from typing import Any, Callable, Dict, List, Optional

from schemas import (
    GenerationTask,
    PollOutcome,
    PollState,
    ProviderFailure,
    Success,
    TaskKind,
    TaskStatus,
    Timeout,
    UnitFailure,
    UnitKind,
)
from agents.providers import TaskClient
from utils.errors import ProviderError, TaskTimeoutError
from utils.logger import get_logger
from utils.retry import RetryPolicy, retry_with_backoff

logger = get_logger("task_poller")


class PollHandle:
    """한 작업의 폴링 상태"""

    def __init__(self, task: GenerationTask, payload: Dict[str, Any]):
        self.task = task
        self.payload = payload
        self.attempts = 0
        self.started_at = 0.0
        self.next_poll_at = 0.0
        self.outcome: Optional[PollOutcome] = None

    @property
    def done(self) -> bool:
        return self.outcome is not None

    def __repr__(self):
        return f"PollHandle(task={self.task.task_id}, attempts={self.attempts}, outcome={self.outcome})"


class AsyncTaskPoller:
    """
    submit/poll 프로바이더를 감싸는 폴러.

    Args:
        client: TaskClient 구현체
        interval_sec: 폴링 간격 (기본 2초)
        max_attempts: 최대 폴링 횟수 (기본 30회)
        timeout_sec: 벽시계 타임아웃 (기본 60초, None이면 시도 횟수만)
        kind: 작업 종류 (image/video), GenerationTask 기록용
        retry_policy: 제출 호출 재시도 정책
        clock / sleep: 테스트용 주입 지점
    """

    def __init__(
        self,
        client: TaskClient,
        interval_sec: float = 2.0,
        max_attempts: int = 30,
        timeout_sec: Optional[float] = 60.0,
        kind: TaskKind = TaskKind.IMAGE,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.interval_sec = interval_sec
        self.max_attempts = max_attempts
        self.timeout_sec = timeout_sec
        self.kind = kind
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._sleep = sleep

    @classmethod
    def from_config(cls, client: TaskClient, poll_config, retry_policy=None, kind=TaskKind.IMAGE, **kwargs):
        return cls(
            client,
            interval_sec=poll_config.interval_sec,
            max_attempts=poll_config.max_attempts,
            timeout_sec=poll_config.timeout_sec,
            kind=kind,
            retry_policy=retry_policy,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def start(self, payload: Dict[str, Any]) -> PollHandle:
        """작업 제출. 제출 실패 시 ProviderFailure로 즉시 종료된 핸들 반환."""
        handle = PollHandle(GenerationTask(kind=self.kind), payload)

        result = retry_with_backoff(
            lambda: self.client.submit(payload),
            self.retry_policy,
            sleep=self._sleep,
            label=f"{self.client.name} submit",
        )
        if not result.ok:
            self._finish(handle, ProviderFailure(reason=f"submit failed: {result.error}"))
            return handle

        handle.task.task_id = result.value
        handle.task.advance_to(TaskStatus.PROCESSING)
        handle.started_at = self._clock()
        handle.next_poll_at = handle.started_at + self.interval_sec
        logger.info(f"[{self.client.name}] task {handle.task.task_id} submitted")
        return handle

    def resume(self, task_id: str) -> PollHandle:
        """이미 제출된 작업 ID로 폴링만 재개 (check_status 경로)"""
        handle = PollHandle(GenerationTask(kind=self.kind, task_id=task_id), {})
        handle.task.advance_to(TaskStatus.PROCESSING)
        handle.started_at = self._clock()
        handle.next_poll_at = handle.started_at
        return handle

    def advance(self, handle: PollHandle) -> Optional[PollOutcome]:
        """폴링 시점이 되었으면 한 번 폴링. 종료되면 결과, 아니면 None."""
        if handle.done:
            return handle.outcome

        now = self._clock()
        if now < handle.next_poll_at:
            return None

        handle.attempts += 1
        report = None
        try:
            report = self.client.poll(handle.task.task_id)
        except ProviderError as e:
            logger.warning(
                f"[{self.client.name}] status check {handle.attempts}/{self.max_attempts} "
                f"for {handle.task.task_id} failed: {e}"
            )

        if report is not None and report.state == PollState.SUCCEEDED:
            self._finish(handle, Success(url=report.url))
        elif report is not None and report.state == PollState.FAILED:
            self._finish(handle, ProviderFailure(reason=report.reason or "provider reported failure"))
        else:
            elapsed = self._clock() - handle.started_at
            out_of_attempts = handle.attempts >= self.max_attempts
            out_of_time = self.timeout_sec is not None and elapsed >= self.timeout_sec
            if out_of_attempts or out_of_time:
                self._finish(handle, Timeout(attempts=handle.attempts, elapsed_sec=round(elapsed, 3)))
            else:
                handle.next_poll_at = now + self.interval_sec

        return handle.outcome

    def _finish(self, handle: PollHandle, outcome: PollOutcome) -> None:
        if handle.done:
            return
        handle.outcome = outcome
        task = handle.task
        if isinstance(outcome, Success):
            task.result_url = outcome.url
            task.advance_to(TaskStatus.DONE)
            logger.info(f"[{self.client.name}] task {task.task_id} done after {handle.attempts} polls")
        else:
            task.error = outcome.reason if isinstance(outcome, ProviderFailure) else "timeout"
            task.advance_to(TaskStatus.ERROR)
            logger.warning(f"[{self.client.name}] task {task.task_id} ended: {outcome.outcome} ({task.error})")

    # ------------------------------------------------------------------
    # Drivers
    # ------------------------------------------------------------------

    def wait(self, handle: PollHandle) -> PollOutcome:
        """핸들 하나를 종료 상태까지 구동"""
        while not handle.done:
            delay = handle.next_poll_at - self._clock()
            if delay > 0:
                self._sleep(delay)
            self.advance(handle)
        return handle.outcome

    def wait_all(self, handles: List[PollHandle]) -> List[PollOutcome]:
        """여러 핸들을 한 스레드에서 번갈아 구동 (가장 이른 폴링 시점까지만 대기)"""
        while True:
            pending = [h for h in handles if not h.done]
            if not pending:
                break
            soonest = min(h.next_poll_at for h in pending)
            delay = soonest - self._clock()
            if delay > 0:
                self._sleep(delay)
            for handle in pending:
                self.advance(handle)
        return [h.outcome for h in handles]

    def run(self, payload: Dict[str, Any]) -> PollOutcome:
        """제출 + 종료까지 폴링"""
        return self.wait(self.start(payload))


def outcome_failure(unit: UnitKind, unit_id, outcome: PollOutcome) -> Optional[UnitFailure]:
    """종료 결과 → UnitFailure (성공이면 None)"""
    if isinstance(outcome, Success):
        return None
    if isinstance(outcome, Timeout):
        return UnitFailure(
            unit=unit,
            unit_id=str(unit_id),
            error_type="timeout",
            reason=f"no result after {outcome.attempts} polls ({outcome.elapsed_sec}s)",
        )
    return UnitFailure(unit=unit, unit_id=str(unit_id), error_type="provider", reason=outcome.reason)


def resolve_outcome(outcome: PollOutcome, provider: str = "task") -> str:
    """
    결과를 URL로 변환하거나 타입이 있는 예외로 올린다.

    Raises:
        ProviderError: ProviderFailure
        TaskTimeoutError: Timeout
    """
    if isinstance(outcome, Success):
        return outcome.url
    if isinstance(outcome, Timeout):
        raise TaskTimeoutError(
            f"{provider} task timed out after {outcome.attempts} polls ({outcome.elapsed_sec}s)",
            attempts=outcome.attempts,
            elapsed_sec=outcome.elapsed_sec,
        )
    raise ProviderError(outcome.reason, provider=provider)
