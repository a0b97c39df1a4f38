"""
Batch Scheduler

작업 목록을 크기 K의 배치로 나눠 순서대로 처리한다.
- 배치 N의 모든 작업이 끝나야 배치 N+1 시작 (배치 순서 보장)
- 배치 내부 완료 순서는 보장하지 않음
- 작업 하나의 예외는 그 작업 결과로만 기록되고 전파되지 않음
"""

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Generic, List, Optional, Sequence, TypeVar

from utils.logger import get_logger

logger = get_logger("batch_scheduler")

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class UnitOutcome(Generic[T, R]):
    """작업 1건의 결과 (value 또는 error)"""
    item: T
    value: Optional[R] = None
    error: Optional[BaseException] = None
    batch_index: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


class BatchScheduler:
    """
    Args:
        batch_size: 동시에 진행할 최대 작업 수 (K)
    """

    def __init__(self, batch_size: int = 2):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.batch_size = batch_size
        self.peak_in_flight = 0
        self._in_flight = 0
        self._lock = threading.Lock()

    def _enter(self):
        with self._lock:
            self._in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self._in_flight)

    def _leave(self):
        with self._lock:
            self._in_flight -= 1

    def _run_unit(self, worker: Callable[[T], R], item: T, batch_index: int) -> UnitOutcome:
        self._enter()
        try:
            return UnitOutcome(item=item, value=worker(item), batch_index=batch_index)
        except Exception as e:
            logger.warning(f"batch {batch_index}: unit {item!r} failed: {e}")
            return UnitOutcome(item=item, error=e, batch_index=batch_index)
        finally:
            self._leave()

    def run(
        self,
        items: Sequence[T],
        worker: Callable[[T], R],
        on_batch_complete: Optional[Callable[[int, List[UnitOutcome]], Any]] = None,
    ) -> List[UnitOutcome]:
        """
        모든 작업을 배치 단위로 처리.

        Args:
            items: 작업 목록 (순서대로 배치 구성)
            worker: 작업 1건 처리 함수
            on_batch_complete: (batch_index, outcomes) 진행 콜백

        Returns:
            items와 같은 순서의 UnitOutcome 목록
        """
        items = list(items)
        if not items:
            return []

        batches = [items[i:i + self.batch_size] for i in range(0, len(items), self.batch_size)]
        logger.info(f"Scheduling {len(items)} units in {len(batches)} batches (K={self.batch_size})")

        results: List[UnitOutcome] = []
        for batch_index, batch in enumerate(batches):
            outcomes: List[Optional[UnitOutcome]] = [None] * len(batch)
            with ThreadPoolExecutor(max_workers=len(batch)) as executor:
                futures = {
                    executor.submit(self._run_unit, worker, item, batch_index): pos
                    for pos, item in enumerate(batch)
                }
                for future in as_completed(futures):
                    outcomes[futures[future]] = future.result()

            ok_count = sum(1 for o in outcomes if o.ok)
            logger.info(f"Batch {batch_index + 1}/{len(batches)} settled: {ok_count}/{len(batch)} ok")
            results.extend(outcomes)

            if on_batch_complete:
                try:
                    on_batch_complete(batch_index, outcomes)
                except Exception as cb_error:
                    logger.warning(f"Batch progress callback failed: {cb_error}")

        return results
