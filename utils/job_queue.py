"""
Job Queue: 요청과 작업 실행 분리

HTTP 요청은 잡을 등록하고 즉시 반환한다. 잡은 스레드 풀에서 실행되며
상태(queued → running → succeeded | failed)와 에러가 기록되고,
실패한 잡은 같은 작업으로 다시 실행할 수 있다.
"""

import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from utils.error_manager import ErrorManager
from utils.errors import NotFoundError, ValidationError
from utils.logger import get_logger

logger = get_logger("job_queue")


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Job(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    kind: str
    project_id: Optional[str] = None
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


def _summarize(value: Any) -> Optional[Dict[str, Any]]:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, dict):
        return value
    return None


class JobQueue:
    """
    Args:
        max_workers: 동시에 실행할 잡 수
        error_manager: 실패 기록용 (선택)
        max_history: 보관할 잡 기록 수 (초과 시 오래된 종료 잡부터 삭제)
    """

    def __init__(
        self,
        max_workers: int = 2,
        error_manager: Optional[ErrorManager] = None,
        max_history: int = 200,
    ):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="popcorn-job")
        self._jobs: Dict[str, Job] = {}
        self._work: Dict[str, Callable[[], Any]] = {}
        self._futures: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self.error_manager = error_manager
        self.max_history = max_history

    def _prune(self) -> None:
        """lock 보유 상태에서 호출"""
        overflow = len(self._jobs) - self.max_history
        if overflow <= 0:
            return
        finished = sorted(
            (j for j in self._jobs.values() if j.status in (JobStatus.SUCCEEDED, JobStatus.FAILED)),
            key=lambda j: j.created_at,
        )
        for job in finished[:overflow]:
            self._jobs.pop(job.id, None)
            self._work.pop(job.id, None)
            self._futures.pop(job.id, None)

    def submit(self, kind: str, work: Callable[[], Any], project_id: Optional[str] = None) -> Job:
        """잡 등록 후 즉시 반환"""
        job = Job(kind=kind, project_id=project_id)
        with self._lock:
            self._jobs[job.id] = job
            self._work[job.id] = work
            self._futures[job.id] = self._executor.submit(self._run, job.id)
            self._prune()
        logger.info(f"Job {job.id} ({kind}) queued for project {project_id}")
        return job.model_copy()

    def _run(self, job_id: str) -> None:
        with self._lock:
            job = self._jobs[job_id]
            work = self._work[job_id]
            job.status = JobStatus.RUNNING
            job.attempts += 1
            job.started_at = datetime.now()
            job.finished_at = None
            job.error = None

        try:
            value = work()
        except Exception as e:
            with self._lock:
                job.status = JobStatus.FAILED
                job.error = f"{type(e).__name__}: {e}"
                job.finished_at = datetime.now()
            logger.error(f"Job {job_id} ({job.kind}) failed: {e}")
            if self.error_manager:
                self.error_manager.log_error(
                    "JobQueue", f"{job.kind} job failed", details=job.error, project_id=job.project_id
                )
            return

        with self._lock:
            job.status = JobStatus.SUCCEEDED
            job.result = _summarize(value)
            job.finished_at = datetime.now()
            self._work.pop(job_id, None)
            self._futures.pop(job_id, None)
        logger.info(f"Job {job_id} ({job.kind}) succeeded")

    def get(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(f"job not found: {job_id}")
            return job.model_copy()

    def list_jobs(self, project_id: Optional[str] = None) -> List[Job]:
        with self._lock:
            jobs = [j.model_copy() for j in self._jobs.values()]
        if project_id:
            jobs = [j for j in jobs if j.project_id == project_id]
        return sorted(jobs, key=lambda j: j.created_at)

    def retry(self, job_id: str) -> Job:
        """
        실패한 잡을 같은 작업으로 재실행.

        Raises:
            NotFoundError: 알 수 없는 잡
            ValidationError: 실패 상태가 아닌 잡
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(f"job not found: {job_id}")
            if job.status != JobStatus.FAILED:
                raise ValidationError(f"job {job_id} is {job.status.value}, only failed jobs can be retried")
            job.status = JobStatus.QUEUED
            self._futures[job_id] = self._executor.submit(self._run, job_id)
            logger.info(f"Job {job_id} re-queued (attempt {job.attempts + 1})")
            return job.model_copy()

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Job:
        """잡이 끝날 때까지 대기 (CLI / 테스트)"""
        with self._lock:
            future = self._futures.get(job_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.get(job_id)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
