"""
Frame Stage: 프레임 이미지 생성

- 작업 대상: URL이 없고 배경이 종료 상태(ready/failed)인 프레임
- 배경이 아직 planned/generating이면 시도하지 않고 보류
- BatchScheduler로 K개씩 배치 처리 (동시 호출 상한 K)
- 연결 프레임(linked_frame_id)이 같은 실행에서 아직 미완료면 2차 패스로 미룸
- 프레임 하나의 실패는 그 프레임만 failed로 표시

배경 실패 정책:
- degrade: 배경 컨텍스트 없이 생성
- block: 배경이 실패한 프레임은 호출 없이 failed (error_type=skipped)
"""

from dataclasses import dataclass, field
from typing import Callable, List, Optional

from schemas import (
    EntryStatus,
    FramePlan,
    Reference,
    StoryboardPlan,
    UnitFailure,
    UnitKind,
)
from agents.batch_scheduler import BatchScheduler
from agents.providers import build_image_payload
from agents.task_poller import AsyncTaskPoller, outcome_failure, resolve_outcome
from utils.logger import get_logger

logger = get_logger("frame_agent")


@dataclass
class FrameRequest:
    """프레임 1개 생성 요청 (프롬프트 + 입력 이미지)"""
    frame_number: int
    prompt: str
    image_inputs: List[str] = field(default_factory=list)
    background_url: Optional[str] = None
    anchor_url: Optional[str] = None


def compose_request(
    frame: FramePlan,
    references: List[Reference],
    style: str,
    background_url: Optional[str] = None,
    anchor_url: Optional[str] = None,
    linked_frame_url: Optional[str] = None,
    plan_rules: str = "",
) -> FrameRequest:
    """
    프레임 프롬프트와 입력 이미지 구성.

    입력 이미지 순서: 캐릭터/제품 레퍼런스 → 배경 → 앵커 → 연결 프레임
    """
    subjects = [r for r in references if r.is_subject]
    subject_desc = " ".join(
        f"Subject details: {r.description}. Key features: {', '.join(r.key_features)}."
        for r in subjects
    )
    rules = " ".join(r for r in (plan_rules, frame.consistency_rules) if r)

    lines = [
        f"Cinematic shot, {style}. Shot type: {frame.shot_type}. Angle: {frame.camera_angle}.",
        f"Scene: {frame.description}.",
    ]
    if subject_desc:
        lines.append(subject_desc)
    if rules:
        lines.append(f"Consistency: {rules}.")
    if background_url:
        lines.append("Environment context: Consistent with established background.")
    if anchor_url:
        lines.append("Subject identity: match the anchor subject image exactly.")
    if linked_frame_url:
        lines.append(f"This is the end of the shot that starts at frame {frame.linked_frame_id}; keep continuity.")
    lines.append("Photorealistic, movie still, 8k, highly detailed.")

    image_inputs = [r.url for r in subjects]
    for url in (background_url, anchor_url, linked_frame_url):
        if url:
            image_inputs.append(url)

    return FrameRequest(
        frame_number=frame.frame_number,
        prompt="\n".join(lines),
        image_inputs=image_inputs,
        background_url=background_url,
        anchor_url=anchor_url,
    )


class FrameStage:
    """
    Args:
        poller: 이미지 작업 폴러
        concurrency: 배치 크기 K
        background_failure_policy: "degrade" | "block"
    """

    def __init__(
        self,
        poller: AsyncTaskPoller,
        concurrency: int = 2,
        background_failure_policy: str = "degrade",
        aspect_ratio: str = "16:9",
        resolution: str = "2K",
        output_format: str = "png",
    ):
        if background_failure_policy not in ("degrade", "block"):
            raise ValueError(f"unknown background failure policy: {background_failure_policy}")
        self.poller = poller
        self.concurrency = concurrency
        self.background_failure_policy = background_failure_policy
        self.aspect_ratio = aspect_ratio
        self.resolution = resolution
        self.output_format = output_format
        self.last_scheduler: Optional[BatchScheduler] = None

    def _payload(self, request: FrameRequest):
        return build_image_payload(
            request.prompt,
            image_input=request.image_inputs,
            aspect_ratio=self.aspect_ratio,
            resolution=self.resolution,
            output_format=self.output_format,
        )

    def generate(
        self,
        frame: FramePlan,
        references: List[Reference],
        style: str,
        background_url: Optional[str] = None,
        anchor_url: Optional[str] = None,
    ) -> str:
        """
        프레임 1개 생성 (요청 액션 generate_frame).

        Raises:
            ProviderError / TaskTimeoutError
        """
        request = compose_request(frame, references, style, background_url, anchor_url)
        outcome = self.poller.run(self._payload(request))
        return resolve_outcome(outcome, provider=self.poller.client.name)

    def request_for(
        self,
        frame: FramePlan,
        plan: StoryboardPlan,
        references: List[Reference],
        style: str,
    ) -> FrameRequest:
        """플랜 상태에서 배경/앵커/연결 프레임 URL을 찾아 요청 구성"""
        background = plan.background(frame.background_id)
        linked = plan.frame(frame.linked_frame_id) if frame.linked_frame_id else None
        return compose_request(
            frame,
            references,
            style,
            background_url=background.url if background else None,
            anchor_url=plan.anchor.url if plan.anchor else None,
            linked_frame_url=linked.url if linked else None,
            plan_rules=plan.consistency_rules,
        )

    def _generate_entry(
        self,
        frame: FramePlan,
        plan: StoryboardPlan,
        references: List[Reference],
        style: str,
    ) -> Optional[UnitFailure]:
        frame.status = EntryStatus.GENERATING
        request = self.request_for(frame, plan, references, style)
        outcome = self.poller.run(self._payload(request))

        failure = outcome_failure(UnitKind.FRAME, frame.frame_number, outcome)
        if failure is None:
            frame.url = outcome.url
            frame.error = None
            frame.status = EntryStatus.READY
            logger.info(f"[Frame {frame.frame_number}] ready")
        else:
            frame.error = failure.reason
            frame.status = EntryStatus.FAILED
            logger.warning(f"[Frame {frame.frame_number}] failed: {failure.reason}")
        return failure

    def _select(self, plan: StoryboardPlan, failures: List[UnitFailure]) -> List[FramePlan]:
        """배경 상태와 실패 정책에 따라 작업 대상 선정"""
        work = []
        for frame in plan.frames:
            if frame.url:
                continue
            background = plan.background(frame.background_id)
            if background is None or not background.status.is_terminal:
                logger.info(f"[Frame {frame.frame_number}] deferred: background {frame.background_id} not ready")
                failures.append(UnitFailure(
                    unit=UnitKind.FRAME,
                    unit_id=str(frame.frame_number),
                    error_type="skipped",
                    reason=f"background {frame.background_id} not ready",
                ))
                continue
            if background.status == EntryStatus.FAILED and self.background_failure_policy == "block":
                frame.status = EntryStatus.FAILED
                frame.error = f"background {background.id} failed"
                failures.append(UnitFailure(
                    unit=UnitKind.FRAME,
                    unit_id=str(frame.frame_number),
                    error_type="skipped",
                    reason=frame.error,
                ))
                continue
            work.append(frame)
        return work

    def run(
        self,
        plan: StoryboardPlan,
        references: List[Reference],
        style: str,
        on_frame_complete: Optional[Callable[[FramePlan], None]] = None,
    ) -> List[UnitFailure]:
        """
        미완료 프레임 전체 생성.

        Args:
            on_frame_complete: 프레임이 ready/failed로 정리될 때마다 호출

        Returns:
            UnitFailure 목록 (보류/차단/실패 프레임)
        """
        failures: List[UnitFailure] = []
        work = self._select(plan, failures)
        if not work:
            logger.info("[Frame] Nothing to generate")
            return failures

        pending_numbers = {f.frame_number for f in work}
        first_pass = [f for f in work if f.linked_frame_id not in pending_numbers]
        second_pass = [f for f in work if f.linked_frame_id in pending_numbers]

        scheduler = BatchScheduler(self.concurrency)
        self.last_scheduler = scheduler

        def _worker(frame: FramePlan) -> Optional[UnitFailure]:
            failure = self._generate_entry(frame, plan, references, style)
            if on_frame_complete:
                try:
                    on_frame_complete(frame)
                except Exception as cb_error:
                    logger.warning(f"[Frame {frame.frame_number}] progress callback failed: {cb_error}")
            return failure

        for label, frames in (("first", first_pass), ("second", second_pass)):
            if not frames:
                continue
            logger.info(f"[Frame] {label} pass: {[f.frame_number for f in frames]}")
            for outcome in scheduler.run(frames, _worker):
                if not outcome.ok:
                    frame = outcome.item
                    frame.status = EntryStatus.FAILED
                    frame.error = str(outcome.error)
                    failures.append(UnitFailure(
                        unit=UnitKind.FRAME,
                        unit_id=str(frame.frame_number),
                        error_type="provider",
                        reason=str(outcome.error),
                    ))
                elif outcome.value is not None:
                    failures.append(outcome.value)

        ready = sum(1 for f in plan.frames if f.url)
        logger.info(f"[Frame] {ready}/{len(plan.frames)} frames ready")
        return failures
