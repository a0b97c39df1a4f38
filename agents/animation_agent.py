"""
Animation Stage: 완성된 프레임 → 짧은 비디오 클립 (Veo image-to-video)

- 프레임 이미지 + 모션 프롬프트 (없으면 movement, 그다음 description)
- 연결된 second keyframe이 준비돼 있으면 first/last frame 모드로 두 장 전송
- 이미 video_url이 있는 프레임은 호출 없음
- start/check: HTTP 요청 액션용 분리된 제출/상태 조회
"""

from typing import Callable, Dict, List, Optional

from schemas import (
    AnimationStatus,
    FramePlan,
    ProviderFailure,
    StoryboardPlan,
    Success,
    UnitFailure,
    UnitKind,
)
from agents.batch_scheduler import BatchScheduler
from agents.task_poller import AsyncTaskPoller, outcome_failure, resolve_outcome
from utils.errors import ProviderError
from utils.logger import get_logger

logger = get_logger("animation_agent")

DEFAULT_MOTION_PROMPT = "Cinematic slow motion"


class AnimationStage:
    """
    Args:
        poller: 비디오 작업 폴러 (video_poll 예산)
        concurrency: animate_all 배치 크기
    """

    def __init__(self, poller: AsyncTaskPoller, concurrency: int = 2, aspect_ratio: str = "16:9"):
        self.poller = poller
        self.concurrency = concurrency
        self.aspect_ratio = aspect_ratio

    def _payload(self, image_url: str, prompt: Optional[str], end_image_url: Optional[str] = None):
        image_urls = [image_url] + ([end_image_url] if end_image_url else [])
        return {
            "image_urls": image_urls,
            "prompt": prompt or DEFAULT_MOTION_PROMPT,
            "aspect_ratio": self.aspect_ratio,
        }

    # ------------------------------------------------------------------
    # Decoupled submit / check
    # ------------------------------------------------------------------

    def start(self, image_url: str, prompt: Optional[str] = None, end_image_url: Optional[str] = None) -> str:
        """
        비디오 작업 제출만 수행하고 task_id 반환.

        Raises:
            ProviderError: 제출 실패
        """
        handle = self.poller.start(self._payload(image_url, prompt, end_image_url))
        if handle.done:
            raise ProviderError(handle.outcome.reason, provider=self.poller.client.name)
        return handle.task.task_id

    def check(self, task_id: str) -> Dict[str, Optional[str]]:
        """상태 1회 조회 → {status: processing|done|error, video_url?, error?}"""
        outcome = self.poller.advance(self.poller.resume(task_id))
        if isinstance(outcome, Success):
            return {"status": "done", "video_url": outcome.url}
        if isinstance(outcome, ProviderFailure):
            return {"status": "error", "error": outcome.reason}
        # 단발 조회에서는 예산 소진(Timeout)도 아직 진행 중으로 본다
        return {"status": "processing"}

    def generate(self, image_url: str, prompt: Optional[str] = None, end_image_url: Optional[str] = None) -> str:
        """
        제출 + 종료까지 폴링 후 비디오 URL 반환.

        Raises:
            ProviderError / TaskTimeoutError
        """
        outcome = self.poller.run(self._payload(image_url, prompt, end_image_url))
        return resolve_outcome(outcome, provider=self.poller.client.name)

    # ------------------------------------------------------------------
    # Plan-level
    # ------------------------------------------------------------------

    def animate_frame(
        self,
        frame: FramePlan,
        plan: Optional[StoryboardPlan] = None,
        prompt: Optional[str] = None,
    ) -> Optional[UnitFailure]:
        """프레임 1개 애니메이션. 실패 시 UnitFailure 반환 (예외 없음)."""
        if frame.video_url:
            logger.info(f"[Animation {frame.frame_number}] already animated, skipping")
            return None
        if not frame.url:
            return UnitFailure(
                unit=UnitKind.ANIMATION,
                unit_id=str(frame.frame_number),
                error_type="validation",
                reason="frame has no image to animate",
            )

        end_frame = plan.second_keyframe_for(frame.frame_number) if plan else None
        end_url = end_frame.url if end_frame else None
        motion = prompt or frame.movement or frame.description

        frame.animation_status = AnimationStatus.ANIMATING
        logger.info(
            f"[Animation {frame.frame_number}] submitting"
            f"{' (first+last frame)' if end_url else ''}: {motion[:60]}"
        )
        outcome = self.poller.run(self._payload(frame.url, motion, end_url))

        failure = outcome_failure(UnitKind.ANIMATION, frame.frame_number, outcome)
        if failure is None:
            frame.video_url = outcome.url
            frame.animation_status = AnimationStatus.ANIMATED
            logger.info(f"[Animation {frame.frame_number}] done")
        else:
            frame.animation_status = AnimationStatus.FAILED
            logger.warning(f"[Animation {frame.frame_number}] failed: {failure.reason}")
        return failure

    def animate_all(
        self,
        plan: StoryboardPlan,
        on_frame_complete: Optional[Callable[[FramePlan], None]] = None,
    ) -> List[UnitFailure]:
        """ready 상태이고 아직 애니메이션이 없는 프레임 전체 (second keyframe 제외)"""
        targets = [
            f for f in plan.frames
            if f.url and not f.video_url and not f.is_second_keyframe
        ]
        if not targets:
            logger.info("[Animation] Nothing to animate")
            return []

        def _worker(frame: FramePlan) -> Optional[UnitFailure]:
            failure = self.animate_frame(frame, plan)
            if on_frame_complete:
                try:
                    on_frame_complete(frame)
                except Exception as cb_error:
                    logger.warning(f"[Animation {frame.frame_number}] progress callback failed: {cb_error}")
            return failure

        failures: List[UnitFailure] = []
        for outcome in BatchScheduler(self.concurrency).run(targets, _worker):
            if not outcome.ok:
                outcome.item.animation_status = AnimationStatus.FAILED
                failures.append(UnitFailure(
                    unit=UnitKind.ANIMATION,
                    unit_id=str(outcome.item.frame_number),
                    reason=str(outcome.error),
                ))
            elif outcome.value is not None:
                failures.append(outcome.value)
        return failures
