"""
Background Stage: 공유 배경 플레이트 생성 (캐릭터 없음)

URL이 없는 배경만 생성한다 (재실행 시 완료된 배경은 호출 없음).
대기 중인 배경 전체를 동시에 제출하고 각 작업을 종료 상태까지 폴링한다.
실패한 배경은 URL 없이 failed 상태로 남는다.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

from schemas import Background, EntryStatus, StoryboardPlan, UnitFailure, UnitKind
from agents.providers import build_image_payload
from agents.task_poller import AsyncTaskPoller, outcome_failure, resolve_outcome
from utils.logger import get_logger

logger = get_logger("background_agent")


def build_background_prompt(description: str, style: str) -> str:
    return (
        f"Cinematic background, {style}. {description}. NO characters. "
        f"Photorealistic, high quality, 8k resolution."
    )


class BackgroundStage:
    def __init__(
        self,
        poller: AsyncTaskPoller,
        aspect_ratio: str = "16:9",
        resolution: str = "2K",
        output_format: str = "png",
    ):
        self.poller = poller
        self.aspect_ratio = aspect_ratio
        self.resolution = resolution
        self.output_format = output_format

    def _payload(self, description: str, style: str):
        return build_image_payload(
            build_background_prompt(description, style),
            aspect_ratio=self.aspect_ratio,
            resolution=self.resolution,
            output_format=self.output_format,
        )

    def generate(self, background: Background, style: str) -> str:
        """
        배경 1개 생성 (요청 액션 generate_background).

        Raises:
            ProviderError / TaskTimeoutError
        """
        outcome = self.poller.run(self._payload(background.description, style))
        return resolve_outcome(outcome, provider=self.poller.client.name)

    def _generate_entry(self, background: Background, style: str) -> Optional[UnitFailure]:
        background.status = EntryStatus.GENERATING
        outcome = self.poller.run(self._payload(background.description, style))
        failure = outcome_failure(UnitKind.BACKGROUND, background.id, outcome)
        if failure is None:
            background.url = outcome.url
            background.error = None
            background.status = EntryStatus.READY
            logger.info(f"[Background] {background.id} ready")
        else:
            background.error = failure.reason
            background.status = EntryStatus.FAILED
            logger.warning(f"[Background] {background.id} failed: {failure.reason}")
        return failure

    def _settle(self, background: Background, style: str) -> Optional[UnitFailure]:
        """예외도 이 배경의 실패로만 기록"""
        try:
            return self._generate_entry(background, style)
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            background.error = reason
            background.status = EntryStatus.FAILED
            logger.error(f"[Background] {background.id} raised: {reason}")
            return UnitFailure(unit=UnitKind.BACKGROUND, unit_id=background.id, error_type="provider", reason=reason)

    def run(self, plan: StoryboardPlan, style: str) -> List[UnitFailure]:
        """
        플랜의 미완료 배경 전체를 병렬 생성.

        Returns:
            실패한 배경의 UnitFailure 목록
        """
        pending = [bg for bg in plan.backgrounds if not bg.url]
        if not pending:
            logger.info("[Background] All backgrounds already generated")
            return []

        logger.info(f"[Background] Generating {len(pending)}/{len(plan.backgrounds)} backgrounds")
        with ThreadPoolExecutor(max_workers=len(pending)) as executor:
            failures = list(executor.map(lambda bg: self._settle(bg, style), pending))

        return [f for f in failures if f is not None]
