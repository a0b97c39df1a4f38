"""
Anchor Image Stage: 시퀀스 대표 피사체 이미지 생성

플랜의 consistency rules + 캐릭터/제품 레퍼런스로 피사체 프롬프트를 만들고
이미지 1장을 생성한다. 이후 모든 프레임이 이 이미지를 입력으로 재사용한다.

- WaveSpeed(동기) 클라이언트가 설정돼 있으면 1회 호출
- 없으면 작업 기반 생성기(AsyncTaskPoller) 사용
- 실패는 치명적이지 않음: UnitFailure 기록 후 앵커 없이 진행
"""

import time
from typing import Callable, List, Optional, Tuple

from schemas import AnchorImage, Reference, StoryboardPlan, UnitFailure, UnitKind
from agents.providers import SyncImageClient, build_image_payload
from agents.task_poller import AsyncTaskPoller, resolve_outcome
from utils.errors import PopcornError, TaskTimeoutError
from utils.logger import get_logger
from utils.retry import RetryPolicy, retry_with_backoff

logger = get_logger("anchor_agent")


def build_anchor_prompt(consistency_rules: str, references: List[Reference], style: str) -> str:
    """피사체 앵커 프롬프트 (배경 없는 단독 피사체)"""
    subjects = [r for r in references if r.is_subject]
    subject_desc = " ".join(
        f"Subject details: {r.description}. Key features: {', '.join(r.key_features)}."
        for r in subjects
    )
    parts = [
        f"Character reference sheet, {style}.",
        subject_desc,
        f"Consistency: {consistency_rules}." if consistency_rules else "",
        "Single subject, neutral studio background, full body, front view, sharp focus, 8k.",
    ]
    return " ".join(p for p in parts if p)


class AnchorImageStage:
    """
    Args:
        poller: 이미지 작업 폴러 (동기 클라이언트가 없을 때)
        sync_client: 동기 이미지 클라이언트 (선택)
        aspect_ratio / resolution / output_format: 생성 파라미터
    """

    def __init__(
        self,
        poller: AsyncTaskPoller,
        sync_client: Optional[SyncImageClient] = None,
        aspect_ratio: str = "16:9",
        resolution: str = "2K",
        output_format: str = "png",
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.poller = poller
        self.sync_client = sync_client
        self.aspect_ratio = aspect_ratio
        self.resolution = resolution
        self.output_format = output_format
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    def create(self, prompt: str, reference_urls: List[str], style: str) -> str:
        """
        앵커 이미지 1장 생성 (요청 액션 create_anchor_image).

        Raises:
            ProviderError / TaskTimeoutError
        """
        return self._generate(f"{prompt}. Style: {style}." if style else prompt, reference_urls)

    def _generate(self, prompt: str, reference_urls: List[str]) -> str:
        payload = build_image_payload(
            prompt,
            image_input=reference_urls,
            aspect_ratio=self.aspect_ratio,
            resolution=self.resolution,
            output_format=self.output_format,
        )

        if self.sync_client is not None:
            return retry_with_backoff(
                lambda: self.sync_client.generate(payload),
                self.retry_policy,
                sleep=self._sleep,
                label="anchor image",
            ).unwrap()

        return resolve_outcome(self.poller.run(payload), provider=self.poller.client.name)

    def run(
        self,
        plan: StoryboardPlan,
        references: List[Reference],
        style: str,
    ) -> Tuple[Optional[AnchorImage], Optional[UnitFailure]]:
        """
        플랜에 앵커가 없으면 생성해서 plan.anchor에 기록.

        Returns:
            (anchor, failure) - 실패 시 anchor는 None
        """
        if plan.anchor is not None:
            logger.info("[Anchor] Plan already has an anchor image, skipping")
            return plan.anchor, None

        prompt = build_anchor_prompt(plan.consistency_rules, references, style)
        subject_urls = [r.url for r in references if r.is_subject]
        logger.info(f"[Anchor] Generating anchor image ({len(subject_urls)} subject refs)")

        try:
            url = self._generate(prompt, subject_urls)
        except PopcornError as e:
            error_type = "timeout" if isinstance(e, TaskTimeoutError) else "provider"
            logger.warning(f"[Anchor] Failed, continuing without anchor: {e}")
            return None, UnitFailure(unit=UnitKind.ANCHOR, unit_id="anchor", error_type=error_type, reason=str(e))

        plan.anchor = AnchorImage(url=url, prompt=prompt)
        logger.info(f"[Anchor] Ready: {url}")
        return plan.anchor, None
