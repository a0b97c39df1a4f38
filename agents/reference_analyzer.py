"""
Reference Analyzer: 레퍼런스 이미지 역할 분류 + 엘리먼트 보드 해석

각 레퍼런스 이미지를 내려받아 축소한 뒤 비전 모델에 보내
{role, description, key_features}를 얻는다. 한 레퍼런스의 실패는
그 레퍼런스만 usable=False로 표시하고 나머지에는 영향을 주지 않는다.
"""

import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from schemas import Reference, ReferenceRole
from agents.providers import TextProvider, downscale_image, fetch_image_bytes
from utils.errors import PopcornError, ProviderError, ValidationError
from utils.llm_utils import parse_llm_json
from utils.logger import get_logger
from utils.retry import RetryPolicy, retry_with_backoff

logger = get_logger("reference_analyzer")


REFERENCE_PROMPT = (
    "Analyze this image for a cinematic storyboard. Determine if it's a "
    "'character', 'environment', 'style' or 'product' reference. Describe key "
    "visual features for consistency. Return JSON: "
    '{ "type": string, "description": string, "key_features": string[] }'
)

ELEMENTS_BOARD_PROMPT = (
    "Please look at this image and describe it in detail. What is shown in the "
    "character section, the setting section, and the product section? Explain "
    "what you see in each part so the image can be fully translated into text."
)


class ReferenceAnalysis(BaseModel):
    """비전 모델 응답 스키마 (type/role 둘 다 허용)"""
    role: Optional[str] = None
    type: Optional[str] = None
    description: str = Field(..., min_length=1)
    key_features: List[str] = Field(default_factory=list)


class ReferenceAnalyzer:
    """
    Args:
        vision: 비전 지원 TextProvider
        max_references: 한 번에 분석할 최대 레퍼런스 수
        max_side_px: 업로드 전 리사이즈 한 변 최대 크기
        fetch_timeout: 이미지 다운로드 타임아웃
    """

    def __init__(
        self,
        vision: TextProvider,
        max_references: int = 8,
        max_side_px: int = 1024,
        fetch_timeout: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.vision = vision
        self.max_references = max_references
        self.max_side_px = max_side_px
        self.fetch_timeout = fetch_timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    def _load_image(self, url: str):
        data, _ = fetch_image_bytes(url, timeout=self.fetch_timeout)
        return downscale_image(data, self.max_side_px)

    def analyze(self, url: str, index: int) -> Reference:
        """레퍼런스 1개 분석. 실패해도 예외 없이 usable=False 레퍼런스 반환."""
        ref_id = f"ref{index + 1}"
        try:
            image = self._load_image(url)
            raw = retry_with_backoff(
                lambda: self.vision.generate(REFERENCE_PROMPT, images=[image], json_mode=True),
                self.retry_policy,
                sleep=self._sleep,
                label=f"{ref_id} analysis",
            ).unwrap()
            parsed = ReferenceAnalysis.model_validate(parse_llm_json(raw))
        except (PopcornError, PydanticValidationError, ValueError) as e:
            logger.warning(f"Reference {ref_id} ({url}) unusable: {e}")
            return Reference(id=ref_id, url=url, usable=False, error=str(e)[:300])

        role = ReferenceRole.parse(parsed.role or parsed.type)
        logger.info(f"Reference {ref_id}: {role.value} ({len(parsed.key_features)} features)")
        return Reference(
            id=ref_id,
            url=url,
            role=role,
            description=parsed.description,
            key_features=parsed.key_features,
        )

    def analyze_all(self, urls: List[str]) -> List[Reference]:
        """
        레퍼런스 전체를 병렬 분석 (개수만큼 스레드).

        Raises:
            ValidationError: 레퍼런스 수가 max_references 초과
        """
        if len(urls) > self.max_references:
            raise ValidationError(
                f"too many references: {len(urls)} (max {self.max_references})"
            )
        if not urls:
            return []

        with ThreadPoolExecutor(max_workers=len(urls)) as executor:
            references = list(executor.map(self.analyze, urls, range(len(urls))))

        usable = sum(1 for r in references if r.usable)
        logger.info(f"Analyzed {len(references)} references ({usable} usable)")
        return references

    def describe_elements_board(self, url: str) -> str:
        """
        엘리먼트 보드(캐릭터/세팅/제품 섹션) 이미지를 텍스트로 변환.

        Raises:
            ProviderError: 다운로드 또는 비전 호출 실패
            ValidationError: 이미지 디코딩 실패
        """
        image = self._load_image(url)
        text = self.vision.generate(ELEMENTS_BOARD_PROMPT, images=[image]).strip()
        if not text:
            raise ProviderError("elements board analysis returned no text", provider=self.vision.name)
        logger.info(f"Elements board described ({len(text)} chars)")
        return text
