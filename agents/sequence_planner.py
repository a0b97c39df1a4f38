"""
Sequence Planner: 브리프 + 레퍼런스 → StoryboardPlan

텍스트 모델 1회 호출로 배경 1~N개와 프레임 목록을 계획한다.
응답은 관대한 JSON 추출기를 거친 뒤 엄격하게 검증하며,
검증 실패나 프로바이더 실패는 모두 PlanningError (시퀀스 중단)로 올린다.
"""

import time
from typing import Callable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from schemas import Background, Brief, FramePlan, Reference, StoryboardPlan
from agents.providers import TextProvider, downscale_image, fetch_image_bytes
from utils.errors import PlanningError, PopcornError, ValidationError
from utils.llm_utils import parse_llm_json
from utils.logger import get_logger
from utils.retry import RetryPolicy, retry_with_backoff

logger = get_logger("sequence_planner")


PLANNER_PROMPT = """You are a professional Storyboard Director.
Plan a coherent {frame_count}-frame sequence for: "{direction}"
Style: {style}

References:
{references}
{board}
Background Handling:
- Define 1-{max_backgrounds} backgrounds needed for this sequence.
- Descriptions should NOT mention the character/subject.

Frame Planning:
- Each frame should have a shot_type, camera_angle, visual description and camera movement.
- Ensure natural progression.
- Narrative: wide -> close-up -> action. Product: front -> side -> detail -> lifestyle.
- If a shot needs a distinct end image for its clip, add a frame with
  "is_second_keyframe": true and "linked_frame_id" set to the starting frame.

Return JSON:
{{
  "backgrounds": [ {{ "id": "bg1", "description": "..." }} ],
  "frames": [
    {{
      "frame_number": 1,
      "shot_type": "wide/medium/close-up",
      "camera_angle": "eye-level/low/high",
      "description": "Action/Subject description",
      "movement": "Camera movement (pan/tilt/dolly), slow",
      "background_id": "bg1",
      "consistency_rules": "Specific details to keep (e.g. 'holding a red book')",
      "linked_frame_id": null,
      "is_second_keyframe": false
    }}
  ],
  "consistency_rules": "Global rules for subject, lighting, palette"
}}
"""


# ----------------------------------------------------------------------------
# LLM 응답 스키마
# ----------------------------------------------------------------------------

class _PlannedBackground(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)


class _PlannedFrame(BaseModel):
    model_config = ConfigDict(extra="ignore")
    frame_number: int = Field(..., ge=1)
    shot_type: str = Field(..., min_length=1)
    camera_angle: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    background_id: str = Field(..., min_length=1)
    movement: Optional[str] = None
    consistency_rules: Optional[str] = None
    linked_frame_id: Optional[int] = None
    is_second_keyframe: bool = False


class _PlannerOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")
    backgrounds: List[_PlannedBackground] = Field(..., min_length=1)
    frames: List[_PlannedFrame] = Field(..., min_length=1)
    consistency_rules: Optional[str] = ""


def validate_plan(plan: StoryboardPlan, max_frames: int, max_backgrounds: int) -> None:
    """
    플랜 구조 검증.

    Raises:
        PlanningError: 문제 목록을 담은 예외
    """
    problems = []

    if not plan.backgrounds:
        problems.append("plan has no backgrounds")
    if not plan.frames:
        problems.append("plan has no frames")
    if len(plan.backgrounds) > max_backgrounds:
        problems.append(f"{len(plan.backgrounds)} backgrounds exceeds max {max_backgrounds}")
    if len(plan.frames) > max_frames:
        problems.append(f"{len(plan.frames)} frames exceeds max {max_frames}")

    bg_ids = [bg.id for bg in plan.backgrounds]
    duplicates = sorted({i for i in bg_ids if bg_ids.count(i) > 1})
    if duplicates:
        problems.append(f"duplicate background ids: {duplicates}")

    numbers = [f.frame_number for f in plan.frames]
    duplicate_numbers = sorted({n for n in numbers if numbers.count(n) > 1})
    if duplicate_numbers:
        problems.append(f"duplicate frame numbers: {duplicate_numbers}")

    known_bgs = set(bg_ids)
    known_frames = set(numbers)
    for frame in plan.frames:
        if frame.background_id not in known_bgs:
            problems.append(f"frame {frame.frame_number}: unknown background '{frame.background_id}'")
        if frame.linked_frame_id is not None:
            if frame.linked_frame_id == frame.frame_number:
                problems.append(f"frame {frame.frame_number}: links to itself")
            elif frame.linked_frame_id not in known_frames:
                problems.append(f"frame {frame.frame_number}: unknown linked frame {frame.linked_frame_id}")
        if frame.is_second_keyframe and frame.linked_frame_id is None:
            problems.append(f"frame {frame.frame_number}: second keyframe without linked_frame_id")

    if problems:
        raise PlanningError("invalid storyboard plan: " + "; ".join(problems))


class SequencePlanner:
    """
    Args:
        text: 텍스트 (+비전) 프로바이더
        max_frames / max_backgrounds: 플랜 상한
    """

    def __init__(
        self,
        text: TextProvider,
        max_frames: int = 12,
        max_backgrounds: int = 3,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        temperature: float = 0.7,
    ):
        self.text = text
        self.max_frames = max_frames
        self.max_backgrounds = max_backgrounds
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self.temperature = temperature

    def build_prompt(
        self,
        brief: Brief,
        references: List[Reference],
        elements_board: Optional[str] = None,
    ) -> str:
        usable = [r for r in references if r.usable]
        ref_lines = [
            f"Ref {i} ({r.role.value}): {r.description}. Features: {', '.join(r.key_features)}"
            for i, r in enumerate(usable, start=1)
        ]
        board = f"\nElements board:\n{elements_board}\n" if elements_board else ""
        return PLANNER_PROMPT.format(
            frame_count=brief.frame_count,
            direction=brief.creative_direction,
            style=brief.style,
            references="\n".join(ref_lines) or "(none)",
            board=board,
            max_backgrounds=self.max_backgrounds,
        )

    def _seed_image(self, url: str):
        try:
            data, _ = fetch_image_bytes(url)
            return downscale_image(data)
        except PopcornError as e:
            logger.warning(f"Seed image unavailable, planning without it: {e}")
            return None

    def parse_plan(self, raw: str) -> StoryboardPlan:
        """LLM 원문 → 검증된 StoryboardPlan"""
        try:
            output = _PlannerOutput.model_validate(parse_llm_json(raw))
        except (ValueError, PydanticValidationError) as e:
            raise PlanningError(f"planner returned an unusable plan: {e}") from e

        plan = StoryboardPlan(
            backgrounds=[Background(id=bg.id, description=bg.description) for bg in output.backgrounds],
            frames=[FramePlan(**frame.model_dump()) for frame in output.frames],
            consistency_rules=output.consistency_rules or "",
        )
        plan.frames.sort(key=lambda f: f.frame_number)
        validate_plan(plan, self.max_frames, self.max_backgrounds)
        return plan

    def plan(
        self,
        brief: Brief,
        references: List[Reference],
        elements_board: Optional[str] = None,
    ) -> StoryboardPlan:
        """
        시퀀스 계획 생성.

        Raises:
            ValidationError: 요청 프레임 수가 상한 초과
            PlanningError: 프로바이더 실패 또는 검증 실패
        """
        if brief.frame_count > self.max_frames:
            raise ValidationError(f"frame_count {brief.frame_count} exceeds max {self.max_frames}")

        prompt = self.build_prompt(brief, references, elements_board)
        images = []
        if brief.seed_image_url:
            seed = self._seed_image(brief.seed_image_url)
            if seed:
                images.append(seed)

        logger.info(f"Planning {brief.frame_count} frames ({brief.style})")
        result = retry_with_backoff(
            lambda: self.text.generate(prompt, images=images or None, json_mode=True,
                                       temperature=self.temperature),
            self.retry_policy,
            sleep=self._sleep,
            label="planning",
        )
        if not result.ok:
            raise PlanningError(f"planning failed: {result.error}") from result.error

        plan = self.parse_plan(result.value)
        if len(plan.frames) != brief.frame_count:
            logger.warning(
                f"Planner returned {len(plan.frames)} frames (requested {brief.frame_count}); accepting"
            )
        logger.info(f"Plan ready: {len(plan.backgrounds)} backgrounds, {len(plan.frames)} frames")
        return plan
