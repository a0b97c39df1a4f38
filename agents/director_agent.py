"""
Director Agent: 협업 크리에이티브 디렉터 대화

사용자와 몇 턴 대화하며 비전을 구체화한다. 모호하면 짧은 질문을 하고,
피사체/무드/맥락이 정해지면 ready_for_storyboard=true와 함께
refined_prompt를 돌려준다 (파이프라인이 이 프롬프트로 바로 플랜을 만든다).
"""

import time
from typing import Callable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from schemas import ChatMessage, DirectorReply
from agents.providers import TextProvider, downscale_image, fetch_image_bytes
from utils.errors import PlanningError, PopcornError
from utils.llm_utils import parse_llm_json
from utils.logger import get_logger
from utils.retry import RetryPolicy, retry_with_backoff

logger = get_logger("director_agent")


DIRECTOR_PROMPT = """You are an expert Creative Director helping a user shape a short cinematic sequence.

GOAL: Guide the user to a clear vision. Do NOT just say "Okay".
PROCESS:
1. If the request is vague or text-only, ask 1-2 SHORT, specific questions about mood, lighting or story logic.
2. If the user provides an image, rely on it but ask about the desired motion or atmosphere.
3. If the vision is clear (subject + mood + context are known) OR the user asks to start/generate,
   set "ready_for_storyboard": true.

OUTPUT FORMAT: JSON ONLY.
{{
  "message": "Short, friendly response. If asking questions, be concise.",
  "ready_for_storyboard": boolean,
  "refined_prompt": "Detailed visual prompt summarizing the agreed vision (required if ready)",
  "specs": {{"camera": string, "lens": string, "lighting": string, "mood": "2-3 word mood"}}
}}
If not ready, ready_for_storyboard MUST be false.

Conversation so far:
{transcript}

User: {message}"""


class DirectorAgent:
    """
    Args:
        text: 텍스트 (+비전) 프로바이더
        history_limit: 프롬프트에 넣을 최근 턴 수
    """

    def __init__(
        self,
        text: TextProvider,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        history_limit: int = 20,
    ):
        self.text = text
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self.history_limit = history_limit

    def build_prompt(self, history: List[ChatMessage], message: str) -> str:
        recent = history[-self.history_limit:] if self.history_limit else []
        lines = [
            f"{'Director' if turn.role == 'assistant' else 'User'}: {turn.text}"
            for turn in recent if turn.text
        ]
        return DIRECTOR_PROMPT.format(transcript="\n".join(lines) or "(none)", message=message)

    def _image(self, url: str):
        try:
            data, _ = fetch_image_bytes(url)
            return downscale_image(data)
        except PopcornError as e:
            logger.warning(f"Chat image unavailable, continuing without it: {e}")
            return None

    def reply(
        self,
        history: List[ChatMessage],
        message: str,
        image_url: Optional[str] = None,
    ) -> DirectorReply:
        """
        디렉터 응답 1턴.

        Raises:
            ProviderError: 프로바이더 호출 실패
            PlanningError: 응답이 JSON 계약을 따르지 않음
        """
        prompt = self.build_prompt(history, message)
        image = self._image(image_url) if image_url else None

        raw = retry_with_backoff(
            lambda: self.text.generate(prompt, images=[image] if image else None, json_mode=True),
            self.retry_policy,
            sleep=self._sleep,
            label="director chat",
        ).unwrap()

        try:
            reply = DirectorReply.model_validate(parse_llm_json(raw))
        except (ValueError, PydanticValidationError) as e:
            raise PlanningError(f"director returned an unusable reply: {e}") from e

        if reply.ready_for_storyboard and not (reply.refined_prompt or "").strip():
            reply.refined_prompt = message
        logger.info(f"Director reply (ready={reply.ready_for_storyboard}, {len(history)} prior turns)")
        return reply
