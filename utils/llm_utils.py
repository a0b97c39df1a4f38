"""
LLM 응답 파싱 유틸리티

LLM(Gemini, OpenAI 등)이 반환하는 텍스트에서 구조화된 JSON만 안전하게 추출합니다.
마크다운 코드블록, 앞뒤 설명 문장이 섞여 있어도 첫 번째 JSON 객체만 파싱합니다.
"""
import json
import re
from typing import Any

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)


def _find_balanced_object(text: str) -> str:
    """첫 '{'부터 짝이 맞는 '}'까지 잘라낸다 (문자열 리터럴 내부 괄호는 무시)."""
    start = text.find("{")
    if start < 0:
        raise ValueError("no JSON object found in LLM response")

    depth = 0
    in_string = False
    escaped = False
    for pos in range(start, len(text)):
        ch = text[pos]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:pos + 1]
    raise ValueError("unterminated JSON object in LLM response")


def parse_llm_json(text: str) -> Any:
    """LLM 응답에서 JSON 객체를 추출해 파싱.

    지원 패턴:
      - ```json ... ```
      - ``` ... ```
      - "Here is the plan: {...} Hope this helps"
      - 순수 JSON

    Raises:
        ValueError: JSON 객체를 찾지 못했거나 파싱에 실패한 경우
    """
    if text is None:
        raise ValueError("empty LLM response")
    text = text.strip()
    if not text:
        raise ValueError("empty LLM response")

    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1).strip()

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    candidate = _find_balanced_object(text)
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as e:
        raise ValueError(f"invalid JSON in LLM response: {e}") from e
