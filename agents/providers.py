"""
Provider clients: 외부 생성형 API 경계.

- TextProvider: 텍스트/비전 (Gemini 기본, OpenAI 선택)
- TaskClient: "작업 생성 → 상태 조회" 프로바이더 (Kie 이미지, Kie Veo 비디오)
- SyncImageClient: 동기 이미지 생성 (WaveSpeed sync mode)

모든 클라이언트는 API 키를 생성자에서 주입받는다. 실패는 ProviderError로
통일하고 transient 여부(네트워크, 429, 5xx)를 표시한다. 재시도는 호출하는 쪽이
utils.retry 컴비네이터로 처리한다.
"""

import base64
import io
from typing import Any, Dict, List, Optional, Tuple

import httpx
import requests
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from schemas import PollReport, PollState
from utils import constants
from utils.errors import ProviderError, ValidationError
from utils.logger import get_logger

logger = get_logger("providers")

ImagePart = Tuple[bytes, str]  # (data, mime_type)


# ============================================================================
# HTTP helpers
# ============================================================================

def _http_json(
    method: str,
    url: str,
    provider: str,
    timeout: float,
    **kwargs,
) -> Dict[str, Any]:
    """requests 호출 + 에러 정규화. 2xx가 아니면 ProviderError."""
    try:
        resp = requests.request(method, url, timeout=timeout, **kwargs)
    except requests.RequestException as e:
        raise ProviderError(f"{provider} request failed: {e}", provider=provider, transient=True) from e

    if not resp.ok:
        raise ProviderError.from_status(provider, resp.status_code, resp.text)

    try:
        return resp.json()
    except ValueError as e:
        raise ProviderError(
            f"{provider} returned non-JSON body: {resp.text[:200]}", provider=provider
        ) from e


# ============================================================================
# Provider response schemas
# ============================================================================

class KieEnvelope(BaseModel):
    """Kie 공통 응답 {code, msg, data}"""
    code: Optional[int] = None
    msg: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class KieTaskCreated(BaseModel):
    task_id: str = Field(..., alias="taskId", min_length=1)


class KieImageRecord(BaseModel):
    state: Optional[str] = None
    result_json: Optional[str] = Field(default=None, alias="resultJson")
    fail_msg: Optional[str] = Field(default=None, alias="failMsg")


class KieResult(BaseModel):
    """recordInfo.resultJson 내용"""
    result_urls: List[str] = Field(default_factory=list, alias="resultUrls")


class VeoRecord(BaseModel):
    success_flag: Optional[int] = Field(default=None, alias="successFlag")
    response: Optional[KieResult] = None
    error_message: Optional[str] = Field(default=None, alias="errorMessage")


class WaveSpeedData(BaseModel):
    outputs: List[str] = Field(default_factory=list)


class WaveSpeedEnvelope(BaseModel):
    data: Optional[WaveSpeedData] = None


def parse_response(model, payload: Any, provider: str, what: str):
    """
    응답 dict → 스키마 모델.

    Raises:
        ProviderError: 스키마 불일치 (transient 아님)
    """
    try:
        return model.model_validate(payload if payload is not None else {})
    except PydanticValidationError as e:
        raise ProviderError(
            f"{provider} returned a malformed {what}: {e.errors()[:3]}", provider=provider
        ) from e


def fetch_image_bytes(url: str, timeout: float = 30.0) -> ImagePart:
    """이미지 URL을 내려받아 (bytes, mime_type) 반환."""
    try:
        resp = requests.get(url, timeout=timeout)
    except requests.RequestException as e:
        raise ProviderError(f"image fetch failed for {url}: {e}", provider="http", transient=True) from e
    if not resp.ok:
        raise ProviderError.from_status("http", resp.status_code, f"image fetch {url}")

    mime_type = resp.headers.get("Content-Type", "image/jpeg").split(";")[0].strip()
    if not mime_type.startswith("image/"):
        mime_type = "image/jpeg"
    return resp.content, mime_type


def downscale_image(data: bytes, max_side: int = 1024) -> ImagePart:
    """
    비전 분석 전 이미지 리사이즈 (비용/속도 절감).

    Raises:
        ValidationError: 이미지로 디코딩할 수 없는 경우
    """
    try:
        img = Image.open(io.BytesIO(data)).convert("RGB")
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError(f"not a decodable image: {e}") from e

    img.thumbnail((max_side, max_side))
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=85)
    return buf.getvalue(), "image/jpeg"


# ============================================================================
# Text / vision providers
# ============================================================================

class TextProvider:
    """prompt(+images) in, text out."""

    name = "text"

    def generate(
        self,
        prompt: str,
        images: Optional[List[ImagePart]] = None,
        json_mode: bool = False,
        temperature: float = 0.4,
    ) -> str:
        raise NotImplementedError


class GeminiClient(TextProvider):
    """Google Gemini via the official google-genai SDK."""

    name = "gemini"

    def __init__(self, api_key: str, model: str = constants.MODEL_GEMINI_FLASH):
        if not api_key:
            raise ValidationError("GEMINI_API_KEY is not configured")
        self.api_key = api_key
        self.model = model
        self._client = None

    @property
    def client(self):
        """Lazy initialization of the genai client."""
        if self._client is None:
            from google import genai
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    def generate(
        self,
        prompt: str,
        images: Optional[List[ImagePart]] = None,
        json_mode: bool = False,
        temperature: float = 0.4,
    ) -> str:
        from google.genai import errors as genai_errors
        from google.genai import types

        parts = [types.Part.from_bytes(data=data, mime_type=mime) for data, mime in (images or [])]
        parts.append(types.Part.from_text(text=prompt))

        config = types.GenerateContentConfig(
            temperature=temperature,
            response_mime_type="application/json" if json_mode else None,
        )

        try:
            response = self.client.models.generate_content(
                model=self.model,
                contents=[types.Content(role="user", parts=parts)],
                config=config,
            )
        except genai_errors.ServerError as e:
            raise ProviderError(f"Gemini server error: {e}", provider=self.name,
                                status_code=getattr(e, "code", None), transient=True) from e
        except genai_errors.APIError as e:
            code = getattr(e, "code", None)
            raise ProviderError(f"Gemini API error: {e}", provider=self.name,
                                status_code=code, transient=code == 429) from e
        except httpx.TransportError as e:
            # SDK는 네트워크 오류를 httpx 예외 그대로 올린다
            raise ProviderError(f"Gemini request failed: {e}", provider=self.name, transient=True) from e

        text = response.text
        if not text:
            raise ProviderError("Gemini returned an empty response", provider=self.name)
        return text


class OpenAIClient(TextProvider):
    """OpenAI chat completions (vision via data URLs)."""

    name = "openai"

    def __init__(self, api_key: str, model: str = constants.MODEL_OPENAI_TEXT):
        if not api_key:
            raise ValidationError("OPENAI_API_KEY is not configured")
        self.api_key = api_key
        self.model = model
        self._client = None

    @property
    def client(self):
        """Lazy initialization of the OpenAI client."""
        if self._client is None:
            from openai import OpenAI
            self._client = OpenAI(api_key=self.api_key)
        return self._client

    def generate(
        self,
        prompt: str,
        images: Optional[List[ImagePart]] = None,
        json_mode: bool = False,
        temperature: float = 0.4,
    ) -> str:
        import openai

        content: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
        for data, mime in images or []:
            encoded = base64.b64encode(data).decode()
            content.append({"type": "image_url", "image_url": {"url": f"data:{mime};base64,{encoded}"}})

        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": content}],
            "temperature": temperature,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = self.client.chat.completions.create(**kwargs)
        except (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError) as e:
            raise ProviderError(f"OpenAI transient error: {e}", provider=self.name, transient=True) from e
        except openai.APIStatusError as e:
            raise ProviderError.from_status(self.name, e.status_code, str(e)) from e

        text = response.choices[0].message.content if response.choices else None
        if not text:
            raise ProviderError("OpenAI returned an empty response", provider=self.name)
        return text


# ============================================================================
# Task-based providers (create task → poll)
# ============================================================================

class TaskClient:
    """submit(payload) -> task_id, poll(task_id) -> PollReport."""

    name = "task"

    def submit(self, payload: Dict[str, Any]) -> str:
        raise NotImplementedError

    def poll(self, task_id: str) -> PollReport:
        raise NotImplementedError


class KieImageTaskClient(TaskClient):
    """Kie.ai jobs API (nano-banana-pro image generation)."""

    name = "kie_image"

    def __init__(
        self,
        api_key: str,
        base_url: str = constants.KIE_BASE_URL,
        model: str = constants.KIE_IMAGE_MODEL,
        timeout: float = 30.0,
    ):
        if not api_key:
            raise ValidationError("KIE_API_KEY is not configured")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def submit(self, payload: Dict[str, Any]) -> str:
        data = _http_json(
            "POST",
            f"{self.base_url}/jobs/createTask",
            self.name,
            self.timeout,
            headers=self._headers(),
            json={"model": self.model, "input": payload},
        )
        envelope = parse_response(KieEnvelope, data, self.name, "createTask response")
        # Kie는 HTTP 200 안에 code 필드로 실패를 돌려준다
        if envelope.code != 200:
            raise ProviderError.from_status(self.name, envelope.code or 500, envelope.msg or "")

        task_id = parse_response(KieTaskCreated, envelope.data, self.name, "createTask data").task_id
        logger.debug(f"Kie image task created: {task_id}")
        return task_id

    def poll(self, task_id: str) -> PollReport:
        data = _http_json(
            "GET",
            f"{self.base_url}/jobs/recordInfo",
            self.name,
            self.timeout,
            headers=self._headers(),
            params={"taskId": task_id},
        )
        try:
            envelope = KieEnvelope.model_validate(data)
            record = KieImageRecord.model_validate(envelope.data or {})
        except PydanticValidationError as e:
            return PollReport(state=PollState.FAILED, reason=f"malformed recordInfo: {e.errors()[:3]}")

        if record.state == constants.KIE_STATE_SUCCESS:
            try:
                result = KieResult.model_validate_json(record.result_json or "{}")
            except PydanticValidationError:
                return PollReport(state=PollState.FAILED, reason="unparsable resultJson")
            if not result.result_urls:
                return PollReport(state=PollState.FAILED, reason="success reported but no resultUrls")
            return PollReport(state=PollState.SUCCEEDED, url=result.result_urls[0])

        if record.state == constants.KIE_STATE_FAIL:
            return PollReport(state=PollState.FAILED, reason=record.fail_msg or "Unknown error")

        return PollReport(state=PollState.WAITING)


class VeoVideoTaskClient(TaskClient):
    """Kie.ai Veo image-to-video API."""

    name = "kie_veo"

    def __init__(
        self,
        api_key: str,
        base_url: str = constants.KIE_BASE_URL,
        model: str = constants.KIE_VIDEO_MODEL,
        timeout: float = 30.0,
    ):
        if not api_key:
            raise ValidationError("KIE_API_KEY is not configured")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def submit(self, payload: Dict[str, Any]) -> str:
        image_urls = payload.get("image_urls") or []
        if not image_urls:
            raise ValidationError("video generation needs at least one image url")

        body = {
            "prompt": payload.get("prompt") or "Cinematic slow motion",
            "model": self.model,
            "aspectRatio": payload.get("aspect_ratio", constants.DEFAULT_ASPECT_RATIO),
            "enableTranslation": False,
            "generationType": "FIRST_AND_LAST_FRAMES_2_VIDEO" if len(image_urls) > 1 else "IMAGE_2_VIDEO",
            "imageUrls": image_urls[:2],
        }
        data = _http_json(
            "POST", f"{self.base_url}/veo/generate", self.name, self.timeout,
            headers=self._headers(), json=body,
        )
        envelope = parse_response(KieEnvelope, data, self.name, "veo/generate response")
        if not envelope.data:
            raise ProviderError(f"veo/generate response has no taskId: {envelope.msg}", provider=self.name)
        task_id = parse_response(KieTaskCreated, envelope.data, self.name, "veo/generate data").task_id
        logger.debug(f"Veo task created: {task_id}")
        return task_id

    def poll(self, task_id: str) -> PollReport:
        data = _http_json(
            "GET", f"{self.base_url}/veo/record-info", self.name, self.timeout,
            headers=self._headers(), params={"taskId": task_id},
        )
        try:
            envelope = KieEnvelope.model_validate(data)
            record = VeoRecord.model_validate(envelope.data or {})
        except PydanticValidationError as e:
            return PollReport(state=PollState.FAILED, reason=f"malformed record-info: {e.errors()[:3]}")

        flag = record.success_flag
        if flag == constants.VEO_FLAG_DONE:
            urls = record.response.result_urls if record.response else []
            if not urls:
                return PollReport(state=PollState.FAILED, reason="done but no resultUrls")
            return PollReport(state=PollState.SUCCEEDED, url=urls[0])
        if flag is not None and flag < constants.VEO_FLAG_PROCESSING:
            return PollReport(
                state=PollState.FAILED,
                reason=record.error_message or "Video generation failed provider-side",
            )
        return PollReport(state=PollState.WAITING)


def build_image_payload(
    prompt: str,
    image_input: Optional[List[str]] = None,
    aspect_ratio: str = constants.DEFAULT_ASPECT_RATIO,
    resolution: str = constants.DEFAULT_RESOLUTION,
    output_format: str = constants.DEFAULT_OUTPUT_FORMAT,
) -> Dict[str, Any]:
    """nano-banana-pro 입력 payload (Kie input / WaveSpeed 공통)"""
    payload: Dict[str, Any] = {
        "prompt": prompt,
        "aspect_ratio": aspect_ratio,
        "resolution": resolution,
        "output_format": output_format,
    }
    if image_input:
        payload["image_input"] = list(image_input)
    return payload


# ============================================================================
# Synchronous image provider
# ============================================================================

class SyncImageClient:
    """payload in, image URL out, one blocking call."""

    name = "sync_image"

    def generate(self, payload: Dict[str, Any]) -> str:
        raise NotImplementedError


class WaveSpeedImageClient(SyncImageClient):
    """WaveSpeed nano-banana-pro edit endpoint in sync mode."""

    name = "wavespeed"

    def __init__(self, api_key: str, url: str = constants.WAVESPEED_IMAGE_URL, timeout: float = 120.0):
        if not api_key:
            raise ValidationError("WAVESPEED_API_KEY is not configured")
        self.api_key = api_key
        self.url = url
        self.timeout = timeout

    def generate(self, payload: Dict[str, Any]) -> str:
        body = {
            "aspect_ratio": payload.get("aspect_ratio", constants.DEFAULT_ASPECT_RATIO),
            "enable_base64_output": False,
            "enable_sync_mode": True,
            "output_format": payload.get("output_format", constants.DEFAULT_OUTPUT_FORMAT),
            "prompt": payload["prompt"],
            "resolution": str(payload.get("resolution", constants.DEFAULT_RESOLUTION)).lower(),
        }
        if payload.get("image_input"):
            body["images"] = payload["image_input"]

        data = _http_json(
            "POST", self.url, self.name, self.timeout,
            headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
            json=body,
        )
        envelope = parse_response(WaveSpeedEnvelope, data, self.name, "response")
        if envelope.data is None or not envelope.data.outputs:
            raise ProviderError("WaveSpeed returned no outputs", provider=self.name)
        return envelope.data.outputs[0]


# ============================================================================
# Factories
# ============================================================================

def build_text_provider(settings) -> TextProvider:
    """설정의 llm_provider에 맞는 텍스트/비전 클라이언트 생성"""
    providers = settings.providers
    if providers.llm_provider == "openai":
        return OpenAIClient(settings.api_keys.openai, model=providers.openai_model)
    return GeminiClient(settings.api_keys.gemini, model=providers.text_model)


def build_vision_provider(settings) -> TextProvider:
    providers = settings.providers
    if providers.llm_provider == "openai":
        return OpenAIClient(settings.api_keys.openai, model=providers.openai_model)
    return GeminiClient(settings.api_keys.gemini, model=providers.vision_model)


def build_image_task_client(settings) -> KieImageTaskClient:
    providers = settings.providers
    return KieImageTaskClient(
        settings.api_keys.kie,
        base_url=providers.kie_base_url,
        model=providers.image_model,
        timeout=providers.http_timeout_sec,
    )


def build_video_task_client(settings) -> VeoVideoTaskClient:
    providers = settings.providers
    return VeoVideoTaskClient(
        settings.api_keys.kie,
        base_url=providers.kie_base_url,
        model=providers.video_model,
        timeout=providers.http_timeout_sec,
    )


def build_sync_image_client(settings) -> Optional[SyncImageClient]:
    """WaveSpeed 키가 없으면 None (작업 기반 생성기로 폴백)"""
    if not settings.api_keys.wavespeed:
        return None
    return WaveSpeedImageClient(settings.api_keys.wavespeed, url=settings.providers.wavespeed_url)
