"""
POPCORN Configuration Loader

config/popcorn.yaml (또는 POPCORN_CONFIG 경로)을 기본값 위에 병합해
Settings 모델을 만든다. API 키는 환경변수에서 읽는다.

프로세스 전역 설정은 init_settings()로 명시적으로 초기화한 뒤
각 스테이지에 주입한다. 호출 지점에서 os.getenv로 키를 읽지 않는다.
"""

import os
import threading
import yaml
from pathlib import Path
from typing import Dict, Any, Optional, Literal

from pydantic import BaseModel, Field

from utils import constants
from utils.retry import RetryPolicy

# 기본 설정 디렉토리
CONFIG_DIR = Path(__file__).parent
DEFAULT_CONFIG_PATH = CONFIG_DIR / "popcorn.yaml"


class ApiKeys(BaseModel):
    """프로바이더 API 키 (환경변수에서 주입)"""
    gemini: Optional[str] = Field(default=None, description="GEMINI_API_KEY")
    openai: Optional[str] = Field(default=None, description="OPENAI_API_KEY")
    kie: Optional[str] = Field(default=None, description="KIE_API_KEY (이미지/비디오 작업)")
    wavespeed: Optional[str] = Field(default=None, description="WAVESPEED_API_KEY (동기 이미지)")


class ProviderConfig(BaseModel):
    """프로바이더 선택 및 모델명"""
    llm_provider: Literal["gemini", "openai"] = "gemini"
    text_model: str = constants.MODEL_GEMINI_FLASH
    vision_model: str = constants.MODEL_GEMINI_FLASH
    openai_model: str = constants.MODEL_OPENAI_TEXT
    kie_base_url: str = constants.KIE_BASE_URL
    image_model: str = constants.KIE_IMAGE_MODEL
    video_model: str = constants.KIE_VIDEO_MODEL
    wavespeed_url: str = constants.WAVESPEED_IMAGE_URL
    http_timeout_sec: float = Field(default=30.0, gt=0)


class PollConfig(BaseModel):
    """AsyncTaskPoller 예산"""
    interval_sec: float = Field(default=2.0, ge=0)
    max_attempts: int = Field(default=30, ge=1)
    timeout_sec: Optional[float] = Field(default=60.0, description="벽시계 타임아웃 (None이면 시도 횟수만 사용)")


class GenerationConfig(BaseModel):
    """생성 파라미터 및 상한"""
    default_style: str = constants.DEFAULT_STYLE
    default_frame_count: int = Field(default=6, ge=1)
    max_frames: int = Field(default=12, ge=1, description="플랜 프레임 수 상한")
    max_backgrounds: int = Field(default=3, ge=1, description="플랜 배경 수 상한")
    max_references: int = Field(default=8, ge=0, description="레퍼런스 이미지 수 상한")
    frame_concurrency: int = Field(default=2, ge=1, description="동시 프레임 생성 수 (배치 크기 K)")
    aspect_ratio: str = constants.DEFAULT_ASPECT_RATIO
    resolution: str = constants.DEFAULT_RESOLUTION
    output_format: str = constants.DEFAULT_OUTPUT_FORMAT
    use_anchor_image: bool = Field(default=True, description="앵커 이미지 단계 사용 여부")
    background_failure_policy: Literal["degrade", "block"] = Field(
        default="degrade",
        description="배경 실패 시 프레임 처리 정책 (degrade: 배경 없이 진행, block: 프레임 건너뜀)",
    )
    reference_max_side_px: int = Field(default=1024, ge=64, description="비전 분석 전 리사이즈 크기")


class StorageConfig(BaseModel):
    output_dir: str = "outputs"
    error_log: str = "outputs/api_errors.log"
    store: Literal["memory", "json"] = "json"


class Settings(BaseModel):
    """POPCORN 전체 설정"""
    api_keys: ApiKeys = Field(default_factory=ApiKeys)
    providers: ProviderConfig = Field(default_factory=ProviderConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    image_poll: PollConfig = Field(default_factory=PollConfig)
    video_poll: PollConfig = Field(
        default_factory=lambda: PollConfig(interval_sec=5.0, max_attempts=60, timeout_sec=300.0)
    )
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    job_workers: int = Field(default=2, ge=1, description="백그라운드 잡 워커 수")
    log_level: str = "INFO"


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config_file(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    YAML 설정 파일 로드

    Args:
        config_path: 설정 파일 경로 (기본: POPCORN_CONFIG 또는 config/popcorn.yaml)

    Returns:
        설정 딕셔너리 (파일이 없으면 빈 딕셔너리)
    """
    if config_path is None:
        config_path = os.getenv("POPCORN_CONFIG") or DEFAULT_CONFIG_PATH

    if not os.path.exists(config_path):
        return {}

    with open(config_path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}

    return config.get("popcorn", config)


def _env_overrides(environ: Dict[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {
        "api_keys": {
            "gemini": environ.get("GEMINI_API_KEY") or environ.get("GOOGLE_API_KEY"),
            "openai": environ.get("OPENAI_API_KEY"),
            "kie": environ.get("KIE_API_KEY"),
            "wavespeed": environ.get("WAVESPEED_API_KEY") or environ.get("RAPIDAPI_KEY"),
        }
    }
    overrides["api_keys"] = {k: v for k, v in overrides["api_keys"].items() if v}

    if environ.get("POPCORN_FRAME_CONCURRENCY"):
        overrides["generation"] = {"frame_concurrency": int(environ["POPCORN_FRAME_CONCURRENCY"])}
    if environ.get("LOG_LEVEL"):
        overrides["log_level"] = environ["LOG_LEVEL"]
    return overrides


def load_settings(
    config_path: Optional[str] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Settings:
    """설정 파일 + 환경변수로 Settings 생성 (전역 상태는 건드리지 않음)"""
    environ = dict(os.environ) if environ is None else environ
    data = _deep_merge(load_config_file(config_path), _env_overrides(environ))
    return Settings.model_validate(data)


_settings: Optional[Settings] = None
_settings_lock = threading.Lock()


def init_settings(
    settings: Optional[Settings] = None,
    config_path: Optional[str] = None,
) -> Settings:
    """프로세스 전역 설정을 명시적으로 초기화한다. 엔트리포인트에서 한 번 호출."""
    global _settings
    with _settings_lock:
        _settings = settings or load_settings(config_path)
        from utils.logger import set_log_level
        set_log_level(_settings.log_level)
        return _settings


def get_settings() -> Settings:
    """초기화된 전역 설정 반환. init_settings() 이전 호출은 오류."""
    if _settings is None:
        raise RuntimeError("Settings not initialized. Call config.init_settings() at startup.")
    return _settings


def reset_settings() -> None:
    """테스트용: 전역 설정 해제"""
    global _settings
    with _settings_lock:
        _settings = None
