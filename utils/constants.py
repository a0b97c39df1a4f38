"""
POPCORN 공통 상수 모듈

프로바이더 엔드포인트/모델명 등 반복 사용되는 상수를 단일 소스로 관리합니다.
설정 파일(config/popcorn.yaml)에서 덮어쓸 수 있는 값의 기본값이기도 합니다.
"""

# ─── Gemini 모델명 ────────────────────────────────────────
MODEL_GEMINI_FLASH = "gemini-2.5-flash"

# ─── OpenAI 모델명 ────────────────────────────────────────
MODEL_OPENAI_TEXT = "gpt-4o"

# ─── Kie.ai (이미지 작업 / Veo 비디오 작업) ───────────────
KIE_BASE_URL = "https://api.kie.ai/api/v1"
KIE_IMAGE_MODEL = "nano-banana-pro"
KIE_VIDEO_MODEL = "veo3_fast"

# Kie recordInfo state 값
KIE_STATE_SUCCESS = "success"
KIE_STATE_FAIL = "fail"

# Veo record-info successFlag 값
VEO_FLAG_DONE = 1
VEO_FLAG_PROCESSING = 0

# ─── WaveSpeed (동기 이미지 생성) ──────────────────────────
WAVESPEED_IMAGE_URL = "https://api.wavespeed.ai/api/v3/google/nano-banana-pro/edit"

# ─── 출력 포맷 기본값 ─────────────────────────────────────
DEFAULT_STYLE = "Cinematic Realistic"
DEFAULT_ASPECT_RATIO = "16:9"
DEFAULT_RESOLUTION = "2K"
DEFAULT_OUTPUT_FORMAT = "png"
