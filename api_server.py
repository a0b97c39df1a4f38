"""
POPCORN FastAPI Server

웹 UI와 스토리보드 파이프라인을 연결하는 API 서버.
- 디렉터 대화: chat (준비되면 바로 플랜까지)
- 단일 요청 액션: plan / generate_background / generate_frame /
  create_anchor_image / generate_video / check_status
- 시퀀스 잡: 요청은 JobQueue에 등록 후 즉시 202 반환, 진행은 상태 조회로 확인
"""

import os
import sys
import threading
from contextlib import asynccontextmanager
from dotenv import load_dotenv

# .env 파일 로드
load_dotenv()

from typing import Optional, Dict, Any, List
from pathlib import Path

from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

# POPCORN 모듈 import
sys.path.append(str(Path(__file__).parent))
from config import get_settings, init_settings
from schemas import Background, Brief, ChatMessage, FramePlan, Reference
from pipeline import SequencePipeline
from utils.errors import (
    NotFoundError,
    PlanningError,
    PopcornError,
    ProviderError,
    TaskTimeoutError,
    ValidationError,
)
from utils.job_queue import JobQueue
from utils.logger import get_logger

logger = get_logger("api_server")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """서버 시작 시 설정 초기화, 종료 시 잡 큐 정리"""
    settings = init_settings()
    logger.info(f"Settings initialized (llm={settings.providers.llm_provider}, "
                f"frame_concurrency={settings.generation.frame_concurrency})")
    yield
    if _job_queue is not None:
        _job_queue.shutdown(wait=False)


# FastAPI 앱 생성
app = FastAPI(title="POPCORN API", version="1.0", lifespan=lifespan)

# CORS 설정
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# 의존성 (테스트에서 app.dependency_overrides로 교체)
# ============================================================================

_pipeline: Optional[SequencePipeline] = None
_job_queue: Optional[JobQueue] = None
_init_lock = threading.Lock()


def get_pipeline() -> SequencePipeline:
    global _pipeline
    with _init_lock:
        if _pipeline is None:
            _pipeline = SequencePipeline.from_settings(get_settings())
        return _pipeline


def get_job_queue() -> JobQueue:
    global _job_queue
    with _init_lock:
        if _job_queue is None:
            settings = get_settings()
            _job_queue = JobQueue(max_workers=settings.job_workers)
        return _job_queue


# ============================================================================
# 에러 매핑
# ============================================================================

def status_for(exc: PopcornError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, PlanningError):
        return 422
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, TaskTimeoutError):
        return 504
    if isinstance(exc, ProviderError):
        return 502
    return 500


@app.exception_handler(PopcornError)
async def popcorn_error_handler(request: Request, exc: PopcornError):
    status = status_for(exc)
    logger.warning(f"{request.method} {request.url.path} → {status}: {exc}")
    return JSONResponse(status_code=status, content={"error": type(exc).__name__, "detail": str(exc)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "ValidationError", "detail": jsonable_encoder(exc.errors())},
    )


# ============================================================================
# Pydantic 모델
# ============================================================================

class PlanRequest(BaseModel):
    """시퀀스 플랜 요청"""
    brief: str = Field(..., description="크리에이티브 디렉션")
    style: Optional[str] = None
    frame_count: Optional[int] = None
    reference_urls: List[str] = Field(default_factory=list)
    elements_board_url: Optional[str] = None
    seed_image_url: Optional[str] = None


class ChatRequest(BaseModel):
    """디렉터 대화 1턴"""
    message: str = Field(..., min_length=1)
    history: List[ChatMessage] = Field(default_factory=list)
    image_url: Optional[str] = None
    reference_urls: List[str] = Field(default_factory=list)
    style: Optional[str] = None
    frame_count: Optional[int] = None


class SequenceRequest(PlanRequest):
    """시퀀스 전체 생성 요청 (백그라운드 잡)"""
    project_id: Optional[str] = None
    use_anchor: bool = True
    animate: bool = False


class BackgroundRequest(BaseModel):
    background_plan: Dict[str, Any]
    style: Optional[str] = None


class FrameRequestBody(BaseModel):
    frame_plan: Dict[str, Any]
    all_references: List[Dict[str, Any]] = Field(default_factory=list)
    background_url: Optional[str] = None
    anchor_image_url: Optional[str] = None
    style: Optional[str] = None


class AnchorRequest(BaseModel):
    prompt: str
    reference_urls: List[str] = Field(default_factory=list)
    style: Optional[str] = None


class VideoRequest(BaseModel):
    image_url: str
    prompt: Optional[str] = None
    end_image_url: Optional[str] = None
    wait: bool = False


class CheckStatusRequest(BaseModel):
    task_id: str


class AnimateRequest(BaseModel):
    prompt: Optional[str] = None


def _validated(model, data: Dict[str, Any], label: str):
    """요청 dict → 도메인 모델 (실패 시 400)"""
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"invalid {label}: {e.errors()}") from e


def _style(value: Optional[str]) -> str:
    return value or get_settings().generation.default_style


def _brief_from(req: PlanRequest, **extra) -> Brief:
    data = {
        "creative_direction": req.brief,
        "style": _style(req.style),
        "frame_count": req.frame_count or get_settings().generation.default_frame_count,
        "seed_image_url": req.seed_image_url,
        "elements_board_url": req.elements_board_url,
        **extra,
    }
    return _validated(Brief, data, "brief")


# ============================================================================
# 요청 액션
# ============================================================================

@app.post("/api/plan")
def plan_sequence(req: PlanRequest, pipeline: SequencePipeline = Depends(get_pipeline)):
    """레퍼런스 분석 + 시퀀스 플랜"""
    brief = _brief_from(req)
    plan, references = pipeline.plan(brief, req.reference_urls)
    return {
        "plan": plan.model_dump(mode="json"),
        "references": [r.model_dump(mode="json") for r in references],
    }


@app.post("/api/chat")
def director_chat(req: ChatRequest, pipeline: SequencePipeline = Depends(get_pipeline)):
    turn = pipeline.chat(
        req.history,
        req.message,
        reference_urls=req.reference_urls,
        image_url=req.image_url,
        style=_style(req.style),
        frame_count=req.frame_count or get_settings().generation.default_frame_count,
    )
    return turn.model_dump(mode="json")


@app.post("/api/generate_background")
def generate_background(req: BackgroundRequest, pipeline: SequencePipeline = Depends(get_pipeline)):
    background = _validated(Background, req.background_plan, "background_plan")
    url = pipeline.background_stage.generate(background, _style(req.style))
    return {"url": url}


@app.post("/api/generate_frame")
def generate_frame(req: FrameRequestBody, pipeline: SequencePipeline = Depends(get_pipeline)):
    frame = _validated(FramePlan, req.frame_plan, "frame_plan")
    references = [_validated(Reference, r, "reference") for r in req.all_references]
    url = pipeline.frame_stage.generate(
        frame,
        references,
        _style(req.style),
        background_url=req.background_url,
        anchor_url=req.anchor_image_url,
    )
    return {"url": url}


@app.post("/api/create_anchor_image")
def create_anchor_image(req: AnchorRequest, pipeline: SequencePipeline = Depends(get_pipeline)):
    url = pipeline.anchor_stage.create(req.prompt, req.reference_urls, _style(req.style))
    return {"url": url}


@app.post("/api/generate_video")
def generate_video(req: VideoRequest, pipeline: SequencePipeline = Depends(get_pipeline)):
    """wait=true면 완료까지 대기, 아니면 task_id만 반환 (check_status로 조회)"""
    stage = pipeline.animation_stage
    if req.wait:
        return {"url": stage.generate(req.image_url, req.prompt, req.end_image_url)}
    task_id = stage.start(req.image_url, req.prompt, req.end_image_url)
    return {"task_id": task_id, "status": "processing"}


@app.post("/api/check_status")
def check_status(req: CheckStatusRequest, pipeline: SequencePipeline = Depends(get_pipeline)):
    return pipeline.animation_stage.check(req.task_id)


# ============================================================================
# 시퀀스 잡
# ============================================================================

@app.post("/api/sequences", status_code=202)
def create_sequence(
    req: SequenceRequest,
    pipeline: SequencePipeline = Depends(get_pipeline),
    queue: JobQueue = Depends(get_job_queue),
):
    """프로젝트 생성 후 시퀀스 잡 등록"""
    brief = _brief_from(req, use_anchor=req.use_anchor, animate=req.animate)
    project = pipeline.store.create_project(req.project_id, brief=brief, reference_urls=req.reference_urls)
    job = queue.submit(
        "sequence",
        lambda: pipeline.run_sequence(project.id, brief, req.reference_urls),
        project_id=project.id,
    )
    return {"project_id": project.id, "job_id": job.id, "status": job.status.value}


@app.get("/api/sequences/{project_id}")
def get_sequence(
    project_id: str,
    pipeline: SequencePipeline = Depends(get_pipeline),
    queue: JobQueue = Depends(get_job_queue),
):
    """프로젝트 상태 + 플랜 + 씬 + 잡 + 최근 에러"""
    record = pipeline.store.load_record(project_id)
    recent_errors = []
    if pipeline.error_manager:
        recent_errors = pipeline.error_manager.get_recent_errors(limit=20, project_id=project_id)
    return {
        "project": record.project.model_dump(mode="json"),
        "plan": record.plan.model_dump(mode="json") if record.plan else None,
        "scenes": [s.model_dump(mode="json") for s in record.scenes],
        "jobs": [j.model_dump(mode="json") for j in queue.list_jobs(project_id)],
        "recent_errors": recent_errors,
    }


@app.post("/api/sequences/{project_id}/resume", status_code=202)
def resume_sequence(
    project_id: str,
    pipeline: SequencePipeline = Depends(get_pipeline),
    queue: JobQueue = Depends(get_job_queue),
):
    pipeline.store.get_project(project_id)
    job = queue.submit("resume", lambda: pipeline.resume(project_id), project_id=project_id)
    return {"project_id": project_id, "job_id": job.id, "status": job.status.value}


@app.post("/api/sequences/{project_id}/frames/{frame_number}/animate", status_code=202)
def animate_frame(
    project_id: str,
    frame_number: int,
    req: Optional[AnimateRequest] = None,
    pipeline: SequencePipeline = Depends(get_pipeline),
    queue: JobQueue = Depends(get_job_queue),
):
    plan = pipeline.store.load_plan(project_id)
    if plan is None or plan.frame(frame_number) is None:
        raise NotFoundError(f"project {project_id} has no frame {frame_number}")

    prompt = req.prompt if req else None
    job = queue.submit(
        "animate",
        lambda: pipeline.animate_frame(project_id, frame_number, prompt),
        project_id=project_id,
    )
    return {"project_id": project_id, "frame_number": frame_number, "job_id": job.id, "status": job.status.value}


@app.get("/api/jobs/{job_id}")
def get_job(job_id: str, queue: JobQueue = Depends(get_job_queue)):
    return queue.get(job_id).model_dump(mode="json")


@app.post("/api/jobs/{job_id}/retry", status_code=202)
def retry_job(job_id: str, queue: JobQueue = Depends(get_job_queue)):
    return queue.retry(job_id).model_dump(mode="json")


@app.get("/health")
def health_check():
    """헬스 체크"""
    return {"status": "ok", "version": "1.0"}


if __name__ == "__main__":
    import uvicorn

    print("""
============================================================
              POPCORN API Server v1.0
============================================================
  Server: http://localhost:8000
  API Docs: http://localhost:8000/docs
============================================================
    """)

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "api_server:app",
        host="0.0.0.0",
        port=port,
        reload=False,
        log_level="info"
    )
