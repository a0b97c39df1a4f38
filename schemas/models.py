"""
POPCORN Data Models

공통 데이터 모델 정의 (Pydantic 기반)
- Brief: 사용자 크리에이티브 입력 (불변)
- Reference: 분석된 레퍼런스 이미지
- StoryboardPlan / Background / FramePlan: 플래너 산출물 + 생성 결과
- GenerationTask / PollOutcome: 외부 비동기 작업과 그 종료 상태
- Project / SceneRecord: 외부 상태 저장소 계약
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Optional, List, Dict, Union, Literal
from pydantic import BaseModel, ConfigDict, Field
import uuid


class ReferenceRole(str, Enum):
    """레퍼런스 이미지의 의미적 역할"""
    CHARACTER = "character"
    ENVIRONMENT = "environment"
    STYLE = "style"
    PRODUCT = "product"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ReferenceRole":
        """LLM이 돌려준 자유 문자열을 역할로 정규화 (subject → character)."""
        if not value:
            return cls.UNKNOWN
        normalized = str(value).strip().lower()
        aliases = {"subject": "character", "person": "character", "setting": "environment",
                   "background": "environment", "brand": "product"}
        normalized = aliases.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError:
            return cls.UNKNOWN


class EntryStatus(str, Enum):
    """배경/프레임 이미지 생성 상태"""
    PLANNED = "planned"
    GENERATING = "generating"
    READY = "ready"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (EntryStatus.READY, EntryStatus.FAILED)


class AnimationStatus(str, Enum):
    """프레임 애니메이션 상태 (이미지 상태와 독립)"""
    NONE = "none"
    ANIMATING = "animating"
    ANIMATED = "animated"
    FAILED = "failed"


class ProjectStatus(str, Enum):
    """프로젝트 coarse 상태"""
    DRAFT = "draft"
    GENERATING = "generating"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


# draft → generating → {completed | partial | failed}, 종료 상태에서 재실행(resume) 허용
PROJECT_TRANSITIONS: Dict[ProjectStatus, tuple] = {
    ProjectStatus.DRAFT: (ProjectStatus.GENERATING,),
    ProjectStatus.GENERATING: (ProjectStatus.COMPLETED, ProjectStatus.PARTIAL, ProjectStatus.FAILED),
    ProjectStatus.COMPLETED: (ProjectStatus.GENERATING,),
    ProjectStatus.PARTIAL: (ProjectStatus.GENERATING,),
    ProjectStatus.FAILED: (ProjectStatus.GENERATING,),
}


class Brief(BaseModel):
    """사용자 크리에이티브 브리프 (불변 입력)"""
    model_config = ConfigDict(frozen=True)

    creative_direction: str = Field(..., min_length=1, description="크리에이티브 디렉션 텍스트")
    style: str = Field(default="Cinematic Realistic", description="스타일 라벨")
    frame_count: int = Field(default=6, ge=1, description="목표 프레임 수")
    seed_image_url: Optional[str] = Field(default=None, description="시드 이미지 URL")
    elements_board_url: Optional[str] = Field(
        default=None,
        description="캐릭터/세팅/제품 섹션으로 구성된 엘리먼트 보드 이미지 URL",
    )
    use_anchor: bool = Field(default=True, description="앵커 이미지 단계 사용 여부")
    animate: bool = Field(default=False, description="프레임 완료 후 애니메이션까지 진행")


class Reference(BaseModel):
    """분석된 레퍼런스 이미지 (생성 후 불변)"""
    model_config = ConfigDict(frozen=True)

    id: str
    url: str
    role: ReferenceRole = ReferenceRole.UNKNOWN
    description: str = ""
    key_features: List[str] = Field(default_factory=list)
    usable: bool = True
    error: Optional[str] = None

    @property
    def is_subject(self) -> bool:
        return self.usable and self.role in (ReferenceRole.CHARACTER, ReferenceRole.PRODUCT)


class AnchorImage(BaseModel):
    """시퀀스 전체에서 재사용하는 대표 피사체 이미지"""
    url: str
    prompt: str


class Background(BaseModel):
    """여러 프레임이 공유하는 배경 플레이트"""
    id: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    url: Optional[str] = None
    status: EntryStatus = EntryStatus.PLANNED
    error: Optional[str] = None

    def model_post_init(self, __context):
        # URL이 이미 있으면 ready로 간주 (재실행 시 저장된 플랜)
        if self.url and self.status != EntryStatus.READY:
            self.status = EntryStatus.READY


class FramePlan(BaseModel):
    """한 샷의 명세 + 생성 결과"""
    frame_number: int = Field(..., ge=1)
    shot_type: str = Field(..., min_length=1)
    camera_angle: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    background_id: str = Field(..., min_length=1)
    linked_frame_id: Optional[int] = Field(default=None, description="연결된 프레임 번호")
    is_second_keyframe: bool = Field(default=False, description="연결 프레임 클립의 끝 키프레임 여부")
    consistency_rules: Optional[str] = None
    movement: Optional[str] = Field(default=None, description="카메라 무브먼트 (애니메이션 기본 프롬프트)")

    url: Optional[str] = None
    video_url: Optional[str] = None
    status: EntryStatus = EntryStatus.PLANNED
    animation_status: AnimationStatus = AnimationStatus.NONE
    error: Optional[str] = None

    def model_post_init(self, __context):
        if self.url and self.status != EntryStatus.READY:
            self.status = EntryStatus.READY
        if self.video_url and self.animation_status != AnimationStatus.ANIMATED:
            self.animation_status = AnimationStatus.ANIMATED


class StoryboardPlan(BaseModel):
    """플래너 산출물: 배경 + 순서가 있는 프레임 목록"""
    backgrounds: List[Background] = Field(default_factory=list)
    frames: List[FramePlan] = Field(default_factory=list)
    consistency_rules: str = ""
    anchor: Optional[AnchorImage] = None

    def background(self, background_id: str) -> Optional[Background]:
        for bg in self.backgrounds:
            if bg.id == background_id:
                return bg
        return None

    def frame(self, frame_number: int) -> Optional[FramePlan]:
        for frame in self.frames:
            if frame.frame_number == frame_number:
                return frame
        return None

    def second_keyframe_for(self, frame_number: int) -> Optional[FramePlan]:
        """frame_number 클립의 끝 키프레임"""
        for frame in self.frames:
            if frame.is_second_keyframe and frame.linked_frame_id == frame_number:
                return frame
        return None

    @property
    def is_complete(self) -> bool:
        return bool(self.frames) and all(f.url for f in self.frames)


class TaskKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class TaskStatus(str, Enum):
    """외부 작업 상태 (앞으로만 전이)"""
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


_TASK_ORDER = {
    TaskStatus.PENDING: 0,
    TaskStatus.PROCESSING: 1,
    TaskStatus.DONE: 2,
    TaskStatus.ERROR: 2,
}


class GenerationTask(BaseModel):
    """외부 비동기 작업 1건"""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    kind: TaskKind = TaskKind.IMAGE
    status: TaskStatus = TaskStatus.PENDING
    task_id: Optional[str] = Field(default=None, description="프로바이더가 발급한 작업 ID")
    result_url: Optional[str] = None
    error: Optional[str] = None

    def advance_to(self, status: TaskStatus) -> None:
        """상태 전이. 종료 상태 이후 변경이나 역방향 전이는 거부."""
        current = _TASK_ORDER[self.status]
        target = _TASK_ORDER[status]
        if self.status in (TaskStatus.DONE, TaskStatus.ERROR) or target < current:
            raise ValueError(f"task {self.id}: illegal transition {self.status.value} -> {status.value}")
        self.status = status


class Success(BaseModel):
    outcome: Literal["success"] = "success"
    url: str


class ProviderFailure(BaseModel):
    outcome: Literal["provider_failure"] = "provider_failure"
    reason: str


class Timeout(BaseModel):
    outcome: Literal["timeout"] = "timeout"
    attempts: int = 0
    elapsed_sec: float = 0.0


PollOutcome = Annotated[Union[Success, ProviderFailure, Timeout], Field(discriminator="outcome")]


class PollState(str, Enum):
    """TaskClient.poll() 1회 결과"""
    WAITING = "waiting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PollReport(BaseModel):
    state: PollState
    url: Optional[str] = None
    reason: Optional[str] = None


class UnitKind(str, Enum):
    REFERENCE = "reference"
    ANCHOR = "anchor"
    BACKGROUND = "background"
    FRAME = "frame"
    ANIMATION = "animation"


class UnitFailure(BaseModel):
    """단위 실패 기록 (시퀀스를 중단시키지 않음)"""
    unit: UnitKind
    unit_id: str
    error_type: Literal["provider", "timeout", "validation", "skipped"] = "provider"
    reason: str


class Project(BaseModel):
    """외부 프로젝트 레코드 (읽기/갱신만, 스키마 소유 안 함)"""
    id: str = Field(default_factory=lambda: str(uuid.uuid4())[:8])
    status: ProjectStatus = ProjectStatus.DRAFT
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    generation_started_at: Optional[datetime] = None
    generation_completed_at: Optional[datetime] = None
    total_scenes: int = 0
    error_message: Optional[str] = None


class SceneRecord(BaseModel):
    """외부 씬 레코드: 프레임 1개에 대응"""
    scene_number: int
    status: EntryStatus = EntryStatus.PLANNED
    prompt: Optional[str] = None
    image_url: Optional[str] = None
    video_url: Optional[str] = None
    error: Optional[str] = None
    updated_at: datetime = Field(default_factory=datetime.now)


class SequenceResult(BaseModel):
    """오케스트레이터 1회 실행 결과"""
    project_id: str
    status: ProjectStatus
    plan: StoryboardPlan
    references: List[Reference] = Field(default_factory=list)
    failures: List[UnitFailure] = Field(default_factory=list)

    @property
    def ready_frames(self) -> List[int]:
        return [f.frame_number for f in self.plan.frames if f.url]


# ============================================================================
# Director chat
# ============================================================================

class ChatMessage(BaseModel):
    """디렉터 대화 한 턴 (assistant 턴은 이전 DirectorReply JSON일 수 있음)"""
    role: Literal["user", "assistant"] = "user"
    content: Union[str, Dict] = ""

    @property
    def text(self) -> str:
        if isinstance(self.content, dict):
            return str(self.content.get("message", ""))
        return self.content


class DirectorSpecs(BaseModel):
    camera: Optional[str] = None
    lens: Optional[str] = None
    lighting: Optional[str] = None
    mood: Optional[str] = None


class DirectorReply(BaseModel):
    """디렉터 응답: ready_for_storyboard면 refined_prompt로 바로 플랜 생성"""
    message: str = Field(..., min_length=1)
    ready_for_storyboard: bool = False
    refined_prompt: Optional[str] = None
    specs: DirectorSpecs = Field(default_factory=DirectorSpecs)


class DirectorTurn(BaseModel):
    """chat 1회 결과 (준비됐으면 플랜 포함)"""
    reply: DirectorReply
    plan: Optional[StoryboardPlan] = None
    references: List[Reference] = Field(default_factory=list)
