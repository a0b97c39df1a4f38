"""
POPCORN Agents Package

스테이지 기반 아키텍처:
- ReferenceAnalyzer: 레퍼런스 이미지 역할 분류 / 엘리먼트 보드 해석
- DirectorAgent: 대화로 브리프 구체화 (준비되면 플래닝으로 넘김)
- SequencePlanner: 브리프 → 배경 + 프레임 플랜
- AnchorImageStage: 대표 피사체 이미지 (선택)
- BackgroundStage: 공유 배경 플레이트
- FrameStage: 프레임 이미지 (BatchScheduler로 동시성 제한)
- AnimationStage: 프레임 → 비디오 클립 (선택)
- AsyncTaskPoller: 작업 제출/폴링 상태 머신
- ProjectStateStore: 외부 프로젝트 상태 저장소 어댑터
"""

from .task_poller import AsyncTaskPoller, PollHandle
from .batch_scheduler import BatchScheduler
from .reference_analyzer import ReferenceAnalyzer
from .director_agent import DirectorAgent
from .sequence_planner import SequencePlanner, validate_plan
from .anchor_agent import AnchorImageStage
from .background_agent import BackgroundStage
from .frame_agent import FrameStage, compose_request
from .animation_agent import AnimationStage
from .project_store import InMemoryProjectStore, JsonProjectStore, ProjectStateStore

__all__ = [
    "AsyncTaskPoller",
    "PollHandle",
    "BatchScheduler",
    "ReferenceAnalyzer",
    "DirectorAgent",
    "SequencePlanner",
    "validate_plan",
    "AnchorImageStage",
    "BackgroundStage",
    "FrameStage",
    "compose_request",
    "AnimationStage",
    "InMemoryProjectStore",
    "JsonProjectStore",
    "ProjectStateStore",
]
