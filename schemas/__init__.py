"""
POPCORN Data Models (Pydantic Schemas)
"""

from .models import (
    ReferenceRole,
    EntryStatus,
    AnimationStatus,
    ProjectStatus,
    PROJECT_TRANSITIONS,
    Brief,
    Reference,
    AnchorImage,
    Background,
    FramePlan,
    StoryboardPlan,
    TaskKind,
    TaskStatus,
    GenerationTask,
    Success,
    ProviderFailure,
    Timeout,
    PollOutcome,
    PollState,
    PollReport,
    UnitKind,
    UnitFailure,
    Project,
    SceneRecord,
    SequenceResult,
    ChatMessage,
    DirectorSpecs,
    DirectorReply,
    DirectorTurn,
)

__all__ = [
    "ReferenceRole",
    "EntryStatus",
    "AnimationStatus",
    "ProjectStatus",
    "PROJECT_TRANSITIONS",
    "Brief",
    "Reference",
    "AnchorImage",
    "Background",
    "FramePlan",
    "StoryboardPlan",
    "TaskKind",
    "TaskStatus",
    "GenerationTask",
    "Success",
    "ProviderFailure",
    "Timeout",
    "PollOutcome",
    "PollState",
    "PollReport",
    "UnitKind",
    "UnitFailure",
    "Project",
    "SceneRecord",
    "SequenceResult",
    "ChatMessage",
    "DirectorSpecs",
    "DirectorReply",
    "DirectorTurn",
]
