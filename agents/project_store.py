"""
Project State Store: 외부 프로젝트/씬 상태 저장소 어댑터

오케스트레이터는 좁은 계약만 사용한다:
get_project / update_status / save_plan / load_plan / upsert_scene / list_scenes

상태 머신: draft → generating → {completed | partial | failed}
종료 상태에서 generating으로 재진입 가능 (resume).

구현체:
- InMemoryProjectStore: 테스트 / API 프로세스 기본
- JsonProjectStore: outputs/<project_id>/project.json (atomic write)
"""

import json
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from schemas import (
    PROJECT_TRANSITIONS,
    Brief,
    FramePlan,
    Project,
    ProjectStatus,
    Reference,
    SceneRecord,
    StoryboardPlan,
)
from utils.errors import NotFoundError, ValidationError
from utils.logger import get_logger

logger = get_logger("project_store")


class ProjectRecord(BaseModel):
    """프로젝트 1건의 저장 단위"""
    project: Project
    brief: Optional[Brief] = None
    reference_urls: List[str] = Field(default_factory=list)
    plan: Optional[StoryboardPlan] = None
    references: List[Reference] = Field(default_factory=list)
    scenes: List[SceneRecord] = Field(default_factory=list)


def scene_from_frame(frame: FramePlan) -> SceneRecord:
    return SceneRecord(
        scene_number=frame.frame_number,
        status=frame.status,
        prompt=frame.description,
        image_url=frame.url,
        video_url=frame.video_url,
        error=frame.error,
    )


class ProjectStateStore:
    """저장소 공통 로직. 하위 클래스는 _load / _save만 구현."""

    def __init__(self):
        self._lock = threading.RLock()

    def _load(self, project_id: str) -> Optional[ProjectRecord]:
        raise NotImplementedError

    def _save(self, record: ProjectRecord) -> None:
        raise NotImplementedError

    def list_projects(self) -> List[Project]:
        raise NotImplementedError

    def _require(self, project_id: str) -> ProjectRecord:
        record = self._load(project_id)
        if record is None:
            raise NotFoundError(f"project not found: {project_id}")
        return record

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def create_project(
        self,
        project_id: Optional[str] = None,
        brief: Optional[Brief] = None,
        reference_urls: Optional[List[str]] = None,
    ) -> Project:
        with self._lock:
            project = Project(id=project_id) if project_id else Project()
            if self._load(project.id) is not None:
                raise ValidationError(f"project already exists: {project.id}")
            self._save(ProjectRecord(project=project, brief=brief, reference_urls=reference_urls or []))
            logger.info(f"Project {project.id} created")
            return project

    def get_project(self, project_id: str) -> Project:
        return self._require(project_id).project

    def load_record(self, project_id: str) -> ProjectRecord:
        """프로젝트 전체 스냅샷 (재실행/상태 조회용)"""
        return self._require(project_id)

    def update_status(
        self,
        project_id: str,
        status: ProjectStatus,
        error_message: Optional[str] = None,
    ) -> Project:
        """
        상태 전이. 허용되지 않은 전이는 ValidationError.
        """
        with self._lock:
            record = self._require(project_id)
            project = record.project
            if status not in PROJECT_TRANSITIONS.get(project.status, ()):
                raise ValidationError(
                    f"project {project_id}: illegal transition {project.status.value} -> {status.value}"
                )

            now = datetime.now()
            project.status = status
            project.updated_at = now
            project.error_message = error_message
            if status == ProjectStatus.GENERATING:
                project.generation_started_at = now
                project.generation_completed_at = None
            else:
                project.generation_completed_at = now

            self._save(record)
            logger.info(f"Project {project_id} → {status.value}")
            return project

    def save_plan(
        self,
        project_id: str,
        plan: StoryboardPlan,
        references: Optional[List[Reference]] = None,
        brief: Optional[Brief] = None,
    ) -> None:
        with self._lock:
            record = self._require(project_id)
            record.plan = plan.model_copy(deep=True)
            if references is not None:
                record.references = list(references)
            if brief is not None:
                record.brief = brief
            record.project.total_scenes = len(plan.frames)
            record.project.updated_at = datetime.now()
            self._save(record)

    def load_plan(self, project_id: str) -> Optional[StoryboardPlan]:
        record = self._require(project_id)
        return record.plan.model_copy(deep=True) if record.plan else None

    def upsert_scene(self, project_id: str, scene: SceneRecord) -> None:
        with self._lock:
            record = self._require(project_id)
            scene = scene.model_copy(update={"updated_at": datetime.now()})
            scenes = [s for s in record.scenes if s.scene_number != scene.scene_number]
            scenes.append(scene)
            record.scenes = sorted(scenes, key=lambda s: s.scene_number)
            self._save(record)

    def list_scenes(self, project_id: str) -> List[SceneRecord]:
        return list(self._require(project_id).scenes)


class InMemoryProjectStore(ProjectStateStore):
    def __init__(self):
        super().__init__()
        self._records: Dict[str, ProjectRecord] = {}

    def _load(self, project_id: str) -> Optional[ProjectRecord]:
        record = self._records.get(project_id)
        return record.model_copy(deep=True) if record else None

    def _save(self, record: ProjectRecord) -> None:
        self._records[record.project.id] = record.model_copy(deep=True)

    def list_projects(self) -> List[Project]:
        return [r.project.model_copy() for r in self._records.values()]


class JsonProjectStore(ProjectStateStore):
    """
    Args:
        output_dir: 프로젝트 디렉토리 루트 (outputs/<project_id>/project.json)
    """

    FILENAME = "project.json"

    def __init__(self, output_dir: str = "outputs"):
        super().__init__()
        self.output_dir = Path(output_dir)

    def _path(self, project_id: str) -> Path:
        return self.output_dir / project_id / self.FILENAME

    def _load(self, project_id: str) -> Optional[ProjectRecord]:
        path = self._path(project_id)
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return ProjectRecord.model_validate(json.load(f))

    def _save(self, record: ProjectRecord) -> None:
        path = self._path(record.project.id)
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_suffix(".json.tmp")

        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(record.model_dump(mode="json"), f, ensure_ascii=False, indent=2)
        os.replace(temp_path, path)

    def list_projects(self) -> List[Project]:
        if not self.output_dir.exists():
            return []
        projects = []
        for path in sorted(self.output_dir.glob(f"*/{self.FILENAME}")):
            record = self._load(path.parent.name)
            if record:
                projects.append(record.project)
        return projects


def build_project_store(settings) -> ProjectStateStore:
    if settings.storage.store == "memory":
        return InMemoryProjectStore()
    return JsonProjectStore(settings.storage.output_dir)
