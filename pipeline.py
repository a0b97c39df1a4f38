"""
POPCORN 통합 파이프라인

스토리보드 생성 오케스트레이터. 모든 스테이지를 조율하고
프로젝트 상태 저장소에 스테이지 경계마다 기록한다.

실행 플로우:
1. ReferenceAnalyzer - 레퍼런스 분류 (+ 엘리먼트 보드 해석)
2. SequencePlanner - 배경 + 프레임 플랜
3. AnchorImageStage - 대표 피사체 이미지 (선택, 실패해도 계속)
4. BackgroundStage - 공유 배경 병렬 생성
5. FrameStage - 프레임 K개씩 배치 생성
6. AnimationStage - 프레임 애니메이션 (선택)

재실행(resume) 시 결과 URL이 있는 단위는 호출하지 않는다.
chat()은 DirectorAgent와 대화 1턴을 진행하고, 준비되면 바로 plan()까지 수행한다.
"""

import threading
import time
from typing import Callable, List, Optional, Tuple

from schemas import (
    Brief,
    ChatMessage,
    DirectorTurn,
    EntryStatus,
    FramePlan,
    ProjectStatus,
    Reference,
    SequenceResult,
    StoryboardPlan,
    TaskKind,
    UnitFailure,
    UnitKind,
)
from agents.anchor_agent import AnchorImageStage
from agents.animation_agent import AnimationStage
from agents.background_agent import BackgroundStage
from agents.director_agent import DirectorAgent
from agents.frame_agent import FrameStage
from agents.project_store import ProjectStateStore, build_project_store, scene_from_frame
from agents.providers import (
    build_image_task_client,
    build_sync_image_client,
    build_text_provider,
    build_video_task_client,
    build_vision_provider,
)
from agents.reference_analyzer import ReferenceAnalyzer
from agents.sequence_planner import SequencePlanner
from agents.task_poller import AsyncTaskPoller
from utils.error_manager import ErrorManager
from utils.errors import (
    NotFoundError,
    PlanningError,
    PopcornError,
    ProviderError,
    TaskTimeoutError,
    ValidationError,
)
from utils.constants import DEFAULT_STYLE
from utils.logger import get_logger

logger = get_logger("pipeline")


class SequencePipeline:
    """
    POPCORN 시퀀스 파이프라인

    스테이지와 저장소는 모두 주입받는다. from_settings()가 기본 조립을 담당.
    """

    def __init__(
        self,
        analyzer: ReferenceAnalyzer,
        planner: SequencePlanner,
        anchor_stage: AnchorImageStage,
        background_stage: BackgroundStage,
        frame_stage: FrameStage,
        animation_stage: AnimationStage,
        store: ProjectStateStore,
        error_manager: Optional[ErrorManager] = None,
        use_anchor_image: bool = True,
        director: Optional[DirectorAgent] = None,
    ):
        self.analyzer = analyzer
        self.planner = planner
        self.anchor_stage = anchor_stage
        self.background_stage = background_stage
        self.frame_stage = frame_stage
        self.animation_stage = animation_stage
        self.store = store
        self.error_manager = error_manager
        self.use_anchor_image = use_anchor_image
        self.director = director
        self._write_lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings,
        store: Optional[ProjectStateStore] = None,
        text=None,
        vision=None,
        image_client=None,
        video_client=None,
        sync_client=None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> "SequencePipeline":
        """
        Settings로 전체 스테이지 조립.

        클라이언트 인자를 넘기면 해당 프로바이더 대신 사용한다 (테스트/대체 구현).
        """
        gen = settings.generation
        text = text or build_text_provider(settings)
        vision = vision or build_vision_provider(settings)
        image_client = image_client or build_image_task_client(settings)
        video_client = video_client or build_video_task_client(settings)
        if sync_client is None:
            sync_client = build_sync_image_client(settings)

        image_poller = AsyncTaskPoller.from_config(
            image_client, settings.image_poll, settings.retry, kind=TaskKind.IMAGE, sleep=sleep, clock=clock
        )
        video_poller = AsyncTaskPoller.from_config(
            video_client, settings.video_poll, settings.retry, kind=TaskKind.VIDEO, sleep=sleep, clock=clock
        )
        image_opts = dict(
            aspect_ratio=gen.aspect_ratio,
            resolution=gen.resolution,
            output_format=gen.output_format,
        )

        return cls(
            analyzer=ReferenceAnalyzer(
                vision,
                max_references=gen.max_references,
                max_side_px=gen.reference_max_side_px,
                fetch_timeout=settings.providers.http_timeout_sec,
                retry_policy=settings.retry,
                sleep=sleep,
            ),
            planner=SequencePlanner(
                text,
                max_frames=gen.max_frames,
                max_backgrounds=gen.max_backgrounds,
                retry_policy=settings.retry,
                sleep=sleep,
            ),
            anchor_stage=AnchorImageStage(
                image_poller, sync_client=sync_client, retry_policy=settings.retry, sleep=sleep, **image_opts
            ),
            background_stage=BackgroundStage(image_poller, **image_opts),
            frame_stage=FrameStage(
                image_poller,
                concurrency=gen.frame_concurrency,
                background_failure_policy=gen.background_failure_policy,
                **image_opts,
            ),
            animation_stage=AnimationStage(
                video_poller, concurrency=gen.frame_concurrency, aspect_ratio=gen.aspect_ratio
            ),
            store=store or build_project_store(settings),
            error_manager=ErrorManager(settings.storage.error_log),
            use_anchor_image=gen.use_anchor_image,
            director=DirectorAgent(text, retry_policy=settings.retry, sleep=sleep),
        )

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan(self, brief: Brief, reference_urls: List[str]) -> Tuple[StoryboardPlan, List[Reference]]:
        """
        레퍼런스 분석 + 플랜 생성 (요청 액션 plan).

        Raises:
            ValidationError: 프레임 수/레퍼런스 수 초과 (프로바이더 호출 전)
            PlanningError: 엘리먼트 보드 해석 실패, 플랜 생성/검증 실패
        """
        if brief.frame_count > self.planner.max_frames:
            raise ValidationError(f"frame_count {brief.frame_count} exceeds max {self.planner.max_frames}")

        references = self.analyzer.analyze_all(reference_urls)

        board = None
        if brief.elements_board_url:
            try:
                board = self.analyzer.describe_elements_board(brief.elements_board_url)
            except PopcornError as e:
                raise PlanningError(f"elements board analysis failed: {e}") from e

        plan = self.planner.plan(brief, references, elements_board=board)
        return plan, references

    # ------------------------------------------------------------------
    # Director chat
    # ------------------------------------------------------------------

    def chat(
        self,
        history: List[ChatMessage],
        message: str,
        reference_urls: Optional[List[str]] = None,
        image_url: Optional[str] = None,
        style: str = DEFAULT_STYLE,
        frame_count: int = 6,
    ) -> DirectorTurn:
        """
        디렉터와 대화 1턴. 디렉터가 준비됐다고 판단하면 refined_prompt로 플랜까지 생성.

        Raises:
            ValidationError: 디렉터 미구성, 프레임/레퍼런스 수 초과
            ProviderError: 디렉터 호출 실패
            PlanningError: 디렉터 응답 또는 플랜이 사용할 수 없음
        """
        if self.director is None:
            raise ValidationError("director chat is not configured")

        reply = self.director.reply(history, message, image_url=image_url)
        turn = DirectorTurn(reply=reply)
        if reply.ready_for_storyboard:
            logger.info(f"Director ready, planning: {reply.refined_prompt[:80]}")
            brief = Brief(
                creative_direction=reply.refined_prompt,
                style=style,
                frame_count=frame_count,
                seed_image_url=image_url,
            )
            turn.plan, turn.references = self.plan(brief, reference_urls or [])
        return turn

    # ------------------------------------------------------------------
    # Sequence run
    # ------------------------------------------------------------------

    def _begin(self, project_id: str) -> None:
        project = self.store.get_project(project_id)
        if project.status != ProjectStatus.GENERATING:
            self.store.update_status(project_id, ProjectStatus.GENERATING)

    def _checkpoint(self, project_id: str, plan: StoryboardPlan) -> None:
        with self._write_lock:
            self.store.save_plan(project_id, plan)

    def _on_frame_settled(self, project_id: str, plan: StoryboardPlan):
        def _callback(frame: FramePlan) -> None:
            with self._write_lock:
                self.store.upsert_scene(project_id, scene_from_frame(frame))
                self.store.save_plan(project_id, plan)
        return _callback

    def _record_failures(self, project_id: str, failures: List[UnitFailure]) -> None:
        if not self.error_manager:
            return
        for failure in failures:
            self.error_manager.log_error(
                service=f"{failure.unit.value}_stage",
                error_message=f"{failure.unit.value} {failure.unit_id} {failure.error_type}",
                details=failure.reason,
                severity="warning" if failure.error_type == "skipped" else "error",
                project_id=project_id,
            )

    @staticmethod
    def _final_status(plan: StoryboardPlan, animate: bool) -> ProjectStatus:
        frames_ready = [f for f in plan.frames if f.url]
        if not frames_ready:
            return ProjectStatus.FAILED

        complete = plan.is_complete and all(bg.url for bg in plan.backgrounds)
        if animate:
            complete = complete and all(
                f.video_url for f in plan.frames if not f.is_second_keyframe
            )
        return ProjectStatus.COMPLETED if complete else ProjectStatus.PARTIAL

    def run_sequence(
        self,
        project_id: str,
        brief: Brief,
        reference_urls: Optional[List[str]] = None,
    ) -> SequenceResult:
        """
        시퀀스 전체 실행. 저장된 플랜이 있으면 플래닝을 건너뛰고 이어서 진행.

        Raises:
            ValidationError / PlanningError: 시퀀스 중단 (프로젝트는 failed)
        """
        reference_urls = list(reference_urls or [])
        try:
            self.store.get_project(project_id)
        except NotFoundError:
            self.store.create_project(project_id, brief=brief, reference_urls=reference_urls)

        self._begin(project_id)
        failures: List[UnitFailure] = []

        try:
            record = self.store.load_record(project_id)
            plan, references = record.plan, record.references

            if plan is None:
                logger.info(f"[{project_id}] STEP 1-2: references + planning")
                plan, references = self.plan(brief, reference_urls)
                with self._write_lock:
                    self.store.save_plan(project_id, plan, references=references, brief=brief)
            else:
                logger.info(f"[{project_id}] Resuming stored plan ({len(plan.frames)} frames)")

            failures.extend(
                UnitFailure(unit=UnitKind.REFERENCE, unit_id=r.id, error_type="provider", reason=r.error or "unusable")
                for r in references if not r.usable
            )

            if brief.use_anchor and self.use_anchor_image:
                logger.info(f"[{project_id}] STEP 3: anchor image")
                _, anchor_failure = self.anchor_stage.run(plan, references, brief.style)
                if anchor_failure:
                    failures.append(anchor_failure)
                self._checkpoint(project_id, plan)

            logger.info(f"[{project_id}] STEP 4: backgrounds")
            failures.extend(self.background_stage.run(plan, brief.style))
            self._checkpoint(project_id, plan)

            logger.info(f"[{project_id}] STEP 5: frames")
            failures.extend(self.frame_stage.run(
                plan, references, brief.style,
                on_frame_complete=self._on_frame_settled(project_id, plan),
            ))
            self._checkpoint(project_id, plan)

            if brief.animate:
                logger.info(f"[{project_id}] STEP 6: animation")
                failures.extend(self.animation_stage.animate_all(
                    plan, on_frame_complete=self._on_frame_settled(project_id, plan),
                ))
                self._checkpoint(project_id, plan)

        except ValidationError as e:
            logger.error(f"[{project_id}] Sequence aborted: {e}")
            if self.error_manager:
                self.error_manager.log_error("pipeline", "sequence aborted", details=str(e),
                                             severity="critical", project_id=project_id)
            self.store.update_status(project_id, ProjectStatus.FAILED, error_message=str(e))
            raise
        except Exception as e:
            logger.error(f"[{project_id}] Unexpected pipeline error: {e}")
            self.store.update_status(project_id, ProjectStatus.FAILED, error_message=str(e))
            raise

        self._record_failures(project_id, failures)
        status = self._final_status(plan, brief.animate)
        message = None
        if status != ProjectStatus.COMPLETED:
            message = f"{len(failures)} unit failures"
        self.store.update_status(project_id, status, error_message=message)

        logger.info(
            f"[{project_id}] Sequence {status.value}: "
            f"{sum(1 for f in plan.frames if f.url)}/{len(plan.frames)} frames, {len(failures)} failures"
        )
        return SequenceResult(
            project_id=project_id,
            status=status,
            plan=plan,
            references=references,
            failures=failures,
        )

    def resume(self, project_id: str) -> SequenceResult:
        """
        저장된 브리프/플랜으로 재실행. 완료된 단위는 호출하지 않는다.

        Raises:
            NotFoundError: 알 수 없는 프로젝트
            ValidationError: 저장된 브리프가 없는 경우
        """
        record = self.store.load_record(project_id)
        if record.brief is None:
            raise ValidationError(f"project {project_id} has no stored brief to resume from")
        return self.run_sequence(project_id, record.brief, record.reference_urls)

    # ------------------------------------------------------------------
    # Animation (on demand)
    # ------------------------------------------------------------------

    def animate_frame(self, project_id: str, frame_number: int, prompt: Optional[str] = None) -> FramePlan:
        """
        저장된 플랜의 프레임 1개 애니메이션.

        Raises:
            NotFoundError: 프로젝트/플랜/프레임 없음
            ValidationError: 이미지가 없는 프레임
            ProviderError / TaskTimeoutError: 생성 실패
        """
        plan = self.store.load_plan(project_id)
        frame = plan.frame(frame_number) if plan else None
        if frame is None:
            raise NotFoundError(f"project {project_id} has no frame {frame_number}")
        if frame.status != EntryStatus.READY:
            raise ValidationError(f"frame {frame_number} has no image to animate")

        failure = self.animation_stage.animate_frame(frame, plan, prompt)
        self._on_frame_settled(project_id, plan)(frame)

        if failure is not None:
            self._record_failures(project_id, [failure])
            if failure.error_type == "timeout":
                raise TaskTimeoutError(failure.reason)
            if failure.error_type == "validation":
                raise ValidationError(failure.reason)
            raise ProviderError(failure.reason, provider=self.animation_stage.poller.client.name)
        return frame
