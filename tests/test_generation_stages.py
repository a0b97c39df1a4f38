"""
Generation stage tests: backgrounds, frames, anchor, animation.

Pollers here use interval 0 with the real clock, so every scripted
task settles in a few microseconds.
"""
import sys
import os
import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, os.path.dirname(__file__))

from fakes import (
    FakeSyncImageClient,
    ScriptedTaskClient,
    failed,
    frame_number_of,
    no_sleep,
    succeeded,
    url_route,
    waiting,
)
from agents.anchor_agent import AnchorImageStage, build_anchor_prompt
from agents.animation_agent import DEFAULT_MOTION_PROMPT, AnimationStage
from agents.background_agent import BackgroundStage, build_background_prompt
from agents.frame_agent import FrameStage, compose_request
from agents.task_poller import AsyncTaskPoller
from schemas import (
    AnchorImage,
    AnimationStatus,
    Background,
    EntryStatus,
    FramePlan,
    Reference,
    ReferenceRole,
    StoryboardPlan,
    TaskKind,
)
from utils.errors import ProviderError, TaskTimeoutError
from utils.retry import RetryPolicy


def make_poller(client, max_attempts=30, kind=TaskKind.IMAGE):
    return AsyncTaskPoller(
        client,
        interval_sec=0,
        max_attempts=max_attempts,
        timeout_sec=60.0,
        kind=kind,
        retry_policy=RetryPolicy(max_attempts=1),
        sleep=no_sleep,
    )


def make_frame(number, background_id="bg1", **kwargs):
    return FramePlan(
        frame_number=number,
        shot_type="Medium",
        camera_angle="Eye Level",
        description=f"frame-{number}",
        background_id=background_id,
        **kwargs,
    )


def six_frame_plan():
    return StoryboardPlan(
        backgrounds=[
            Background(id="bg1", description="backdrop-bg1 desert road"),
            Background(id="bg2", description="backdrop-bg2 neon city"),
        ],
        frames=[make_frame(n, "bg1" if n <= 3 else "bg2") for n in range(1, 7)],
        consistency_rules="same red jacket",
    )


SUBJECT = Reference(
    id="ref1",
    url="https://cdn.test/ref-hero.png",
    role=ReferenceRole.CHARACTER,
    description="young woman in red jacket",
    key_features=["red jacket", "short hair"],
)
SETTING = Reference(id="ref2", url="https://cdn.test/ref-city.png", role=ReferenceRole.ENVIRONMENT, description="city")


# ==========================================================================
# Backgrounds
# ==========================================================================

class TestBackgroundStage:

    def test_prompt_excludes_characters(self):
        prompt = build_background_prompt("rainy alley", "Noir")
        assert "NO characters" in prompt
        assert "Noir" in prompt and "rainy alley" in prompt

    def test_generates_missing_backgrounds(self):
        client = ScriptedTaskClient(route=url_route())
        plan = six_frame_plan()

        failures = BackgroundStage(make_poller(client)).run(plan, "Cinematic")

        assert failures == []
        assert [bg.url for bg in plan.backgrounds] == ["https://cdn.test/bg-bg1.png", "https://cdn.test/bg-bg2.png"]
        assert all(bg.status == EntryStatus.READY for bg in plan.backgrounds)
        assert len(client.submitted) == 2

    def test_failed_background_has_no_url(self):
        client = ScriptedTaskClient(route=url_route(fail_backgrounds={"bg2"}))
        plan = six_frame_plan()

        failures = BackgroundStage(make_poller(client)).run(plan, "Cinematic")

        bg2 = plan.background("bg2")
        assert bg2.status == EntryStatus.FAILED
        assert bg2.url is None
        assert [(f.unit_id, f.error_type) for f in failures] == [("bg2", "provider")]

    def test_completed_backgrounds_are_not_regenerated(self):
        client = ScriptedTaskClient(route=url_route())
        plan = six_frame_plan()
        plan.backgrounds[0].url = "https://cdn.test/existing.png"

        BackgroundStage(make_poller(client)).run(plan, "Cinematic")

        assert len(client.submitted) == 1
        assert plan.backgrounds[0].url == "https://cdn.test/existing.png"

    def test_unexpected_error_is_isolated_to_its_background(self):
        def route(payload):
            if "backdrop-bg2" in payload["prompt"]:
                return [RuntimeError("decoder exploded")]
            return [waiting(), succeeded("https://cdn.test/bg-bg1.png")]

        plan = six_frame_plan()
        failures = BackgroundStage(make_poller(ScriptedTaskClient(route=route))).run(plan, "Cinematic")

        assert plan.background("bg1").status == EntryStatus.READY
        assert plan.background("bg1").url == "https://cdn.test/bg-bg1.png"
        bg2 = plan.background("bg2")
        assert bg2.status == EntryStatus.FAILED
        assert bg2.url is None
        assert len(failures) == 1
        assert failures[0].unit_id == "bg2"
        assert "RuntimeError: decoder exploded" in failures[0].reason

    def test_generate_single_raises_on_failure(self):
        client = ScriptedTaskClient(route=lambda p: [failed("quota")])
        with pytest.raises(ProviderError):
            BackgroundStage(make_poller(client)).generate(Background(id="x", description="y"), "Cinematic")


# ==========================================================================
# Frames
# ==========================================================================

class TestComposeRequest:

    def test_input_order_and_prompt(self):
        frame = make_frame(2, linked_frame_id=1, is_second_keyframe=True)
        request = compose_request(
            frame,
            [SETTING, SUBJECT],
            "Cinematic",
            background_url="https://cdn.test/bg.png",
            anchor_url="https://cdn.test/anchor.png",
            linked_frame_url="https://cdn.test/frame-1.png",
            plan_rules="same red jacket",
        )

        assert request.image_inputs == [
            SUBJECT.url,
            "https://cdn.test/bg.png",
            "https://cdn.test/anchor.png",
            "https://cdn.test/frame-1.png",
        ]
        assert "Scene: frame-2." in request.prompt
        assert "same red jacket" in request.prompt
        assert "red jacket, short hair" in request.prompt

    def test_unusable_reference_is_ignored(self):
        broken = Reference(id="ref3", url="https://cdn.test/broken.png", role=ReferenceRole.CHARACTER, usable=False)
        request = compose_request(make_frame(1), [broken], "Cinematic")
        assert request.image_inputs == []


class TestFrameStage:

    def run_backgrounds_and_frames(self, client, plan, concurrency=2, policy="degrade"):
        poller = make_poller(client)
        BackgroundStage(poller).run(plan, "Cinematic")
        stage = FrameStage(poller, concurrency=concurrency, background_failure_policy=policy)
        return stage, stage.run(plan, [SUBJECT], "Cinematic")

    def test_two_backgrounds_six_frames(self):
        client = ScriptedTaskClient(route=url_route())
        plan = six_frame_plan()

        stage, failures = self.run_backgrounds_and_frames(client, plan)

        assert failures == []
        background_calls = [p for p in client.submitted if frame_number_of(p) is None]
        frame_calls = [p for p in client.submitted if frame_number_of(p) is not None]
        assert len(background_calls) == 2
        assert len(frame_calls) == 6
        for payload in frame_calls:
            n = frame_number_of(payload)
            expected_bg = "https://cdn.test/bg-bg1.png" if n <= 3 else "https://cdn.test/bg-bg2.png"
            assert expected_bg in payload["image_input"]
            assert SUBJECT.url in payload["image_input"]
        assert [f.url for f in plan.frames] == [f"https://cdn.test/frame-{n}.png" for n in range(1, 7)]
        assert stage.last_scheduler.peak_in_flight <= 2

    def test_one_frame_failure_is_isolated(self):
        client = ScriptedTaskClient(route=url_route(fail_frames={3}))
        plan = six_frame_plan()

        _, failures = self.run_backgrounds_and_frames(client, plan)

        frame3 = plan.frame(3)
        assert frame3.status == EntryStatus.FAILED
        assert frame3.url is None
        assert frame3.error == "frame 3 rejected"
        assert [(f.unit_id, f.error_type) for f in failures] == [("3", "provider")]
        assert all(plan.frame(n).status == EntryStatus.READY for n in (1, 2, 4, 5, 6))

    def test_rerun_is_idempotent(self):
        client = ScriptedTaskClient(route=url_route())
        plan = six_frame_plan()
        self.run_backgrounds_and_frames(client, plan)
        calls_before = len(client.submitted)

        _, failures = self.run_backgrounds_and_frames(client, plan)

        assert failures == []
        assert len(client.submitted) == calls_before

    def test_degrade_policy_generates_without_background(self):
        client = ScriptedTaskClient(route=url_route(fail_backgrounds={"bg2"}))
        plan = six_frame_plan()

        _, failures = self.run_backgrounds_and_frames(client, plan, policy="degrade")

        assert failures == []
        assert all(f.url for f in plan.frames)
        for payload in client.submitted:
            if (frame_number_of(payload) or 0) >= 4:
                assert "https://cdn.test/bg-bg2.png" not in payload.get("image_input", [])

    def test_block_policy_skips_frames_of_failed_background(self):
        client = ScriptedTaskClient(route=url_route(fail_backgrounds={"bg2"}))
        plan = six_frame_plan()

        _, failures = self.run_backgrounds_and_frames(client, plan, policy="block")

        assert sorted(f.unit_id for f in failures) == ["4", "5", "6"]
        assert all(f.error_type == "skipped" for f in failures)
        assert all(plan.frame(n).status == EntryStatus.FAILED for n in (4, 5, 6))
        assert sorted(frame_number_of(p) for p in client.submitted if frame_number_of(p)) == [1, 2, 3]

    def test_frames_wait_for_unsettled_background(self):
        client = ScriptedTaskClient(route=url_route())
        plan = six_frame_plan()

        failures = FrameStage(make_poller(client)).run(plan, [SUBJECT], "Cinematic")

        assert client.submitted == []
        assert len(failures) == 6
        assert all(f.error_type == "skipped" for f in failures)
        assert all(f.status == EntryStatus.PLANNED for f in plan.frames)

    def test_linked_frame_runs_after_its_start_frame(self):
        client = ScriptedTaskClient(route=url_route())
        plan = StoryboardPlan(
            backgrounds=[Background(id="bg1", description="backdrop-bg1", url="https://cdn.test/bg-bg1.png")],
            frames=[make_frame(1), make_frame(2, linked_frame_id=1, is_second_keyframe=True)],
        )

        FrameStage(make_poller(client), concurrency=2).run(plan, [], "Cinematic")

        assert [frame_number_of(p) for p in client.submitted] == [1, 2]
        assert "https://cdn.test/frame-1.png" in client.submitted[1]["image_input"]

    def test_progress_callback_errors_do_not_fail_frames(self):
        client = ScriptedTaskClient(route=url_route())
        plan = six_frame_plan()
        BackgroundStage(make_poller(client)).run(plan, "Cinematic")

        def explode(frame):
            raise RuntimeError("store offline")

        failures = FrameStage(make_poller(client)).run(plan, [], "Cinematic", on_frame_complete=explode)

        assert failures == []
        assert all(f.status == EntryStatus.READY for f in plan.frames)

    def test_unknown_policy_rejected(self):
        with pytest.raises(ValueError):
            FrameStage(make_poller(ScriptedTaskClient()), background_failure_policy="ignore")


# ==========================================================================
# Anchor
# ==========================================================================

class TestAnchorImageStage:

    def test_prompt_uses_subject_references(self):
        prompt = build_anchor_prompt("same red jacket", [SUBJECT, SETTING], "Cinematic")
        assert "young woman in red jacket" in prompt
        assert "city" not in prompt
        assert "same red jacket" in prompt

    def test_sync_client_sets_plan_anchor(self):
        sync = FakeSyncImageClient(url="https://cdn.test/anchor.png")
        plan = six_frame_plan()
        stage = AnchorImageStage(make_poller(ScriptedTaskClient()), sync_client=sync, sleep=no_sleep)

        anchor, failure = stage.run(plan, [SUBJECT, SETTING], "Cinematic")

        assert failure is None
        assert anchor.url == "https://cdn.test/anchor.png"
        assert plan.anchor is anchor
        assert sync.payloads[0]["image_input"] == [SUBJECT.url]

    def test_failure_is_not_fatal(self):
        sync = FakeSyncImageClient(error=ProviderError("bad prompt", provider="fake_sync", status_code=400))
        plan = six_frame_plan()
        stage = AnchorImageStage(make_poller(ScriptedTaskClient()), sync_client=sync, sleep=no_sleep)

        anchor, failure = stage.run(plan, [SUBJECT], "Cinematic")

        assert anchor is None
        assert plan.anchor is None
        assert failure.error_type == "provider"
        assert len(sync.payloads) == 1

    def test_task_timeout_is_recorded_as_timeout(self):
        client = ScriptedTaskClient(route=lambda p: [waiting()])
        stage = AnchorImageStage(make_poller(client, max_attempts=2))

        anchor, failure = stage.run(six_frame_plan(), [SUBJECT], "Cinematic")

        assert anchor is None
        assert failure.error_type == "timeout"

    def test_existing_anchor_is_reused(self):
        client = ScriptedTaskClient()
        plan = six_frame_plan()
        plan.anchor = AnchorImage(url="https://cdn.test/kept.png", prompt="kept")

        anchor, failure = AnchorImageStage(make_poller(client)).run(plan, [SUBJECT], "Cinematic")

        assert anchor.url == "https://cdn.test/kept.png"
        assert failure is None
        assert client.submitted == []

    def test_create_raises_on_timeout(self):
        client = ScriptedTaskClient(route=lambda p: [waiting()])
        with pytest.raises(TaskTimeoutError):
            AnchorImageStage(make_poller(client, max_attempts=2)).create("hero", [], "Cinematic")


# ==========================================================================
# Animation
# ==========================================================================

class TestAnimationStage:

    def video_poller(self, route=None, max_attempts=30):
        client = ScriptedTaskClient(route=route or (lambda p: [waiting(), succeeded("https://cdn.test/clip.mp4")]))
        return client, make_poller(client, max_attempts=max_attempts, kind=TaskKind.VIDEO)

    def test_first_and_last_frame_mode(self):
        client, poller = self.video_poller()
        plan = StoryboardPlan(
            backgrounds=[Background(id="bg1", description="d", url="https://cdn.test/bg.png")],
            frames=[
                make_frame(1, url="https://cdn.test/frame-1.png", movement="dolly in"),
                make_frame(2, url="https://cdn.test/frame-2.png", linked_frame_id=1, is_second_keyframe=True),
            ],
        )

        failures = AnimationStage(poller).animate_all(plan)

        assert failures == []
        assert len(client.submitted) == 1
        assert client.submitted[0]["image_urls"] == ["https://cdn.test/frame-1.png", "https://cdn.test/frame-2.png"]
        assert client.submitted[0]["prompt"] == "dolly in"
        assert plan.frame(1).video_url == "https://cdn.test/clip.mp4"
        assert plan.frame(1).animation_status == AnimationStatus.ANIMATED
        assert plan.frame(2).video_url is None

    def test_already_animated_frame_is_skipped(self):
        client, poller = self.video_poller()
        frame = make_frame(1, url="https://cdn.test/f.png", video_url="https://cdn.test/old.mp4")

        assert AnimationStage(poller).animate_frame(frame) is None
        assert client.submitted == []

    def test_frame_without_image(self):
        _, poller = self.video_poller()
        failure = AnimationStage(poller).animate_frame(make_frame(1))
        assert failure.error_type == "validation"

    def test_timeout_marks_animation_failed(self):
        _, poller = self.video_poller(route=lambda p: [waiting()], max_attempts=3)
        frame = make_frame(1, url="https://cdn.test/f.png")

        failure = AnimationStage(poller).animate_frame(frame, prompt="pan left")

        assert failure.error_type == "timeout"
        assert frame.animation_status == AnimationStatus.FAILED
        assert frame.status == EntryStatus.READY

    def test_start_and_check(self):
        client, poller = self.video_poller(route=lambda p: [waiting(), failed("blocked")])
        stage = AnimationStage(poller)

        task_id = stage.start("https://cdn.test/f.png")

        assert client.submitted[0]["prompt"] == DEFAULT_MOTION_PROMPT
        assert stage.check(task_id) == {"status": "processing"}
        assert stage.check(task_id) == {"status": "error", "error": "blocked"}

    def test_check_resumes_by_task_id(self):
        client, poller = self.video_poller(route=lambda p: [succeeded("https://cdn.test/clip.mp4")])
        task_id = AnimationStage(poller).start("https://cdn.test/f.png")

        fresh = AnimationStage(make_poller(client, max_attempts=1, kind=TaskKind.VIDEO))

        assert fresh.check(task_id) == {"status": "done", "video_url": "https://cdn.test/clip.mp4"}

    def test_check_treats_status_errors_as_processing(self):
        client, poller = self.video_poller(
            route=lambda p: [ProviderError("503", provider="veo", status_code=503, transient=True)],
            max_attempts=1,
        )
        stage = AnimationStage(poller)
        task_id = stage.start("https://cdn.test/f.png")

        assert stage.check(task_id) == {"status": "processing"}
        assert stage.check(task_id) == {"status": "processing"}
        assert client.poll_count == 2

    def test_start_raises_when_submit_fails(self):
        client = ScriptedTaskClient(submit_errors=[ProviderError("no credits", provider="veo", status_code=402)])
        stage = AnimationStage(make_poller(client, kind=TaskKind.VIDEO))
        with pytest.raises(ProviderError):
            stage.start("https://cdn.test/f.png")
