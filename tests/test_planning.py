"""
Planning tests: reference analysis, plan parsing/validation, LLM JSON extraction,
director chat.
"""
import sys
import os
import json
import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, os.path.dirname(__file__))

from fakes import (
    ScriptedTextProvider,
    director_json,
    fake_fetch_image,
    no_sleep,
    offline_gemini,
    plan_json,
    reference_json,
)
import agents.director_agent as director_agent
import agents.reference_analyzer as reference_analyzer
import agents.sequence_planner as sequence_planner
from agents.director_agent import DirectorAgent
from agents.reference_analyzer import ReferenceAnalyzer
from agents.sequence_planner import SequencePlanner, validate_plan
from schemas import Background, Brief, ChatMessage, FramePlan, Reference, ReferenceRole, StoryboardPlan
from utils.errors import PlanningError, ProviderError, ValidationError
from utils.llm_utils import parse_llm_json
from utils.retry import RetryPolicy

NO_RETRY = RetryPolicy(max_attempts=1)


@pytest.fixture
def fake_fetch(monkeypatch):
    monkeypatch.setattr(reference_analyzer, "fetch_image_bytes", fake_fetch_image)
    monkeypatch.setattr(sequence_planner, "fetch_image_bytes", fake_fetch_image)
    return fake_fetch_image


def brief(**kwargs):
    data = {"creative_direction": "A courier races through the city at night", "frame_count": 6}
    data.update(kwargs)
    return Brief(**data)


# ==========================================================================
# LLM JSON extraction
# ==========================================================================

class TestParseLlmJson:

    def test_fenced_block(self):
        assert parse_llm_json('```json\n{"a": 1}\n```') == {"a": 1}

    def test_surrounding_prose(self):
        assert parse_llm_json('Sure! {"a": {"b": "}"}} hope this helps') == {"a": {"b": "}"}}

    def test_no_object(self):
        with pytest.raises(ValueError):
            parse_llm_json("I cannot help with that")

    def test_empty(self):
        with pytest.raises(ValueError):
            parse_llm_json("   ")


# ==========================================================================
# Reference analysis
# ==========================================================================

class TestReferenceAnalyzer:

    def test_classifies_each_reference(self, fake_fetch):
        vision = ScriptedTextProvider(lambda prompt, images: reference_json("subject"))

        refs = ReferenceAnalyzer(vision, retry_policy=NO_RETRY).analyze_all(["https://cdn.test/a.png"])

        assert len(refs) == 1
        assert refs[0].id == "ref1"
        assert refs[0].role == ReferenceRole.CHARACTER
        assert refs[0].key_features == ["red jacket"]
        assert refs[0].usable
        assert vision.calls[0]["images"][0][1] == "image/jpeg"

    def test_one_failure_does_not_affect_others(self, fake_fetch):
        vision = ScriptedTextProvider(lambda prompt, images: reference_json("environment", "rainy street"))
        urls = ["https://cdn.test/a.png", "https://cdn.test/missing.png", "https://cdn.test/garbage.png"]

        refs = ReferenceAnalyzer(vision, retry_policy=NO_RETRY).analyze_all(urls)

        assert [r.id for r in refs] == ["ref1", "ref2", "ref3"]
        assert [r.usable for r in refs] == [True, False, False]
        assert refs[0].role == ReferenceRole.ENVIRONMENT
        assert "404" in refs[1].error
        assert len(vision.calls) == 1

    def test_malformed_analysis_marks_reference_unusable(self, fake_fetch):
        vision = ScriptedTextProvider(lambda prompt, images: '{"type": "character"}')
        ref = ReferenceAnalyzer(vision, retry_policy=NO_RETRY).analyze("https://cdn.test/a.png", 0)
        assert not ref.usable

    def test_unknown_role_is_kept_as_unknown(self, fake_fetch):
        vision = ScriptedTextProvider(lambda prompt, images: reference_json("mood board"))
        ref = ReferenceAnalyzer(vision, retry_policy=NO_RETRY).analyze("https://cdn.test/a.png", 4)
        assert ref.id == "ref5"
        assert ref.role == ReferenceRole.UNKNOWN
        assert ref.usable

    def test_transient_vision_error_is_retried(self, fake_fetch):
        vision = ScriptedTextProvider([
            ProviderError("overloaded", provider="gemini", status_code=503, transient=True),
            reference_json(),
        ])
        policy = RetryPolicy(max_attempts=2, base_delay_sec=0, jitter_sec=0)

        ref = ReferenceAnalyzer(vision, retry_policy=policy, sleep=no_sleep).analyze("https://cdn.test/a.png", 0)

        assert ref.usable
        assert len(vision.calls) == 2

    def test_network_failure_marks_references_unusable(self, fake_fetch):
        gemini = offline_gemini()
        policy = RetryPolicy(max_attempts=2, base_delay_sec=0, jitter_sec=0)

        refs = ReferenceAnalyzer(gemini, retry_policy=policy, sleep=no_sleep).analyze_all(
            ["https://cdn.test/a.png", "https://cdn.test/b.png"]
        )

        assert [r.usable for r in refs] == [False, False]
        assert all("Gemini request failed" in r.error for r in refs)
        assert gemini.client.attempts == 4

    def test_too_many_references(self):
        analyzer = ReferenceAnalyzer(ScriptedTextProvider([]), max_references=2)
        with pytest.raises(ValidationError):
            analyzer.analyze_all(["a", "b", "c"])

    def test_elements_board(self, fake_fetch):
        vision = ScriptedTextProvider(["  Character: courier. Setting: alley. Product: bike.  "])
        text = ReferenceAnalyzer(vision).describe_elements_board("https://cdn.test/board.png")
        assert text == "Character: courier. Setting: alley. Product: bike."

    def test_elements_board_failure_raises(self, fake_fetch):
        analyzer = ReferenceAnalyzer(ScriptedTextProvider([]))
        with pytest.raises(ProviderError):
            analyzer.describe_elements_board("https://cdn.test/missing.png")


# ==========================================================================
# Plan validation
# ==========================================================================

def frame(number, background_id="bg1", **kwargs):
    return FramePlan(
        frame_number=number, shot_type="wide", camera_angle="low",
        description="d", background_id=background_id, **kwargs,
    )


class TestValidatePlan:

    def test_valid_plan(self):
        plan = StoryboardPlan(
            backgrounds=[Background(id="bg1", description="x")],
            frames=[frame(1), frame(2, linked_frame_id=1, is_second_keyframe=True)],
        )
        validate_plan(plan, max_frames=12, max_backgrounds=3)

    @pytest.mark.parametrize("frames, message", [
        ([frame(1, background_id="bg9")], "unknown background"),
        ([frame(1), frame(1)], "duplicate frame numbers"),
        ([frame(1, linked_frame_id=1)], "links to itself"),
        ([frame(1, linked_frame_id=7)], "unknown linked frame"),
        ([frame(1, is_second_keyframe=True)], "second keyframe without"),
        ([], "no frames"),
    ])
    def test_rejections(self, frames, message):
        plan = StoryboardPlan(backgrounds=[Background(id="bg1", description="x")], frames=frames)
        with pytest.raises(PlanningError) as exc:
            validate_plan(plan, max_frames=12, max_backgrounds=3)
        assert message in str(exc.value)

    def test_limits(self):
        plan = StoryboardPlan(
            backgrounds=[Background(id=f"bg{i}", description="x") for i in range(1, 5)],
            frames=[frame(n) for n in range(1, 5)],
        )
        with pytest.raises(PlanningError) as exc:
            validate_plan(plan, max_frames=3, max_backgrounds=3)
        assert "4 backgrounds exceeds max 3" in str(exc.value)
        assert "4 frames exceeds max 3" in str(exc.value)

    def test_duplicate_background_ids(self):
        plan = StoryboardPlan(
            backgrounds=[Background(id="bg1", description="x"), Background(id="bg1", description="y")],
            frames=[frame(1)],
        )
        with pytest.raises(PlanningError, match="duplicate background ids"):
            validate_plan(plan, max_frames=12, max_backgrounds=3)


# ==========================================================================
# Planner
# ==========================================================================

class TestSequencePlanner:

    def test_plan_from_fenced_response(self):
        text = ScriptedTextProvider([plan_json(6, fenced=True)])
        planner = SequencePlanner(text, retry_policy=NO_RETRY)

        plan = planner.plan(brief(), [])

        assert [b.id for b in plan.backgrounds] == ["bg1", "bg2"]
        assert [f.frame_number for f in plan.frames] == [1, 2, 3, 4, 5, 6]
        assert plan.consistency_rules == "same hero"
        assert plan.frames[0].movement == "slow dolly"
        assert text.calls[0]["json_mode"] is True

    def test_prompt_lists_usable_references_and_board(self):
        refs = [
            Reference(id="ref1", url="u1", role=ReferenceRole.CHARACTER, description="courier", key_features=["helmet"]),
            Reference(id="ref2", url="u2", usable=False, error="404"),
        ]
        planner = SequencePlanner(ScriptedTextProvider([]))

        prompt = planner.build_prompt(brief(), refs, elements_board="Product: bike")

        assert "Ref 1 (character): courier. Features: helmet" in prompt
        assert "Ref 2" not in prompt
        assert "Elements board:\nProduct: bike" in prompt
        assert "6-frame sequence" in prompt

    def test_frames_are_sorted(self):
        raw = json.loads(plan_json(3, background_ids=("bg1",)))
        raw["frames"].reverse()
        plan = SequencePlanner(ScriptedTextProvider([json.dumps(raw)])).parse_plan(json.dumps(raw))
        assert [f.frame_number for f in plan.frames] == [1, 2, 3]

    def test_frame_count_above_limit_is_rejected_before_calling(self):
        text = ScriptedTextProvider([])
        with pytest.raises(ValidationError):
            SequencePlanner(text, max_frames=4).plan(brief(frame_count=5), [])
        assert text.calls == []

    def test_frame_count_mismatch_is_accepted(self):
        plan = SequencePlanner(ScriptedTextProvider([plan_json(4)]), retry_policy=NO_RETRY).plan(brief(), [])
        assert len(plan.frames) == 4

    @pytest.mark.parametrize("raw", [
        "no json here",
        '{"backgrounds": [], "frames": []}',
        '{"backgrounds": [{"id": "bg1", "description": "x"}], "frames": [{"frame_number": 1}]}',
    ])
    def test_unusable_response_is_planning_error(self, raw):
        with pytest.raises(PlanningError):
            SequencePlanner(ScriptedTextProvider([raw]), retry_policy=NO_RETRY).plan(brief(), [])

    def test_invalid_structure_is_planning_error(self):
        raw = json.loads(plan_json(2, background_ids=("bg1",)))
        raw["frames"][1]["background_id"] = "bg7"
        with pytest.raises(PlanningError, match="unknown background 'bg7'"):
            SequencePlanner(ScriptedTextProvider([json.dumps(raw)]), retry_policy=NO_RETRY).plan(brief(), [])

    def test_provider_failure_is_planning_error(self):
        text = ScriptedTextProvider([ProviderError("quota", provider="gemini", status_code=403)])
        with pytest.raises(PlanningError, match="planning failed"):
            SequencePlanner(text, retry_policy=NO_RETRY).plan(brief(), [])

    def test_network_failure_is_planning_error(self):
        with pytest.raises(PlanningError, match="planning failed"):
            SequencePlanner(offline_gemini(), retry_policy=NO_RETRY).plan(brief(), [])

    def test_seed_image_is_sent_when_available(self, fake_fetch):
        text = ScriptedTextProvider([plan_json(6)])
        SequencePlanner(text, retry_policy=NO_RETRY).plan(brief(seed_image_url="https://cdn.test/seed.png"), [])
        assert len(text.calls[0]["images"]) == 1

    def test_missing_seed_image_is_skipped(self, fake_fetch):
        text = ScriptedTextProvider([plan_json(6)])
        SequencePlanner(text, retry_policy=NO_RETRY).plan(brief(seed_image_url="https://cdn.test/missing.png"), [])
        assert text.calls[0]["images"] is None


# ==========================================================================
# Director chat
# ==========================================================================

class TestDirectorAgent:

    def test_clarifying_question(self):
        text = ScriptedTextProvider([director_json("Day or night?")])

        reply = DirectorAgent(text, retry_policy=NO_RETRY).reply([], "a heist in a casino")

        assert reply.message == "Day or night?"
        assert not reply.ready_for_storyboard
        assert reply.refined_prompt is None
        assert reply.specs.mood == "moody noir"
        assert text.calls[0]["json_mode"] is True
        assert "(none)" in text.calls[0]["prompt"]
        assert text.calls[0]["prompt"].endswith("User: a heist in a casino")

    def test_transcript_in_prompt(self):
        text = ScriptedTextProvider([director_json()])
        history = [
            ChatMessage(role="user", content="a heist in a casino"),
            ChatMessage(role="assistant", content={"message": "Day or night?", "ready_for_storyboard": False}),
        ]

        DirectorAgent(text, retry_policy=NO_RETRY).reply(history, "night, neon")

        assert "User: a heist in a casino\nDirector: Day or night?" in text.calls[0]["prompt"]

    def test_history_limit(self):
        text = ScriptedTextProvider([director_json()])
        history = [ChatMessage(content="first idea"), ChatMessage(content="second idea")]

        DirectorAgent(text, retry_policy=NO_RETRY, history_limit=1).reply(history, "go")

        assert "first idea" not in text.calls[0]["prompt"]
        assert "User: second idea" in text.calls[0]["prompt"]

    def test_ready_without_refined_prompt_uses_message(self):
        text = ScriptedTextProvider([director_json("Rolling!", ready=True, refined_prompt="  ")])

        reply = DirectorAgent(text, retry_policy=NO_RETRY).reply([], "just start")

        assert reply.ready_for_storyboard
        assert reply.refined_prompt == "just start"

    @pytest.mark.parametrize("raw", [
        "Sure, let's talk about it!",
        json.dumps({"message": "", "ready_for_storyboard": False}),
        json.dumps({"message": "ok", "ready_for_storyboard": "perhaps"}),
    ])
    def test_unusable_reply_is_planning_error(self, raw):
        with pytest.raises(PlanningError, match="unusable reply"):
            DirectorAgent(ScriptedTextProvider([raw]), retry_policy=NO_RETRY).reply([], "hello")

    def test_provider_failure_propagates(self):
        text = ScriptedTextProvider([ProviderError("quota", provider="gemini", status_code=403)])
        with pytest.raises(ProviderError):
            DirectorAgent(text, retry_policy=NO_RETRY).reply([], "hello")

    def test_image_is_attached_when_available(self, monkeypatch):
        monkeypatch.setattr(director_agent, "fetch_image_bytes", fake_fetch_image)
        text = ScriptedTextProvider([director_json(), director_json()])
        agent = DirectorAgent(text, retry_policy=NO_RETRY)

        agent.reply([], "animate this", image_url="https://cdn.test/still.png")
        agent.reply([], "animate this", image_url="https://cdn.test/missing.png")

        assert len(text.calls[0]["images"]) == 1
        assert text.calls[1]["images"] is None
