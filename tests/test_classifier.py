import asyncio
import time

import pytest

from membership.classifier import (
    AI_TAGS,
    DemoBackend,
    MemberClassifier,
    build_analysis_prompt,
    extract_json_object,
    extract_member_text,
    parse_classification_response,
)
from membership.records import MembershipRecord


def feedback(comments="", notes="", member_id="M1"):
    return MembershipRecord(member_id=member_id, first_name="Asha", comments=comments, notes=notes)


def test_vocabulary_is_fixed():
    assert len(AI_TAGS) == 18
    assert AI_TAGS[0] == "Lack of visible results"
    assert AI_TAGS[-1] == "Miscellaneous"


def test_member_text_joins_comment_and_note():
    text = extract_member_text(feedback(" sore back ", "call next week"))
    assert text == "Member Comment: sore back\n\nInternal Note: call next week"
    assert extract_member_text(feedback("   ", "")) == ""


def test_prompt_lists_the_vocabulary():
    record = feedback("busy")
    prompt = build_analysis_prompt(record, extract_member_text(record))
    assert "Member Comment: busy" in prompt
    assert "13. Health or injury issues" in prompt


def test_extract_json_object_ignores_fences_and_prose():
    raw = 'Sure! ```json\n{"tags": ["Cost concerns"], "confidence": 80}\n``` hope that helps {'
    assert extract_json_object(raw)["confidence"] == 80
    with pytest.raises(ValueError):
        extract_json_object("no json here")


def test_unknown_tags_are_dropped_and_confidence_clamped():
    tags, confidence, reasoning = parse_classification_response(
        '{"tags": ["Cost concerns", "Hates mondays", "Cost concerns", "Time constraints", "Life changes", "Unresponsive"], "confidence": 150}'
    )
    assert tags == ("Cost concerns", "Time constraints", "Life changes")
    assert confidence == 100.0
    assert reasoning


def test_unparseable_response_falls_back_to_miscellaneous():
    tags, confidence, reasoning = parse_classification_response("I cannot help with that.")
    assert tags == ("Miscellaneous",)
    assert confidence == 30.0
    assert reasoning.startswith("Error:")


@pytest.mark.asyncio
async def test_empty_feedback_makes_no_backend_call():
    backend = DemoBackend()
    result = await MemberClassifier(backend, rate_limit_delay=0).analyze_member(feedback())
    assert result.suggested_tags == ()
    assert result.confidence == 0
    assert backend.calls == 0


@pytest.mark.asyncio
async def test_demo_mode_injury():
    result = await MemberClassifier(DemoBackend(), rate_limit_delay=0).analyze_member(feedback("Had a knee injury last month"))
    assert result.suggested_tags == ("Health or injury issues",)
    assert result.confidence == 95.0


@pytest.mark.asyncio
async def test_demo_mode_price_and_no_match():
    classifier = MemberClassifier(DemoBackend(), rate_limit_delay=0)
    price = await classifier.analyze_member(feedback(notes="Says the price went up"))
    assert price.suggested_tags == ("Cost concerns", "Perceived value gap")
    assert price.confidence == 85.0
    other = await classifier.analyze_member(feedback("Loves the playlist"))
    assert other.suggested_tags == ("Miscellaneous",)
    assert other.confidence == 50.0


@pytest.mark.asyncio
async def test_demo_backend_ignores_member_details():
    # only the feedback section is matched, not the plan name
    record = MembershipRecord(member_id="M1", membership_name="Low cost plan", comments="all good")
    result = await MemberClassifier(DemoBackend(), rate_limit_delay=0).analyze_member(record)
    assert result.suggested_tags == ("Miscellaneous",)


@pytest.mark.asyncio
async def test_backend_error_becomes_fallback(scripted_backend):
    backend = scripted_backend(ConnectionError("quota exceeded"))
    result = await MemberClassifier(backend, rate_limit_delay=0).analyze_member(feedback("busy"))
    assert result.suggested_tags == ("Miscellaneous",)
    assert result.confidence == 0
    assert result.reasoning == "Analysis failed: quota exceeded"


@pytest.mark.asyncio
async def test_timeout_becomes_fallback(scripted_backend):
    backend = scripted_backend('{"tags": ["Time constraints"]}', delay=0.5)
    result = await MemberClassifier(backend, rate_limit_delay=0, timeout=0.05).analyze_member(feedback("busy"))
    assert result.confidence == 0
    assert result.reasoning.startswith("Analysis failed:")


@pytest.mark.asyncio
async def test_requests_are_spaced_by_rate_limit(scripted_backend):
    backend = scripted_backend()
    classifier = MemberClassifier(backend, rate_limit_delay=0.1)
    start = time.monotonic()
    await asyncio.gather(classifier.analyze_member(feedback("a")), classifier.analyze_member(feedback("b")))
    assert time.monotonic() - start >= 0.1
    assert len(backend.prompts) == 2


@pytest.mark.asyncio
async def test_batch_only_analyzes_members_with_feedback(scripted_backend):
    backend = scripted_backend('{"tags": ["Time constraints"], "confidence": 70}', RuntimeError("boom"))
    members = [feedback("busy", member_id="M1"), feedback(member_id="M2"), feedback(notes="x", member_id="M3")]
    results = await MemberClassifier(backend, rate_limit_delay=0).analyze_members_batch(members)
    assert [r.member_id for r in results] == ["M1", "M3"]
    assert results[0].suggested_tags == ("Time constraints",)
    assert results[1].reasoning == "Analysis failed: boom"


def test_missing_api_key_falls_back_to_demo_with_warning(monkeypatch, caplog):
    from membership import classifier as classifier_module

    monkeypatch.setattr(classifier_module.config, "AI_DEMO_MODE", False)
    monkeypatch.setattr(classifier_module.config, "GEMINI_API_KEY", "")
    with caplog.at_level("WARNING", logger="membership.classifier"):
        backend = classifier_module.get_classification_backend()
    assert isinstance(backend, DemoBackend)
    assert any("GEMINI_API_KEY" in r.getMessage() for r in caplog.records if r.levelname == "WARNING")


def test_explicit_demo_mode_does_not_warn(monkeypatch, caplog):
    from membership import classifier as classifier_module

    monkeypatch.setattr(classifier_module.config, "AI_DEMO_MODE", True)
    with caplog.at_level("WARNING", logger="membership.classifier"):
        assert isinstance(classifier_module.get_classification_backend(), DemoBackend)
    assert not [r for r in caplog.records if r.levelname == "WARNING"]


def test_apply_classifications_matches_by_member_id():
    from datetime import datetime

    from membership.classifier import ClassificationResult, apply_classifications

    members = [feedback("a", member_id="M1"), feedback("b", member_id="M2")]
    result = ClassificationResult("M2", ("Time constraints",), 70.0, "busy")
    updated = apply_classifications(members, [result], now=datetime(2025, 1, 1))
    assert updated[0] is members[0]
    assert updated[1].ai_tags == ("Time constraints",)
    assert updated[1].ai_analysis_date == "2025-01-01T00:00:00"
    assert apply_classifications(members, []) == members
