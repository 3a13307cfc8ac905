"""
AI tagging of member feedback.

Maps a member's comments and notes onto a fixed vocabulary of churn-concern
tags. Two backends:
  1. Gemini via google-generativeai (``GEMINI_API_KEY``)
  2. Demo mode: keyword-triggered canned answers, no network (``AI_DEMO_MODE``)

``MemberClassifier`` never raises to its caller: request errors, timeouts and
unreadable answers all become a ``Miscellaneous`` fallback result.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from membership import config
from membership.records import MembershipRecord

logger = logging.getLogger(__name__)

AI_TAGS: Tuple[str, ...] = (
    "Lack of visible results",
    "Workout plateau or repetition fatigue",
    "Mismatch of class style",
    "Instructor connection issues",
    "Studio environment concerns",
    "Inconvenient class timings",
    "Location accessibility challenges",
    "Difficulty booking classes",
    "Cost concerns",
    "Perceived value gap",
    "Life changes",
    "Time constraints",
    "Health or injury issues",
    "Seasonal drop in motivation",
    "Preference for alternative fitness options",
    "Unresponsive",
    "Needs additional discounts",
    "Miscellaneous",
)

RISK_TAGS = frozenset(
    {
        "Lack of visible results",
        "Workout plateau or repetition fatigue",
        "Cost concerns",
        "Perceived value gap",
        "Time constraints",
        "Health or injury issues",
        "Unresponsive",
    }
)

MAX_TAGS = 3
FALLBACK_TAG = "Miscellaneous"
DEFAULT_CONFIDENCE = 50.0
PARSE_FAILURE_CONFIDENCE = 30.0
DEFAULT_REASONING = "AI analysis completed without detailed reasoning."
NO_CONTENT_REASONING = "No text content available to analyze."


class ClassificationError(RuntimeError):
    """Raised by a backend when no usable answer could be obtained."""


@dataclass(frozen=True)
class ClassificationResult:
    member_id: str
    suggested_tags: Tuple[str, ...]
    confidence: float
    reasoning: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "member_id": self.member_id,
            "suggested_tags": list(self.suggested_tags),
            "confidence": self.confidence,
            "reasoning": self.reasoning,
        }


class ClassificationBackend(Protocol):
    async def classify(self, prompt: str) -> str: ...


# ---------------- Prompt + response handling ----------------
FEEDBACK_START = "Combined Feedback Text:"
FEEDBACK_END = "Available Tags"


def extract_member_text(record: MembershipRecord) -> str:
    texts: List[str] = []
    if record.comments.strip():
        texts.append(f"Member Comment: {record.comments.strip()}")
    if record.notes.strip():
        texts.append(f"Internal Note: {record.notes.strip()}")
    return "\n\n".join(texts).strip()


def build_analysis_prompt(record: MembershipRecord, text: str) -> str:
    tag_lines = "\n".join(f"{i}. {tag}" for i, tag in enumerate(AI_TAGS, start=1))
    return f"""You are a fitness membership analyst. Analyze the following member feedback and assign the most appropriate tags from the predefined list.

Member Information:
- Name: {record.full_name}
- Membership: {record.membership_name}
- Status: {record.status}
- Location: {record.location}

{FEEDBACK_START}
\"\"\"
{text}
\"\"\"

{FEEDBACK_END} (choose 1-{MAX_TAGS} most relevant):
{tag_lines}

Instructions:
- Analyze the sentiment and content of the feedback.
- Select 1-{MAX_TAGS} tags that best describe the member's situation or concerns.
- Provide a confidence level (0-100).
- Give brief reasoning for your choices.

Respond in this exact JSON format:
{{"tags": ["tag1", "tag2"], "confidence": 85, "reasoning": "Brief explanation of why these tags were chosen."}}
"""


def extract_json_object(text: str) -> Dict[str, Any]:
    """Return the first ``{...}`` object in an LLM answer.

    Markdown fences and surrounding prose are ignored. Raises ``ValueError``
    when no JSON object can be decoded.
    """
    text = re.sub(r"```(?:json)?", "", text or "").strip()
    start = text.find("{")
    if start < 0:
        raise ValueError("No JSON object found in the AI response")
    decoder = json.JSONDecoder()
    while start >= 0:
        try:
            obj, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(obj, dict):
            return obj
        start = text.find("{", start + 1)
    raise ValueError("No decodable JSON object in the AI response")


def _clamp_confidence(value: object) -> float:
    try:
        out = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if out != out:  # NaN
        return DEFAULT_CONFIDENCE
    return min(100.0, max(0.0, out))


def validate_tags(tags: Iterable[object]) -> Tuple[str, ...]:
    out: List[str] = []
    for tag in tags:
        if isinstance(tag, str) and tag in AI_TAGS and tag not in out:
            out.append(tag)
    return tuple(out[:MAX_TAGS])


def parse_classification_response(raw: str) -> Tuple[Tuple[str, ...], float, str]:
    """Parse a backend answer into ``(tags, confidence, reasoning)``.

    Tags outside the vocabulary are dropped. An answer with no usable JSON
    yields the ``Miscellaneous`` fallback instead of raising.
    """
    try:
        parsed = extract_json_object(raw)
    except ValueError as exc:
        logger.warning("Unparseable AI response (%s): %.200r", exc, raw)
        return (
            (FALLBACK_TAG,),
            PARSE_FAILURE_CONFIDENCE,
            "Error: Unable to parse the AI response, defaulted to miscellaneous.",
        )
    raw_tags = parsed.get("tags") or []
    if isinstance(raw_tags, str):
        raw_tags = [raw_tags]
    tags = validate_tags(raw_tags if isinstance(raw_tags, list) else [])
    confidence = _clamp_confidence(parsed.get("confidence", DEFAULT_CONFIDENCE))
    reasoning = str(parsed.get("reasoning") or "").strip() or DEFAULT_REASONING
    return tags, confidence, reasoning


# ---------------- Backends ----------------
class GeminiBackend:
    """Gemini text generation, trying the configured model then fallbacks."""

    def __init__(
        self,
        api_key: str,
        *,
        model_name: str = config.GEMINI_MODEL,
        fallback_models: Sequence[str] = tuple(config.GEMINI_FALLBACK_MODELS),
        temperature: float = config.AI_TEMPERATURE,
        max_output_tokens: int = config.AI_MAX_OUTPUT_TOKENS,
    ) -> None:
        if not api_key:
            raise ClassificationError("GEMINI_API_KEY is not configured")
        import google.generativeai as genai

        genai.configure(api_key=api_key)
        self._genai = genai
        self.model_names = [model_name] + [m for m in fallback_models if m != model_name]
        self.generation_config = {"temperature": temperature, "max_output_tokens": max_output_tokens}
        self._models: Dict[str, Any] = {}

    def _model(self, name: str) -> Any:
        if name not in self._models:
            self._models[name] = self._genai.GenerativeModel(name, generation_config=self.generation_config)
        return self._models[name]

    async def classify(self, prompt: str) -> str:
        last_error: Optional[Exception] = None
        for name in self.model_names:
            try:
                response = await self._model(name).generate_content_async(prompt)
                feedback = getattr(response, "prompt_feedback", None)
                block_reason = getattr(feedback, "block_reason", None) if feedback else None
                if block_reason:
                    raise ClassificationError(f"Request was blocked by Gemini. Reason: {block_reason}")
                if not response.candidates:
                    raise ClassificationError("No response candidates from Gemini")
                text = response.text
            except Exception as exc:  # SDK errors are not a single hierarchy
                logger.warning("Gemini model %s failed: %s", name, exc)
                last_error = exc
                continue
            logger.info("Gemini classification via %s (%d chars)", name, len(text))
            return text
        raise ClassificationError(f"All Gemini models failed. Last error: {last_error}")


DEMO_RULES: Tuple[Tuple[Tuple[str, ...], Tuple[str, ...], float, str], ...] = (
    (("injur", "hurt", "pain", "surgery", "doctor"), ("Health or injury issues",), 95.0,
     "Member mentions a health or injury problem affecting attendance."),
    (("unresponsive", "no response", "not responding", "not answering", "did not pick up"), ("Unresponsive",), 90.0,
     "Member has not responded to outreach."),
    (("cost", "price", "expensive", "afford"), ("Cost concerns", "Perceived value gap"), 85.0,
     "Member raises pricing and value-for-money concerns."),
    (("discount",), ("Needs additional discounts",), 80.0,
     "Member is asking for a better offer before renewing."),
    (("moving", "relocat", "pregnan", "new job", "baby"), ("Life changes",), 85.0,
     "Member describes a life change affecting attendance."),
    (("busy", "no time", "workload", "travel"), ("Time constraints",), 80.0,
     "Member reports lack of time to attend."),
    (("timing", "slot", "schedule"), ("Inconvenient class timings",), 75.0,
     "Class times do not fit the member's routine."),
    (("booking", "waitlist", "full class"), ("Difficulty booking classes",), 75.0,
     "Member struggles to get into classes."),
    (("instructor", "trainer", "coach"), ("Instructor connection issues",), 70.0,
     "Feedback centres on the member's relationship with instructors."),
    (("bored", "boring", "repetitive", "plateau"), ("Workout plateau or repetition fatigue",), 75.0,
     "Member feels workouts have become repetitive."),
    (("results", "progress", "not losing"), ("Lack of visible results",), 75.0,
     "Member is not seeing the results they expected."),
    (("too far", "parking", "commute"), ("Location accessibility challenges",), 70.0,
     "Getting to the studio is difficult for the member."),
)


class DemoBackend:
    """Deterministic offline backend keyed on words in the feedback text."""

    def __init__(self) -> None:
        self.calls = 0

    @staticmethod
    def _feedback(prompt: str) -> str:
        match = re.search(
            re.escape(FEEDBACK_START) + r"(.*?)" + re.escape(FEEDBACK_END), prompt, re.DOTALL
        )
        return (match.group(1) if match else prompt).lower()

    async def classify(self, prompt: str) -> str:
        self.calls += 1
        text = self._feedback(prompt)
        answer = {"tags": [FALLBACK_TAG], "confidence": 50, "reasoning": "No specific concern pattern detected."}
        for keywords, tags, confidence, reasoning in DEMO_RULES:
            if any(k in text for k in keywords):
                answer = {"tags": list(tags), "confidence": confidence, "reasoning": reasoning}
                break
        return "Demo analysis result:\n" + json.dumps(answer)


def get_classification_backend() -> ClassificationBackend:
    if config.AI_DEMO_MODE:
        logger.info("AI classification running in demo mode")
        return DemoBackend()
    if not config.GEMINI_API_KEY:
        logger.warning(
            "GEMINI_API_KEY is not set; using the demo backend. AI tags are keyword-based canned answers, "
            "set AI_DEMO_MODE=1 to silence this warning."
        )
        return DemoBackend()
    return GeminiBackend(config.GEMINI_API_KEY)


# ---------------- Classifier ----------------
class MemberClassifier:
    """Rate-limited classification of member feedback.

    Requests are serialised and spaced at least ``rate_limit_delay`` seconds
    apart, measured from the previous request.
    """

    def __init__(
        self,
        backend: ClassificationBackend,
        *,
        rate_limit_delay: float = config.AI_RATE_LIMIT_DELAY,
        timeout: Optional[float] = config.AI_TIMEOUT_SECONDS,
    ) -> None:
        self.backend = backend
        self.rate_limit_delay = rate_limit_delay
        self.timeout = timeout
        self._last_request: Optional[float] = None
        self._lock = asyncio.Lock()

    async def _request(self, prompt: str) -> str:
        async with self._lock:
            if self._last_request is not None:
                wait = self.rate_limit_delay - (time.monotonic() - self._last_request)
                if wait > 0:
                    await asyncio.sleep(wait)
            self._last_request = time.monotonic()
            return await asyncio.wait_for(self.backend.classify(prompt), timeout=self.timeout)

    async def analyze_member(self, record: MembershipRecord) -> ClassificationResult:
        text = extract_member_text(record)
        if not text:
            return ClassificationResult(record.member_id, (), 0.0, NO_CONTENT_REASONING)
        try:
            raw = await self._request(build_analysis_prompt(record, text))
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.warning("AI analysis failed for member %s: %s", record.member_id, message)
            return ClassificationResult(record.member_id, (FALLBACK_TAG,), 0.0, f"Analysis failed: {message}")
        tags, confidence, reasoning = parse_classification_response(raw)
        return ClassificationResult(record.member_id, tags, confidence, reasoning)

    async def analyze_members_batch(self, records: Iterable[MembershipRecord]) -> List[ClassificationResult]:
        """Analyse members that have feedback, one at a time."""
        with_feedback = [r for r in records if r.has_feedback]
        logger.info("AI batch analysis of %d members", len(with_feedback))
        return [await self.analyze_member(r) for r in with_feedback]


def apply_classification(
    record: MembershipRecord, result: ClassificationResult, *, now: Optional[datetime] = None
) -> MembershipRecord:
    return record.with_ai_tags(
        result.suggested_tags,
        result.confidence,
        result.reasoning,
        (now or datetime.now()).isoformat(timespec="seconds"),
    )


def apply_classifications(
    records: Iterable[MembershipRecord],
    results: Iterable[ClassificationResult],
    *,
    now: Optional[datetime] = None,
) -> List[MembershipRecord]:
    """Copy each result onto the record with the same member id, keeping order."""
    by_member = {result.member_id: result for result in results}
    if not by_member:
        return list(records)
    now = now or datetime.now()
    return [
        apply_classification(r, by_member[r.member_id], now=now) if r.member_id in by_member else r
        for r in records
    ]
