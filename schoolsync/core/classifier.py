"""
SchoolSync — Classifier Adapter.

Wraps the LLM call that reads a school email and returns which child it is
about, a category, an urgency level, a summary and any events or actions
the parent must know about.

The LLM is treated as untrusted: its JSON is validated and coerced into a
strict tagged result (attributed / unattributed / failed) so the
attribution resolver never touches raw, untyped data. `classify_email`
never raises.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from schoolsync.core.llm import complete
from schoolsync.data.models import ActionItem, CategoryType, SchoolEvent, UrgencyLevel

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Validated analysis contract
# ---------------------------------------------------------------------------


class ExtractedEvent(BaseModel):
    """An event the email announces.

    JSON example:
    {"title": "Science Museum Trip", "date": "2026-03-12", "time": "09:00", "location": "Science Museum"}
    """
    title: str
    date: str = ""
    time: str = ""
    location: str = ""

    @field_validator("date", "time", "location", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> str:
        return "" if v is None else str(v).strip()


class ExtractedAction(BaseModel):
    """Something the parent has to do.

    JSON example:
    {"title": "Pay £15 via ParentPay", "deadline": "2026-03-05"}
    """
    title: str
    deadline: str = ""

    @field_validator("deadline", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> str:
        return "" if v is None else str(v).strip()


def _coerce_items(items: Any) -> list[dict]:
    """Keep only dict entries with a non-empty title."""
    if not isinstance(items, list):
        return []
    return [
        item for item in items
        if isinstance(item, dict) and str(item.get("title") or "").strip()
    ]


class EmailAnalysis(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    child_name: str | None = Field(default=None, alias="childName")
    category: CategoryType = CategoryType.INFO_ONLY
    urgency: UrgencyLevel = UrgencyLevel.MEDIUM
    summary: str = ""
    events: list[ExtractedEvent] = []
    actions: list[ExtractedAction] = []

    @field_validator("child_name", mode="before")
    @classmethod
    def blank_name_is_none(cls, v: Any) -> str | None:
        if not isinstance(v, str):
            return None
        v = v.strip()
        if not v or v.lower() in ("null", "none", "unknown"):
            return None
        return v

    @field_validator("category", mode="before")
    @classmethod
    def coerce_category(cls, v: Any) -> CategoryType:
        for member in CategoryType:
            if isinstance(v, str) and v.strip().lower() == member.value.lower():
                return member
        return CategoryType.INFO_ONLY

    @field_validator("urgency", mode="before")
    @classmethod
    def coerce_urgency(cls, v: Any) -> UrgencyLevel:
        for member in UrgencyLevel:
            if isinstance(v, str) and v.strip().lower() == member.value.lower():
                return member
        return UrgencyLevel.MEDIUM

    @field_validator("summary", mode="before")
    @classmethod
    def coerce_summary(cls, v: Any) -> str:
        return "" if v is None else str(v).strip()

    @field_validator("events", "actions", mode="before")
    @classmethod
    def drop_malformed(cls, v: Any) -> list[dict]:
        return _coerce_items(v)

    def to_events(self, child_id: int | None) -> list[SchoolEvent]:
        return [
            SchoolEvent(
                id=None,
                title=ev.title.strip(),
                date=ev.date,
                time=ev.time,
                location=ev.location,
                child_id=child_id,
                category=self.category,
            )
            for ev in self.events
        ]

    def to_actions(self, child_id: int | None) -> list[ActionItem]:
        return [
            ActionItem(
                id=None,
                title=act.title.strip(),
                deadline=act.deadline,
                child_id=child_id,
                urgency=self.urgency,
            )
            for act in self.actions
        ]


# ---------------------------------------------------------------------------
# Tagged result
# ---------------------------------------------------------------------------


class ClassifierOutcome(str, Enum):
    ATTRIBUTED = "attributed"        # childName is one of the candidates
    UNATTRIBUTED = "unattributed"    # null or out-of-set childName
    FAILED = "failed"                # exception, timeout or unparseable reply


@dataclass(frozen=True)
class ClassifierResult:
    outcome: ClassifierOutcome
    analysis: EmailAnalysis | None = None
    child_name: str | None = None    # candidate spelling, set only when ATTRIBUTED
    error: str = ""

    @classmethod
    def failed(cls, error: str) -> ClassifierResult:
        return cls(outcome=ClassifierOutcome.FAILED, error=error)


# (email_text, candidate_names, preferred_name) -> result
Classifier = Callable[[str, list[str], str | None], Awaitable[ClassifierResult]]


def resolve_candidate(name: str | None, candidates: list[str]) -> str | None:
    """Case-insensitive exact lookup of `name` in `candidates`."""
    if not name:
        return None
    wanted = name.strip().lower()
    for candidate in candidates:
        if candidate.strip().lower() == wanted:
            return candidate
    return None


# ---------------------------------------------------------------------------
# Prompt + parsing
# ---------------------------------------------------------------------------

_SYSTEM_PROMPT = """\
You are an assistant for a parent's school dashboard.
You read one school email and return a single JSON object, nothing else.
Today's date is {today}."""

_USER_TEMPLATE = """\
Known children (choose ONLY from this list): {candidates}
{preferred}
Task:
1. Identify which child this email relates to. "childName" must be exactly one
   of the known children, or null if unsure.
2. Categorize the email as one of: {categories}.
3. Write a one or two sentence summary for a busy parent.
4. Determine urgency: one of {urgencies}.
5. Extract specific events (title, ISO date YYYY-MM-DD, time HH:MM, location).
6. Extract specific actions the parent must take (title, ISO deadline YYYY-MM-DD).
Do NOT invent dates or times that are not in the email; use "" instead.

Return JSON with this shape:
{{"childName": "string or null", "category": "string", "summary": "string",
  "urgency": "string",
  "events": [{{"title": "", "date": "", "time": "", "location": ""}}],
  "actions": [{{"title": "", "deadline": ""}}]}}

Email:
\"\"\"
{email}
\"\"\"
"""

_MAX_EMAIL_CHARS = 12000


def _build_prompt(text: str, candidates: list[str], preferred_name: str | None) -> str:
    preferred = ""
    if preferred_name:
        preferred = (
            f"The sender is configured for {preferred_name}; "
            "prefer that child unless the email clearly says otherwise.\n"
        )
    return _USER_TEMPLATE.format(
        candidates=", ".join(candidates),
        preferred=preferred,
        categories=", ".join(c.value for c in CategoryType),
        urgencies=", ".join(u.value for u in UrgencyLevel),
        email=text[:_MAX_EMAIL_CHARS],
    )


def _parse_json(raw: str) -> dict | None:
    """Parse the model's reply, tolerating code fences and stray prose."""
    raw = (raw or "").strip()
    if raw.startswith("```"):
        parts = raw.split("```", 2)
        raw = parts[1] if len(parts) > 1 else raw
        if raw.lower().startswith("json"):
            raw = raw[4:]
        raw = raw.strip()

    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        start = raw.find("{")
        end = raw.rfind("}")
        if start == -1 or end <= start:
            return None
        try:
            data = json.loads(raw[start:end + 1])
        except json.JSONDecodeError:
            return None

    return data if isinstance(data, dict) else None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def classify_email(
    text: str,
    candidate_names: list[str],
    preferred_name: str | None = None,
) -> ClassifierResult:
    """Analyze one email and attribute it to one of `candidate_names`.

    Never raises: any provider error, empty reply or invalid payload is
    returned as a FAILED result.
    """
    if not text.strip():
        return ClassifierResult.failed("empty email text")

    prompt = _build_prompt(text, candidate_names, preferred_name)
    try:
        raw = await complete(
            system=_SYSTEM_PROMPT.format(today=date.today().isoformat()),
            user_message=prompt,
            max_tokens=1024,
            json_mode=True,
        )
    except Exception as exc:
        logger.warning("Classifier call failed: %s", exc)
        return ClassifierResult.failed(f"llm error: {type(exc).__name__}")

    data = _parse_json(raw)
    if data is None:
        logger.warning("Classifier returned unparseable reply: %.200s", raw)
        return ClassifierResult.failed("unparseable reply")

    try:
        analysis = EmailAnalysis.model_validate(data)
    except ValidationError as exc:
        logger.warning("Classifier reply failed validation: %s", exc)
        return ClassifierResult.failed("invalid reply")

    name = resolve_candidate(analysis.child_name, candidate_names)
    if name is None:
        if analysis.child_name:
            logger.info(
                "Classifier named %r, which is not a candidate (%s)",
                analysis.child_name, ", ".join(candidate_names),
            )
        return ClassifierResult(outcome=ClassifierOutcome.UNATTRIBUTED, analysis=analysis)

    return ClassifierResult(
        outcome=ClassifierOutcome.ATTRIBUTED, analysis=analysis, child_name=name,
    )


_DRAFT_FALLBACK = "Could not generate a draft reply right now."


async def generate_draft_reply(subject: str, sender: str, summary: str | None) -> str:
    """Draft a short, polite reply from the parent to a school email."""
    try:
        reply = await complete(
            system=(
                "You are an assistant for a busy parent. Draft a polite, professional "
                "and concise email reply. If it is about a payment, confirm it will be "
                "handled. If it is about an event, acknowledge receipt. Otherwise write "
                "a generic polite acknowledgement. Keep it under 50 words, no "
                "placeholders, and sign off as 'Parent'."
            ),
            user_message=(
                f"Incoming email subject: {subject}\n"
                f"Sender: {sender}\n"
                f"Summary: {summary or 'General school update'}"
            ),
            max_tokens=200,
        )
    except Exception as exc:
        logger.warning("Draft reply generation failed: %s", exc)
        return _DRAFT_FALLBACK
    return reply.strip() or _DRAFT_FALLBACK


_ASK_FALLBACK = "Sorry, I couldn't answer that right now."


async def ask_dashboard(
    question: str, events: list[SchoolEvent], actions: list[ActionItem],
) -> str:
    """Answer a parent's question using only upcoming events and open actions."""
    context = json.dumps(
        {
            "upcoming_events": [
                {"title": e.title, "date": e.date, "time": e.time, "location": e.location}
                for e in events
            ],
            "outstanding_actions": [
                {"title": a.title, "deadline": a.deadline, "urgency": a.urgency.value}
                for a in actions if not a.is_completed
            ],
        },
        indent=2,
        ensure_ascii=False,
    )
    try:
        answer = await complete(
            system=(
                "You are a helpful assistant for a parent's school dashboard. Answer "
                "strictly from the context data. If the answer is not in the data, "
                "say so politely. Be conversational and concise."
            ),
            user_message=f"Context data:\n{context}\n\nQuestion: {question}",
            max_tokens=400,
        )
    except Exception as exc:
        logger.warning("Dashboard question failed: %s", exc)
        return _ASK_FALLBACK
    return answer.strip() or _ASK_FALLBACK
