"""
SchoolSync — Attribution Resolver.

Decides which child an email belongs to by reconciling two signals:
the cheap, deterministic sender rules and the expensive, probabilistic
LLM classification.

Precedence:
1. Exactly one rule match → that child is *preferred*; the classifier may
   only choose that name (source `rule-exact`).
2. Several rule matches → the classifier chooses among them
   (source `rule-ambiguous-then-ai`).
3. No rule match → the classifier chooses among every child (`ai-only`).
4. If the classifier does not name a candidate (null, unknown name, error
   or timeout): preferred child, else first rule match, else the terminal
   default policy (`fallback-default`).

The only I/O is the classifier call.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum

from schoolsync.core.classifier import (
    Classifier,
    ClassifierOutcome,
    ClassifierResult,
    EmailAnalysis,
    resolve_candidate,
)
from schoolsync.core.rule_matcher import match_children
from schoolsync.data.models import Child, InboxMessage

logger = logging.getLogger(__name__)

POLICY_FIRST_CHILD = "first_child"
POLICY_UNASSIGNED = "unassigned"


class UnattributableError(Exception):
    """Raised when a message cannot be attributed because no child exists."""


class AttributionSource(str, Enum):
    RULE_EXACT = "rule-exact"
    RULE_AMBIGUOUS_THEN_AI = "rule-ambiguous-then-ai"
    AI_ONLY = "ai-only"
    FALLBACK_DEFAULT = "fallback-default"


@dataclass(frozen=True)
class AttributionDecision:
    """Provenance-tagged outcome of resolving one message."""

    matched_child_id: int | None
    candidate_child_names: list[str] = field(default_factory=list)
    source: AttributionSource = AttributionSource.AI_ONLY
    preferred_child_name: str | None = None
    used_fallback: bool = False
    classifier_outcome: ClassifierOutcome = ClassifierOutcome.FAILED


@dataclass(frozen=True)
class Attribution:
    decision: AttributionDecision
    analysis: EmailAnalysis | None


def _message_text(message: InboxMessage) -> str:
    body = message.text_for_analysis()
    return f"Subject: {message.subject}\nFrom: {message.sender}\n\n{body}"


async def _call_classifier(
    classify: Classifier,
    text: str,
    candidates: list[str],
    preferred: str | None,
    timeout: float | None,
) -> ClassifierResult:
    """Run the classifier, turning timeouts and exceptions into FAILED."""
    try:
        return await asyncio.wait_for(classify(text, candidates, preferred), timeout)
    except asyncio.TimeoutError:
        logger.warning("Classifier timed out after %ss", timeout)
        return ClassifierResult.failed("timeout")
    except Exception as exc:
        logger.warning("Classifier raised %s: %s", type(exc).__name__, exc)
        return ClassifierResult.failed(f"{type(exc).__name__}")


async def resolve_attribution(
    message: InboxMessage,
    children: list[Child],
    classify: Classifier,
    timeout: float | None = None,
    unattributed_policy: str = POLICY_FIRST_CHILD,
) -> Attribution:
    """Attribute `message` to exactly one child (or explicitly to none).

    Raises UnattributableError if `children` is empty; the caller skips the
    message and reports it instead of defaulting.
    """
    if not children:
        raise UnattributableError(
            f"No children configured; cannot attribute '{message.subject}'"
        )

    matches = match_children(message.sender, children)
    preferred: Child | None = None
    if len(matches) == 1:
        preferred = matches[0]
        candidates = [preferred]
        source = AttributionSource.RULE_EXACT
    elif matches:
        candidates = matches
        source = AttributionSource.RULE_AMBIGUOUS_THEN_AI
    else:
        candidates = list(children)
        source = AttributionSource.AI_ONLY

    candidate_names = [c.name for c in candidates]
    result = await _call_classifier(
        classify,
        _message_text(message),
        candidate_names,
        preferred.name if preferred else None,
        timeout,
    )

    # Never trust the classifier's own tagging: re-check against the candidates.
    resolved_name = None
    if result.outcome == ClassifierOutcome.ATTRIBUTED:
        resolved_name = resolve_candidate(result.child_name, candidate_names)

    used_fallback = False
    if resolved_name is not None:
        chosen: Child | None = next(c for c in candidates if c.name == resolved_name)
    elif preferred is not None:
        chosen = preferred
        used_fallback = True
    elif matches:
        chosen = matches[0]
        used_fallback = True
    else:
        source = AttributionSource.FALLBACK_DEFAULT
        used_fallback = True
        chosen = children[0] if unattributed_policy == POLICY_FIRST_CHILD else None
        logger.warning(
            "No attribution for '%s' from %s; default policy %s → %s",
            message.subject, message.sender, unattributed_policy,
            chosen.name if chosen else "unassigned",
        )

    decision = AttributionDecision(
        matched_child_id=chosen.id if chosen else None,
        candidate_child_names=candidate_names,
        source=source,
        preferred_child_name=preferred.name if preferred else None,
        used_fallback=used_fallback,
        classifier_outcome=result.outcome,
    )
    logger.debug("Attribution for '%s': %s", message.subject, decision)
    return Attribution(decision=decision, analysis=result.analysis)
