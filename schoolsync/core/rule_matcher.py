"""
SchoolSync — Rule Matcher.

Deterministic sender matching: decides which children an email *could*
belong to, based purely on the rules each child profile carries. Cheap,
pure, and always tried before the LLM.
"""

from __future__ import annotations

import re

from schoolsync.data.models import Child

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_DOMAIN_RE = re.compile(r"^@?[a-z0-9-]+(\.[a-z0-9-]+)*\.[a-z]{2,}$")


def normalize_rule(rule: str) -> str:
    """Trim and lowercase a rule (or a sender)."""
    return (rule or "").strip().lower()


def is_valid_rule(rule: str) -> bool:
    """True for a full address, a bare domain or an @-prefixed domain."""
    rule = normalize_rule(rule)
    if not rule:
        return False
    return bool(_EMAIL_RE.match(rule) or _DOMAIN_RE.match(rule))


def rule_matches(sender: str, rule: str) -> bool:
    """Check one rule against one sender.

    Any of the three forms matches; a rule never has to declare its kind:
    - the sender contains the rule ("Office <office@x.org>" vs "office@x.org")
    - an @-domain rule is a suffix of the sender
    - the sender ends with "@" + a bare-domain rule
    """
    sender = normalize_rule(sender)
    rule = normalize_rule(rule)
    if not sender or not rule:
        return False
    if rule in sender:
        return True
    if rule.startswith("@") and sender.endswith(rule):
        return True
    return sender.endswith("@" + rule)


def match_children(sender: str, children: list[Child]) -> list[Child]:
    """Return every child whose rules match `sender`, in input order.

    Siblings at the same school legitimately share a domain, so more
    than one match is normal.
    """
    if not normalize_rule(sender):
        return []
    return [
        child for child in children
        if any(rule_matches(sender, rule) for rule in child.match_rules)
    ]


def collect_query_terms(children: list[Child]) -> list[str]:
    """Union of all children's rules, first-seen order, no duplicates."""
    terms: list[str] = []
    for child in children:
        for rule in child.match_rules:
            norm = normalize_rule(rule)
            if norm and norm not in terms:
                terms.append(norm)
    return terms
