"""
SchoolSync — Dedup Guard.

Makes repeated sync passes over overlapping date ranges idempotent: a
message is a duplicate iff an email with the same subject AND the same
received timestamp is already stored. No fuzzy matching: near-identical
emails sent a second apart are distinct.
"""

from __future__ import annotations

import logging
from datetime import datetime

from schoolsync.ports.store_port import EmailRepository

logger = logging.getLogger(__name__)


class DedupGuard:
    def __init__(self, emails: EmailRepository) -> None:
        self._emails = emails

    def exists(self, subject: str, received_at: datetime) -> bool:
        duplicate = self._emails.email_exists(subject, received_at)
        if duplicate:
            logger.debug("Duplicate skipped: '%s' @ %s", subject, received_at.isoformat())
        return duplicate
