"""Deduplication ledger helpers (core domain).

Records are never expired on write; freshness is decided when they are read.
Two concurrent checks for the same (url, user) can both pass the freshness
check before either write lands. That costs one extra evaluation and nothing
else depends on exclusivity, so the race is accepted.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional, Tuple

from core.models import (
    STATUS_MEANINGFUL,
    STATUS_NOT_MEANINGFUL,
    AnalyzedOpportunityRecord,
    DeepVerdict,
)
from core.ports import LedgerPort

LOGGER = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_fresh(record: AnalyzedOpportunityRecord, now: datetime, window: timedelta) -> bool:
    """A record suppresses re-analysis while it is younger than the window."""

    return now - record.analyzed_at < window


def status_for(verdict: DeepVerdict) -> str:
    return STATUS_MEANINGFUL if verdict.is_go else STATUS_NOT_MEANINGFUL


class DedupLedger:
    """Window-aware facade over the ledger storage port."""

    def __init__(
        self,
        store: LedgerPort,
        window_days: int = 30,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._window = timedelta(days=window_days)
        self._clock = clock

    def lookup(self, url: str, user_id: str) -> Optional[AnalyzedOpportunityRecord]:
        return self._store.lookup(url, user_id)

    def is_recent(self, url: str, user_id: str) -> bool:
        record = self.lookup(url, user_id)
        if record is None:
            return False
        if is_fresh(record, self._clock(), self._window):
            LOGGER.info(
                "Skipping duplicate URL (analyzed at %s): %s",
                record.analyzed_at.isoformat(),
                url,
            )
            return True
        return False

    def partition(self, urls: Iterable[str], user_id: str) -> Tuple[List[str], List[str]]:
        """Split urls into (to_analyze, recently_analyzed), keeping order."""

        fresh: List[str] = []
        skipped: List[str] = []
        for url in urls:
            if self.is_recent(url, user_id):
                skipped.append(url)
            else:
                fresh.append(url)
        return fresh, skipped

    def record(self, verdict: DeepVerdict, user_id: str, website_id: str) -> None:
        self._store.store(
            url=verdict.url,
            user_id=user_id,
            website_id=website_id,
            status=status_for(verdict),
            score=verdict.score,
            analyzed_at=self._clock(),
        )
