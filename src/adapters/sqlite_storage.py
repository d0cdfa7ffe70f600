"""SQLite storage adapter.

Implements the core StoragePort and LedgerPort using a simple SQLite database.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from core.models import (
    AnalyzedOpportunityRecord,
    ChangeAlert,
    ChangeDiff,
    FinalAnalysis,
    Website,
)


def _to_utc_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _record_from_row(row: sqlite3.Row) -> AnalyzedOpportunityRecord:
    return AnalyzedOpportunityRecord(
        url=row["url"],
        user_id=row["user_id"],
        website_id=row["website_id"],
        status=row["status"],
        score=row["score"],
        analyzed_at=datetime.fromisoformat(row["analyzed_at"]),
    )


class SQLiteStorage:
    """Thin SQLite wrapper that satisfies the StoragePort and LedgerPort contracts."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - scrape_results: one row per scrape, with its AI analysis once known
        - analyzed_opportunities: ledger of deep-analyzed links per user
        - change_alerts: one entry per detected change
        """

        with self._connect() as conn:
            # scrape_results keeps the raw scrape plus the FinalAnalysis JSON.
            # analysis_json stays NULL until the pipeline writes it, exactly once.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS scrape_results (
                    id TEXT PRIMARY KEY,
                    website_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    url TEXT NOT NULL,
                    scraped_at TIMESTAMP NOT NULL,
                    change_status TEXT,
                    title TEXT,
                    description TEXT,
                    markdown TEXT,
                    diff_text TEXT,
                    diff_json TEXT,
                    analysis_json TEXT
                )
                """
            )
            # analyzed_opportunities is append-only; freshness is decided on read.
            # Fields:
            # - url: the opportunity link that was evaluated
            # - user_id / website_id: owner and origin of the evaluation
            # - status: "meaningful" (GO) or "not_meaningful" (NO GO)
            # - score: Go/No-Go score 0-100
            # - analyzed_at: UTC timestamp of the evaluation
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS analyzed_opportunities (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    url TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    website_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    score REAL NOT NULL,
                    analyzed_at TIMESTAMP NOT NULL
                )
                """
            )
            # change_alerts is the history of detected changes, one row per
            # changed scrape with a short diff preview.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS change_alerts (
                    id TEXT PRIMARY KEY,
                    scrape_result_id TEXT NOT NULL,
                    website_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    change_type TEXT NOT NULL,
                    summary TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_opportunities_url_user
                ON analyzed_opportunities (url, user_id)
                """
            )

    def store_scrape_result(
        self,
        website: Website,
        scraped_at: datetime,
        markdown: str,
        change_status: str,
        diff: Optional[ChangeDiff],
        title: Optional[str] = None,
        description: Optional[str] = None,
    ) -> str:
        """Persist a scrape and return its id."""

        scrape_result_id = uuid.uuid4().hex
        diff_json = None
        if diff is not None and diff.json is not None:
            diff_json = json.dumps(diff.json, default=str)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO scrape_results (
                    id, website_id, user_id, url, scraped_at, change_status,
                    title, description, markdown, diff_text, diff_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    scrape_result_id,
                    website.id,
                    website.user_id,
                    website.url,
                    _to_utc_iso(scraped_at),
                    change_status,
                    title,
                    description,
                    markdown,
                    diff.text if diff is not None else None,
                    diff_json,
                ),
            )
        return scrape_result_id

    def store_change_alert(
        self,
        website: Website,
        scrape_result_id: str,
        summary: str,
        created_at: datetime,
        change_type: str = "content_changed",
    ) -> str:
        """Record a detected change and return the alert id."""

        alert_id = uuid.uuid4().hex
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO change_alerts (
                    id, scrape_result_id, website_id, user_id,
                    change_type, summary, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    alert_id,
                    scrape_result_id,
                    website.id,
                    website.user_id,
                    change_type,
                    summary,
                    _to_utc_iso(created_at),
                ),
            )
        return alert_id

    def list_change_alerts(self, days: int) -> List[ChangeAlert]:
        """Return change alerts newer than ``days``, newest first."""

        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM change_alerts
                WHERE created_at >= ?
                ORDER BY created_at DESC
                """,
                (cutoff.isoformat(),),
            ).fetchall()
        return [
            ChangeAlert(
                id=row["id"],
                scrape_result_id=row["scrape_result_id"],
                website_id=row["website_id"],
                user_id=row["user_id"],
                change_type=row["change_type"],
                summary=row["summary"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    def save_final_analysis(self, scrape_result_id: str, analysis: FinalAnalysis) -> bool:
        """Attach the analysis; returns False when one was already recorded."""

        payload = asdict(analysis)
        payload["analyzed_at"] = _to_utc_iso(analysis.analyzed_at)
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE scrape_results SET analysis_json = ?
                WHERE id = ? AND analysis_json IS NULL
                """,
                (json.dumps(payload), scrape_result_id),
            )
            return cur.rowcount == 1

    def get_final_analysis(self, scrape_result_id: str) -> Optional[FinalAnalysis]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT analysis_json FROM scrape_results WHERE id = ?",
                (scrape_result_id,),
            ).fetchone()
        if not row or not row["analysis_json"]:
            return None
        payload = json.loads(row["analysis_json"])
        payload["analyzed_at"] = datetime.fromisoformat(payload["analyzed_at"])
        return FinalAnalysis(**payload)

    def lookup(self, url: str, user_id: str) -> Optional[AnalyzedOpportunityRecord]:
        """Return the most recent ledger record for (url, user_id), if any."""

        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM analyzed_opportunities
                WHERE url = ? AND user_id = ?
                ORDER BY analyzed_at DESC
                LIMIT 1
                """,
                (url, user_id),
            ).fetchone()
        return _record_from_row(row) if row else None

    def store(
        self,
        url: str,
        user_id: str,
        website_id: str,
        status: str,
        score: float,
        analyzed_at: datetime,
    ) -> None:
        """Append a ledger record."""

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO analyzed_opportunities (
                    url, user_id, website_id, status, score, analyzed_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (url, user_id, website_id, status, score, _to_utc_iso(analyzed_at)),
            )

    def list_recent(self, days: int) -> List[AnalyzedOpportunityRecord]:
        """Return ledger records newer than ``days``, newest first."""

        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM analyzed_opportunities
                WHERE analyzed_at >= ?
                ORDER BY analyzed_at DESC
                """,
                (cutoff.isoformat(),),
            ).fetchall()
        return [_record_from_row(row) for row in rows]

    def cleanup(self, ttl_days: int) -> int:
        """Delete ledger records older than ``ttl_days`` and return the count."""

        cutoff = datetime.now(timezone.utc) - timedelta(days=ttl_days)
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM analyzed_opportunities WHERE analyzed_at < ?",
                (cutoff.isoformat(),),
            )
            return cur.rowcount
