"""Supabase (PostgREST) record store for onboarding reminders.

Reads client onboarding state from the ``clients`` table and keeps the
reminder history in ``onboarding_reminders`` (one row per client and
threshold, unique on ``(client_id, threshold_id)``).
"""

from datetime import datetime, timezone
from typing import Iterable, Optional

import httpx
from dateutil.parser import isoparse

from config import SUPABASE_URL, SUPABASE_KEY
from logger import logger
from utils import sanitize_for_log
from . import config
from .errors import StoreUnavailableError
from .evaluator import OnboardingRecord

CLIENT_COLUMNS = "id,email,first_name,created_at,credit_report_completed,documents_signed"


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a PostgREST timestamp, treating naive values as UTC."""
    if not value:
        return None
    parsed = isoparse(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SupabaseRecordStore:
    """Onboarding records and reminder history behind the Supabase REST API."""

    def __init__(
        self,
        url: Optional[str] = None,
        key: Optional[str] = None,
        threshold_ids: Iterable[str] = (),
        timeout: float = config.SUPABASE_TIMEOUT_SECONDS,
    ):
        self.url = (url or SUPABASE_URL or "").rstrip("/")
        self.key = key or SUPABASE_KEY
        self.threshold_ids = frozenset(threshold_ids)
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.url and self.key)

    def _headers(self, prefer: str = "return=representation") -> dict:
        """Get headers for Supabase API calls."""
        return {
            "apikey": self.key,
            "Authorization": f"Bearer {self.key}",
            "Content-Type": "application/json",
            "Prefer": prefer,
        }

    async def fetch_active_records(self) -> list[OnboardingRecord]:
        """Fetch clients that have not finished onboarding, with reminder history.

        Raises:
            StoreUnavailableError: Supabase not configured, unreachable, or
                returned an error status
        """
        if not self.configured:
            raise StoreUnavailableError("Supabase not configured (SUPABASE_URL / SUPABASE_KEY)")

        params = {
            "select": f"{CLIENT_COLUMNS},{config.SUPABASE_REMINDERS_TABLE}(threshold_id)",
            "or": "(credit_report_completed.is.false,documents_signed.is.false)",
            "order": "created_at.asc",
        }
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(
                    f"{self.url}/rest/v1/{config.SUPABASE_CLIENTS_TABLE}",
                    headers=self._headers(),
                    params=params,
                    timeout=self.timeout
                )
                response.raise_for_status()
                rows = response.json()
        except httpx.HTTPError as e:
            raise StoreUnavailableError(f"Supabase fetch failed: {sanitize_for_log(str(e))}") from e
        except ValueError as e:
            raise StoreUnavailableError(f"Supabase returned invalid JSON: {e}") from e

        if not isinstance(rows, list):
            raise StoreUnavailableError(f"Supabase returned {type(rows).__name__} instead of rows: {sanitize_for_log(str(rows))}")

        records = []
        for row in rows:
            try:
                records.append(self._row_to_record(row))
            except (KeyError, ValueError, OverflowError) as e:
                # Unparseable timestamp or missing id: surface as a malformed
                # record later instead of dropping the whole batch
                logger.warning(f"Supabase row {row.get('id', '?')} could not be parsed: {e}")
                records.append(OnboardingRecord(
                    id=str(row.get("id", "?")),
                    created_at=None,
                    credit_report_completed=bool(row.get("credit_report_completed")),
                    documents_signed=bool(row.get("documents_signed")),
                    destination=row.get("email"),
                ))

        if self.threshold_ids:
            records = [r for r in records if not self.threshold_ids <= r.reminders_sent]
        return records

    async def mark_reminder_sent(self, record_id: str, threshold_id: str) -> bool:
        """Insert a reminder history row; an existing row counts as success.

        Returns:
            True if Supabase acknowledged the write
        """
        if not self.configured:
            logger.error(f"Supabase not configured, reminder {threshold_id} for {record_id} not persisted")
            return False

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    f"{self.url}/rest/v1/{config.SUPABASE_REMINDERS_TABLE}",
                    headers=self._headers("resolution=ignore-duplicates,return=minimal"),
                    params={"on_conflict": "client_id,threshold_id"},
                    json={
                        "client_id": record_id,
                        "threshold_id": threshold_id,
                        "sent_at": datetime.now(timezone.utc).isoformat(),
                    },
                    timeout=self.timeout
                )
                response.raise_for_status()
                logger.debug(f"Marked reminder {threshold_id} sent for client {record_id}")
                return True
        except httpx.HTTPError as e:
            logger.error(f"Failed to mark reminder {threshold_id} for client {record_id}: {sanitize_for_log(str(e))}")
            return False

    @staticmethod
    def _row_to_record(row: dict) -> OnboardingRecord:
        history = row.get(config.SUPABASE_REMINDERS_TABLE) or []
        return OnboardingRecord(
            id=str(row["id"]),
            created_at=_parse_timestamp(row.get("created_at")),
            credit_report_completed=bool(row.get("credit_report_completed")),
            documents_signed=bool(row.get("documents_signed")),
            destination=row.get("email"),
            reminders_sent=frozenset(h["threshold_id"] for h in history if h.get("threshold_id")),
            name=row.get("first_name"),
        )
