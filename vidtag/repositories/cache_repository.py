from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from vidtag.repositories.database import Database


def utc_now() -> datetime:
    return datetime.now(UTC)


class CacheRepository:
    """JSON values by key, each stamped with the time it was written."""

    def __init__(self, db: Database, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._db = db
        self._clock = clock

    def get_fresh(self, key: str, *, max_age_seconds: int) -> object | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT value_json, updated_at
                FROM cache_entries
                WHERE cache_key = ?
                """,
                (key,),
            ).fetchone()

        if row is None:
            return None
        updated_at = _parse_timestamp(row["updated_at"])
        if updated_at is None:
            return None
        if self._clock() - updated_at > timedelta(seconds=max(0, max_age_seconds)):
            return None
        try:
            return json.loads(str(row["value_json"]))
        except json.JSONDecodeError:
            return None

    def put(self, key: str, value: object) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO cache_entries (cache_key, value_json, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(cache_key) DO UPDATE SET
                    value_json = excluded.value_json,
                    updated_at = excluded.updated_at
                """,
                (key, json.dumps(value, ensure_ascii=True), self._clock().isoformat()),
            )


def _parse_timestamp(raw_value: object) -> datetime | None:
    if not isinstance(raw_value, str):
        return None
    try:
        parsed = datetime.fromisoformat(raw_value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
