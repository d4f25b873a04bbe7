"""Append-only user event log and dismissal counters.

Write path:
1. Validate the event type
2. Append a newline-delimited JSON record to the user's log
3. Flush + fsync for durability

Logs live next to the user's work items:

    <vault>/users/<user_id>/events.log      DEFER_NOW | OVERRIDE_NOW | EXECUTED_ACTION
    <vault>/users/<user_id>/dismissals.log  one record per dismissed candidate key
"""

import asyncio
import json
import os
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import aiofiles
import ulid
from loguru import logger

from .error_handling import StoreError
from .models import (
    USER_EVENT_TYPES, IgnoredCandidate, UserEvent, format_timestamp, parse_timestamp,
)
from .store import check_name


class UserEventLog:
    """Per-user append-only history consumed by the deferred guard and ignore decay."""

    def __init__(self, vault_path: Path):
        self.vault_path = Path(vault_path)
        self._append_lock = asyncio.Lock()

    def _user_dir(self, user_id: str) -> Path:
        return self.vault_path / "users" / check_name(user_id, "user id")

    def events_path(self, user_id: str) -> Path:
        return self._user_dir(user_id) / "events.log"

    def dismissals_path(self, user_id: str) -> Path:
        return self._user_dir(user_id) / "dismissals.log"

    async def _append(self, path: Path, record: Dict[str, Any]) -> None:
        async with self._append_lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(path, 'a') as f:
                await f.write(json.dumps(record, sort_keys=True) + "\n")
                await f.flush()
                os.fsync(f.fileno())

    async def _read_records(self, path: Path) -> List[Dict[str, Any]]:
        if not path.exists():
            return []
        records = []
        async with aiofiles.open(path, 'r') as f:
            async for line in f:
                if not line.strip():
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError as e:
                    logger.error(f"Invalid record in {path.name}: {e}")
        return records

    async def log_user_event(
        self,
        user_id: str,
        type: str,
        payload: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None
    ) -> UserEvent:
        """Append a user event and return it."""
        if type not in USER_EVENT_TYPES:
            raise StoreError(f"unknown user event type: {type!r}")
        if payload is not None and not isinstance(payload, dict):
            raise StoreError("event payload must be an object")

        event = UserEvent(
            type=type,
            timestamp=timestamp or datetime.now(timezone.utc),
            payload=payload or {},
        )
        await self._append(self.events_path(user_id), {
            "id": str(ulid.ULID()),
            **event.to_dict(),
        })
        logger.info(f"Logged {type} for {user_id}")
        return event

    async def read_events(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        types: Optional[Iterable[str]] = None
    ) -> List[UserEvent]:
        """
        Return events in chronological order.

        Records with equal timestamps keep their log order, which the
        deferred guard relies on to pick the latest defer-type event.
        """
        wanted = set(types) if types else None
        events = []
        for record in await self._read_records(self.events_path(user_id)):
            if record.get("type") not in USER_EVENT_TYPES:
                logger.warning(f"Skipping unknown event type {record.get('type')!r}")
                continue
            if wanted and record["type"] not in wanted:
                continue
            try:
                event = UserEvent(
                    type=record["type"],
                    timestamp=parse_timestamp(record.get("timestamp")),
                    payload=record.get("payload") or {},
                )
            except ValueError as e:
                logger.error(f"Skipping event with bad timestamp: {e}")
                continue
            if since and event.timestamp < since:
                continue
            events.append(event)

        events.sort(key=lambda e: e.timestamp)
        return events

    async def record_dismissal(
        self,
        user_id: str,
        key: str,
        timestamp: Optional[datetime] = None
    ) -> int:
        """Count one more dismissal of a candidate key; returns the new total."""
        if not isinstance(key, str) or ":" not in key:
            raise StoreError(f"invalid candidate key: {key!r}")
        await self._append(self.dismissals_path(user_id), {
            "key": key,
            "timestamp": format_timestamp(timestamp or datetime.now(timezone.utc)),
        })
        counts = await self.dismissal_counts(user_id)
        logger.info(f"Dismissed {key} for {user_id} ({counts[key]} total)")
        return counts[key]

    async def dismissal_counts(self, user_id: str) -> Counter:
        records = await self._read_records(self.dismissals_path(user_id))
        return Counter(r["key"] for r in records if r.get("key"))

    async def ignored_candidates(self, user_id: str) -> List[IgnoredCandidate]:
        """Dismissal counters in the shape the signal bundle expects."""
        counts = await self.dismissal_counts(user_id)
        return [IgnoredCandidate(key=key, count=count) for key, count in sorted(counts.items())]
