"""Assembles a SignalBundle for one user from the vault."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

from loguru import logger

from .algorithms import DEFER_COOLDOWN_HOURS, USER_INTENT_WINDOW_HOURS
from .error_handling import BundleFetchError, RetryExhausted, RetryPolicy
from .events import UserEventLog
from .models import (
    KIND_ACTION, KIND_BLOCKER, KIND_DECISION, KIND_SESSION, SignalBundle,
)
from .store import WorkItemStore


# Events older than this cannot affect the cooldown guard or intent scoring
EVENT_LOOKBACK = timedelta(hours=2 * max(DEFER_COOLDOWN_HOURS, USER_INTENT_WINDOW_HOURS))


class BundleAssembler:
    """
    Fetches work items, user events and dismissals concurrently.

    The six reads are independent, so they run under one gather; a
    transient failure retries the whole snapshot so the bundle is never
    stitched together from different points in time.
    """

    def __init__(
        self,
        store: WorkItemStore,
        event_log: UserEventLog,
        retry_policy: Optional[RetryPolicy] = None
    ):
        self.store = store
        self.event_log = event_log
        self.retry_policy = retry_policy or RetryPolicy()

    async def _snapshot(self, user_id: str, now: datetime) -> SignalBundle:
        actions, decisions, blockers, sessions, events, ignored = await asyncio.gather(
            self.store.list_items(user_id, KIND_ACTION),
            self.store.list_items(user_id, KIND_DECISION),
            self.store.list_items(user_id, KIND_BLOCKER),
            self.store.list_items(user_id, KIND_SESSION),
            self.event_log.read_events(user_id, since=now - EVENT_LOOKBACK),
            self.event_log.ignored_candidates(user_id),
        )
        return SignalBundle(
            now=now,
            actions=tuple(actions),
            decisions=tuple(decisions),
            blockers=tuple(blockers),
            sessions=tuple(sessions),
            user_events=tuple(events),
            ignored_candidates=tuple(ignored),
        )

    async def assemble(self, user_id: str, now: Optional[datetime] = None) -> SignalBundle:
        """
        Build the user's bundle.

        Raises:
            BundleFetchError: if the store stays unreadable after retries
        """
        now = now or datetime.now(timezone.utc)
        try:
            bundle = await self.retry_policy.execute(self._snapshot, user_id, now)
        except RetryExhausted as e:
            raise BundleFetchError(user_id, str(e.last_error), attempts=e.attempts) from e

        logger.debug(
            f"Assembled bundle for {user_id}: {len(bundle.actions)} actions, "
            f"{len(bundle.decisions)} decisions, {len(bundle.blockers)} blockers, "
            f"{len(bundle.sessions)} sessions, {len(bundle.user_events)} events"
        )
        return bundle
