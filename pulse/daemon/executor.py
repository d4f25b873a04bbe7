"""Applies a user-confirmed action as a single state mutation."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from loguru import logger

from .error_handling import PulseError
from .models import KIND_ACTION, KIND_BLOCKER, KIND_DECISION, KIND_SESSION
from .store import WorkItemStore


@dataclass
class CommandResult:
    """Outcome of execute(); failures are values, not exceptions."""
    ok: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            return {"ok": True}
        return {"ok": False, "error": self.error}


Operation = Callable[[str, str, Optional[datetime]], Awaitable[CommandResult]]


class CommandExecutor:
    """
    Stateless, idempotent command application.

    Every op maps to one mutation on the owning user's items. Re-applying
    a status that is already set succeeds without touching the item.
    """

    def __init__(self, store: WorkItemStore):
        self.store = store
        self.operations: Dict[str, Operation] = {
            "complete_action": self._complete_action,
            "resume_action": self._resume_action,
            "resolve_blocker": self._resolve_blocker,
            "resume_session": self._resume_session,
            "open_decision": self._open_decision,
            "open": self._open,
        }

    async def execute(
        self,
        user_id: str,
        command: Dict[str, Any],
        now: Optional[datetime] = None
    ) -> CommandResult:
        """Run {op, ref_id} for user_id."""
        if not isinstance(command, dict):
            return CommandResult(ok=False, error="command must be an object")

        op = command.get("op")
        operation = self.operations.get(op) if isinstance(op, str) else None
        if operation is None:
            logger.warning(f"Rejected unknown op {op!r} for {user_id}")
            return CommandResult(ok=False, error=f"unknown op: {op}")

        ref_id = command.get("ref_id")
        if ref_id in (None, ""):
            return CommandResult(ok=False, error=f"{op} requires ref_id")

        try:
            result = await operation(user_id, str(ref_id), now)
        except PulseError as e:
            logger.error(f"{op} {ref_id} failed for {user_id}: {e}")
            return CommandResult(ok=False, error=str(e))

        if result.ok:
            logger.info(f"Executed {op} {ref_id} for {user_id}")
        return result

    async def _set_status(
        self, user_id: str, kind: str, ref_id: str, status: str,
        now: Optional[datetime], touch: bool = False
    ) -> CommandResult:
        item = await self.store.update_item(
            user_id, kind, ref_id, {"status": status}, touch=touch, now=now
        )
        if item is None:
            return CommandResult(ok=False, error=f"{kind} not found: {ref_id}")
        return CommandResult(ok=True)

    async def _touch(
        self, user_id: str, kind: str, ref_id: str, now: Optional[datetime]
    ) -> CommandResult:
        item = await self.store.update_item(user_id, kind, ref_id, touch=True, now=now)
        if item is None:
            return CommandResult(ok=False, error=f"{kind} not found: {ref_id}")
        return CommandResult(ok=True)

    async def _complete_action(self, user_id, ref_id, now) -> CommandResult:
        return await self._set_status(user_id, KIND_ACTION, ref_id, "done", now)

    async def _resume_action(self, user_id, ref_id, now) -> CommandResult:
        return await self._set_status(user_id, KIND_ACTION, ref_id, "in_progress", now, touch=True)

    async def _resolve_blocker(self, user_id, ref_id, now) -> CommandResult:
        return await self._set_status(user_id, KIND_BLOCKER, ref_id, "resolved", now)

    async def _resume_session(self, user_id, ref_id, now) -> CommandResult:
        return await self._touch(user_id, KIND_SESSION, ref_id, now)

    async def _open_decision(self, user_id, ref_id, now) -> CommandResult:
        return await self._touch(user_id, KIND_DECISION, ref_id, now)

    async def _open(self, user_id, ref_id, now) -> CommandResult:
        found = await self.store.find_item(user_id, ref_id)
        if found is None:
            return CommandResult(ok=False, error=f"item not found: {ref_id}")
        kind, _ = found
        return await self._touch(user_id, kind, ref_id, now)
