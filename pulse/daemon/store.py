"""Vault-backed work item store.

Each work item is a markdown note with YAML front matter:

    <vault>/users/<user_id>/<kind>s/<item_id>.md

Items are scoped to their owning user; nothing is shared across users.
"""

import asyncio
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiofiles
import frontmatter
import ulid
import yaml
from loguru import logger

from .error_handling import MalformedBundleError, StoreError
from .models import CANDIDATE_KINDS, WorkItem, format_timestamp, parse_timestamp


SAFE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")

DEFAULT_STATUS = {
    "action": "open",
    "decision": "unresolved",
    "blocker": "active",
    "session": "active",
}

EDITABLE_FIELDS = ("title", "status", "priority", "project", "due_at")


def check_name(value: str, what: str) -> str:
    value = str(value)
    if not SAFE_NAME.match(value) or ".." in value:
        raise StoreError(f"invalid {what}: {value!r}")
    return value


def _check_kind(kind: str) -> str:
    if kind not in CANDIDATE_KINDS:
        raise StoreError(f"unknown item kind: {kind!r}")
    return kind


def _check_due_at(due_at: Any) -> Optional[str]:
    if due_at in (None, ""):
        return None
    try:
        return format_timestamp(parse_timestamp(due_at))
    except ValueError as e:
        raise StoreError(f"invalid due_at: {due_at!r}") from e


class WorkItemStore:
    """
    Reads and writes a user's actions, decisions, blockers and sessions.

    Writes are serialized with a lock; reads are lock-free since every
    write replaces a whole file.
    """

    def __init__(self, vault_path: Path):
        self.vault_path = Path(vault_path)
        self._write_lock = asyncio.Lock()

    def user_dir(self, user_id: str) -> Path:
        return self.vault_path / "users" / check_name(user_id, "user id")

    def _kind_dir(self, user_id: str, kind: str) -> Path:
        return self.user_dir(user_id) / f"{_check_kind(kind)}s"

    def _item_path(self, user_id: str, kind: str, item_id: str) -> Path:
        return self._kind_dir(user_id, kind) / f"{check_name(item_id, 'item id')}.md"

    async def _read(self, path: Path) -> Tuple[WorkItem, frontmatter.Post]:
        async with aiofiles.open(path, 'r') as f:
            text = await f.read()
        try:
            post = frontmatter.loads(text)
        except yaml.YAMLError as e:
            raise StoreError(f"unreadable front matter in {path.name}: {e}") from e
        item = WorkItem.from_dict(dict(post.metadata))
        return item, post

    async def _write(self, path: Path, post: frontmatter.Post) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".md.tmp")
        async with aiofiles.open(tmp_path, 'w') as f:
            await f.write(frontmatter.dumps(post) + "\n")
        tmp_path.replace(path)

    async def list_items(self, user_id: str, kind: str) -> List[WorkItem]:
        """List every item of a kind, ordered by id."""
        kind_dir = self._kind_dir(user_id, kind)
        if not kind_dir.exists():
            return []

        items = []
        for path in sorted(kind_dir.glob("*.md")):
            try:
                item, _ = await self._read(path)
            except (MalformedBundleError, StoreError, ValueError) as e:
                logger.warning(f"Skipping unreadable {kind} note {path.name}: {e}")
                continue
            items.append(item)
        return items

    async def get_item(self, user_id: str, kind: str, item_id: str) -> Optional[WorkItem]:
        path = self._item_path(user_id, kind, item_id)
        if not path.exists():
            return None
        item, _ = await self._read(path)
        return item

    async def find_item(self, user_id: str, item_id: str) -> Optional[Tuple[str, WorkItem]]:
        """Locate an item by id across all kinds."""
        for kind in CANDIDATE_KINDS:
            item = await self.get_item(user_id, kind, item_id)
            if item is not None:
                return kind, item
        return None

    async def create_item(
        self,
        user_id: str,
        kind: str,
        title: str,
        status: Optional[str] = None,
        priority: Optional[Any] = None,
        project: Optional[str] = None,
        due_at: Optional[str] = None,
        body: str = "",
        item_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> WorkItem:
        """Create a new work item note and return it."""
        if not title or not str(title).strip():
            raise StoreError("title is required")
        due_at = _check_due_at(due_at)
        now = now or datetime.now(timezone.utc)
        item_id = check_name(item_id or str(ulid.ULID()), "item id")
        path = self._item_path(user_id, kind, item_id)

        post = frontmatter.Post(
            body,
            id=item_id,
            kind=kind,
            title=str(title).strip(),
            status=status or DEFAULT_STATUS[kind],
            priority=priority,
            project=project,
            due_at=due_at,
            created_at=format_timestamp(now),
            updated_at=format_timestamp(now),
        )

        async with self._write_lock:
            if path.exists():
                raise StoreError(f"{kind} {item_id} already exists")
            await self._write(path, post)

        logger.info(f"Created {kind} {item_id} for {user_id}")
        return WorkItem.from_dict(dict(post.metadata))

    async def update_item(
        self,
        user_id: str,
        kind: str,
        item_id: str,
        changes: Optional[Dict[str, Any]] = None,
        touch: bool = False,
        now: Optional[datetime] = None
    ) -> Optional[WorkItem]:
        """
        Apply field changes to an item.

        Returns the updated item, or None if it does not exist. When no
        field actually changes and touch is False the file is left alone.
        """
        changes = changes or {}
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise StoreError(f"cannot edit fields: {sorted(unknown)}")
        if "due_at" in changes:
            changes = {**changes, "due_at": _check_due_at(changes["due_at"])}

        path = self._item_path(user_id, kind, item_id)
        async with self._write_lock:
            if not path.exists():
                return None
            item, post = await self._read(path)

            modified = {k: v for k, v in changes.items() if post.metadata.get(k) != v}
            if not modified and not touch:
                return item

            post.metadata.update(modified)
            post.metadata["updated_at"] = format_timestamp(now or datetime.now(timezone.utc))
            await self._write(path, post)

        logger.debug(f"Updated {kind} {item_id} for {user_id}: {sorted(modified)}")
        return WorkItem.from_dict(dict(post.metadata))
