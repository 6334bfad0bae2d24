"""Briefing history: remote table when signed in, local JSONL store otherwise.

The remote store is preferred whenever an authenticated session and a remote
configuration are both present. Reads and writes fall back to the local store
when the remote call fails; pin/triage updates always land locally as well so
the local copy stays usable offline.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol

from supabase import AsyncClient, acreate_client

from .config import Settings, auth_state, history_root, remote_config
from .errors import StorageFailure
from .file_lock import locked_path
from .models import (
    AnalysisMode,
    AuthState,
    Briefing,
    HistoryItem,
    OutputLanguage,
    RemoteConfig,
    TriageStatus,
    now_millis,
)

logger = logging.getLogger(__name__)

HISTORY_FILENAME = "history.jsonl"
LEGACY_FILENAME = "brevita_history.json"


def new_history_item(briefing: Briefing) -> HistoryItem:
    timestamp = now_millis()
    return HistoryItem(
        id=f"{timestamp}-{os.urandom(4).hex()}",
        timestamp=timestamp,
        data=briefing,
        pinned=False,
        triage_status=TriageStatus.NEW,
    )


def _newest_first(items: Iterable[HistoryItem]) -> List[HistoryItem]:
    return sorted(items, key=lambda item: item.timestamp, reverse=True)


# --- Local store ------------------------------------------------------------


class LocalHistoryStore:
    """JSONL-backed store; one line per HistoryItem, writes serialized per path."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    @property
    def path(self) -> Path:
        return self.root / HISTORY_FILENAME

    @property
    def legacy_path(self) -> Path:
        return self.root / LEGACY_FILENAME

    def _read_items(self) -> List[HistoryItem]:
        if not self.path.exists():
            return []
        items: List[HistoryItem] = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                items.append(HistoryItem.model_validate(json.loads(line)))
            except ValueError:
                logger.warning("Skipping unreadable history line in %s", self.path)
        return items

    def _write_items(self, items: List[HistoryItem]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".jsonl.tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            for item in items:
                f.write(json.dumps(item.to_record(), ensure_ascii=False))
                f.write("\n")
        tmp_path.replace(self.path)

    def add(self, item: HistoryItem) -> HistoryItem:
        with locked_path(self.path):
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(item.to_record(), ensure_ascii=False))
                f.write("\n")
        return item

    def get_all(self) -> List[HistoryItem]:
        with locked_path(self.path):
            return _newest_first(self._read_items())

    def get(self, item_id: str) -> Optional[HistoryItem]:
        with locked_path(self.path):
            return next((i for i in self._read_items() if i.id == item_id), None)

    def delete(self, item_id: str) -> bool:
        with locked_path(self.path):
            items = self._read_items()
            kept = [item for item in items if item.id != item_id]
            if len(kept) == len(items):
                return False
            self._write_items(kept)
            return True

    def clear(self) -> None:
        with locked_path(self.path):
            self.path.unlink(missing_ok=True)

    def update(self, item_id: str, **changes: Any) -> Optional[HistoryItem]:
        """Apply pinned/triage_status changes; returns None when the id is unknown."""
        unknown = set(changes) - {"pinned", "triage_status"}
        if unknown:
            raise ValueError(f"Immutable history fields: {', '.join(sorted(unknown))}")
        with locked_path(self.path):
            items = self._read_items()
            updated: Optional[HistoryItem] = None
            for idx, item in enumerate(items):
                if item.id == item_id:
                    updated = item.model_copy(update=changes)
                    items[idx] = updated
            if updated is not None:
                self._write_items(items)
            return updated

    def migrate_legacy(self) -> bool:
        """
        Move items from the legacy flat history file into the JSONL store.

        Returns True when a migration happened. A malformed legacy file is
        logged and left in place.
        """
        legacy = self.legacy_path
        with locked_path(self.path):
            if not legacy.exists():
                return False
            logger.info("Migrating legacy history from %s", legacy)
            try:
                raw_items = json.loads(legacy.read_text(encoding="utf-8"))
                items = [HistoryItem.from_legacy(raw) for raw in raw_items]
            except (ValueError, KeyError, TypeError):
                logger.exception("Legacy history migration failed; leaving %s in place", legacy)
                return False

            current = self._read_items()
            existing = {item.id for item in current}
            fresh = [item for item in items if item.id not in existing]
            self._write_items(current + fresh)
            legacy.unlink()
        logger.info("Migrated %d legacy history item(s)", len(fresh))
        return True


# --- Remote store -----------------------------------------------------------


class RemoteBriefingTable(Protocol):
    async def insert(self, item: HistoryItem) -> HistoryItem: ...

    async def fetch_all(self) -> List[HistoryItem]: ...

    async def delete(self, item_id: str) -> None: ...

    async def clear(self) -> None: ...

    async def update(self, item_id: str, changes: Dict[str, Any]) -> None: ...


RemoteFactory = Callable[[RemoteConfig, AuthState], Awaitable[RemoteBriefingTable]]


class SupabaseBriefingTable:
    """Session-scoped access to the remote briefings table (row-level policies apply)."""

    def __init__(self, client: AsyncClient, table: str, auth: AuthState) -> None:
        self.client = client
        self.table = table
        self.auth = auth

    @classmethod
    async def connect(cls, config: RemoteConfig, auth: AuthState) -> "SupabaseBriefingTable":
        client = await acreate_client(config.url, config.anon_key)
        client.postgrest.auth(auth.access_token)
        return cls(client, config.table, auth)

    def _query(self):
        return self.client.table(self.table)

    async def insert(self, item: HistoryItem) -> HistoryItem:
        response = await self._query().insert(item.to_row(self.auth.user_id)).execute()
        rows = response.data or []
        if not rows:
            raise RuntimeError("Remote insert returned no row.")
        return HistoryItem.from_row(rows[0])

    async def fetch_all(self) -> List[HistoryItem]:
        response = await self._query().select("*").order("created_at", desc=True).execute()
        return [HistoryItem.from_row(row) for row in response.data or []]

    async def delete(self, item_id: str) -> None:
        await self._query().delete().eq("id", item_id).execute()

    async def clear(self) -> None:
        # PostgREST refuses unfiltered deletes; row-level policy scopes the rest.
        await self._query().delete().eq("user_id", self.auth.user_id).execute()

    async def update(self, item_id: str, changes: Dict[str, Any]) -> None:
        await self._query().update(changes).eq("id", item_id).execute()


# --- Facade -----------------------------------------------------------------


class HistoryStore:
    """Remote-preferred, local-fallback history of briefings."""

    def __init__(
        self,
        local: LocalHistoryStore,
        *,
        remote_config: Optional[RemoteConfig] = None,
        auth: Optional[AuthState] = None,
        remote_factory: Optional[RemoteFactory] = None,
    ) -> None:
        self.local = local
        self.remote_config = remote_config or RemoteConfig()
        self.auth = auth or AuthState()
        self.remote_factory = remote_factory or SupabaseBriefingTable.connect
        self._initialized = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "HistoryStore":
        return cls(
            LocalHistoryStore(history_root(settings)),
            remote_config=remote_config(settings),
            auth=auth_state(settings),
        )

    @property
    def remote_enabled(self) -> bool:
        return self.auth.is_authenticated and self.remote_config.is_configured

    async def _remote(self) -> RemoteBriefingTable:
        return await self.remote_factory(self.remote_config, self.auth)

    async def _local(self, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except (OSError, ValueError) as exc:
            raise StorageFailure(operation, exc) from exc

    async def init(self) -> bool:
        """Run the one-time legacy migration; True when items were migrated."""
        migrated = await self._local("migration", self.local.migrate_legacy)
        self._initialized = True
        return migrated

    async def _ensure_initialized(self) -> None:
        """Migrate legacy history once, before the first store operation."""
        if self._initialized:
            return
        try:
            await self.init()
        except StorageFailure:
            # Leave the flag unset so the next operation tries again.
            logger.exception("Legacy history migration failed")

    async def save(self, briefing: Briefing) -> HistoryItem:
        await self._ensure_initialized()
        item = new_history_item(briefing)
        if self.remote_enabled:
            try:
                remote = await self._remote()
                return await remote.insert(item)
            except Exception:
                logger.exception("Remote save failed; storing briefing locally")
        return await self._local("save", self.local.add, item)

    async def get_all(self) -> List[HistoryItem]:
        await self._ensure_initialized()
        if self.remote_enabled:
            try:
                remote = await self._remote()
                return await remote.fetch_all()
            except Exception:
                logger.exception("Remote history fetch failed; reading local history")
        return await self._local("fetch", self.local.get_all)

    async def delete(self, item_id: str) -> None:
        await self._ensure_initialized()
        if self.remote_enabled:
            try:
                remote = await self._remote()
                await remote.delete(item_id)
                return
            except Exception:
                logger.exception("Remote delete of %s failed; deleting locally", item_id)
        await self._local("delete", self.local.delete, item_id)

    async def clear(self) -> None:
        await self._ensure_initialized()
        if self.remote_enabled:
            try:
                remote = await self._remote()
                await remote.clear()
                return
            except Exception:
                logger.exception("Remote clear failed; clearing local history")
        await self._local("clear", self.local.clear)

    async def _update(
        self, item_id: str, remote_changes: Dict[str, Any], local_changes: Dict[str, Any]
    ) -> Optional[HistoryItem]:
        await self._ensure_initialized()
        remote_ok = False
        if self.remote_enabled:
            try:
                remote = await self._remote()
                await remote.update(item_id, remote_changes)
                remote_ok = True
            except Exception:
                logger.exception("Remote update of %s failed", item_id)
        try:
            return await asyncio.to_thread(
                lambda: self.local.update(item_id, **local_changes)
            )
        except (OSError, ValueError) as exc:
            if remote_ok:
                logger.warning("Local mirror of update %s failed: %s", item_id, exc)
                return None
            raise StorageFailure("update", exc) from exc

    async def update_pin(self, item_id: str, pinned: bool) -> Optional[HistoryItem]:
        return await self._update(item_id, {"is_pinned": pinned}, {"pinned": pinned})

    async def update_triage_status(
        self, item_id: str, status: TriageStatus | str
    ) -> Optional[HistoryItem]:
        status = TriageStatus(status)
        return await self._update(
            item_id, {"triage_status": status.value}, {"triage_status": status}
        )


# --- Browsing ---------------------------------------------------------------


def filter_history(
    items: Iterable[HistoryItem],
    *,
    query: Optional[str] = None,
    mode: Optional[AnalysisMode] = None,
    language: Optional[OutputLanguage] = None,
    category: Optional[str] = None,
    pinned: Optional[bool] = None,
    triage_status: Optional[TriageStatus] = None,
) -> List[HistoryItem]:
    """Filter stored briefings; pinned items first, then newest-first."""
    needle = (query or "").strip().lower()
    selected: List[HistoryItem] = []
    for item in items:
        data = item.data
        if needle and needle not in (data.meta.title or "").lower() and needle not in (
            data.summary or ""
        ).lower():
            continue
        if mode is not None:
            is_military = data.military_mode.is_included
            if is_military != (mode is AnalysisMode.MILITARY):
                continue
        if language is not None and data.meta.output_language != language.value:
            continue
        if category and data.meta.category != category:
            continue
        if pinned is not None and item.pinned != pinned:
            continue
        if triage_status is not None and item.triage_status != triage_status:
            continue
        selected.append(item)
    return sorted(selected, key=lambda item: (not item.pinned, -item.timestamp))
