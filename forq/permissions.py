"""Permission ledger gating tool side effects.

The ledger is append-only: granting or revoking adds a record and the
effective state of a ``(tool, type, scope)`` key is the state of its latest
record. A check passes when any of these keys is currently granted:

  1. the exact scope,
  2. for ``file_system`` only, any recorded scope that prefixes the
     requested one,
  3. the global grant (``scope=None``).

A revoked key is skipped, so revoking a narrow scope does not hide a broader
grant that is still in force. Requests that need a human answer
are parked in a pending map keyed by a unique id until the prompt collaborator
resolves them. Every pending entry is removed on answer, timeout or
cancellation, and anything other than an explicit grant counts as a denial.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable

from pydantic import BaseModel, Field, ValidationError

from forq.exceptions import PermissionStoreError
from forq.logging import get_logger

log = get_logger(__name__)


class PermissionType(str, Enum):
    """Kinds of side effects a tool may need."""

    FILESYSTEM = "file_system"
    SHELL = "shell_command"
    NETWORK = "network_access"
    EMBEDDING = "embedding"

    @property
    def description(self) -> str:
        return _PERMISSION_DESCRIPTIONS[self]


_PERMISSION_DESCRIPTIONS = {
    PermissionType.FILESYSTEM: "read and modify files",
    PermissionType.SHELL: "execute shell commands",
    PermissionType.NETWORK: "access network resources",
    PermissionType.EMBEDDING: "create embeddings for semantic search",
}


def _now_ms() -> int:
    return int(time.time() * 1000)


class Permission(BaseModel):
    """One ledger record. The owning tool name is the ledger key."""

    type: PermissionType
    scope: str | None = None
    granted: bool
    timestamp: int = Field(default_factory=_now_ms)


class PermissionStore(BaseModel):
    """Persisted shape: ``{"tools": {name: [Permission, ...]}}``."""

    tools: dict[str, list[Permission]] = Field(default_factory=dict)


@dataclass(frozen=True)
class PermissionRequest:
    """What the prompt collaborator is asked to decide."""

    request_id: str
    tool_name: str
    type: PermissionType
    scope: str | None = None
    reason: str | None = None


@dataclass
class PendingPermissionRequest:
    request: PermissionRequest
    future: asyncio.Future[bool]
    created_at: float = field(default_factory=time.monotonic)

    @property
    def request_id(self) -> str:
        return self.request.request_id


# Returns the decision directly, or None when it will call
# PermissionLedger.resolve() itself later.
PermissionPrompt = Callable[[PermissionRequest], Awaitable[bool | None]]

_UNSET = object()


class PermissionLedger:
    """Append-only permission history plus the pending request map."""

    def __init__(
        self,
        prompt: PermissionPrompt | None = None,
        request_timeout: float | None = None,
    ):
        self.prompt = prompt
        self.request_timeout = request_timeout
        self._records: dict[str, list[Permission]] = {}
        self._pending: dict[str, PendingPermissionRequest] = {}

    # ----- read side -----

    def _latest(self, tool_name: str, perm_type: PermissionType) -> dict[str | None, bool]:
        """Map every recorded scope of this tool/type to its latest state."""
        state: dict[str | None, bool] = {}
        for record in self._records.get(tool_name, []):
            if record.type == perm_type:
                state[record.scope] = record.granted
        return state

    def has_permission(
        self,
        tool_name: str,
        perm_type: PermissionType,
        scope: str | None = None,
    ) -> bool:
        """Return whether the tool may act on ``scope``. No side effects."""
        state = self._latest(tool_name, perm_type)
        if scope is not None:
            if state.get(scope, False):
                return True
            if perm_type == PermissionType.FILESYSTEM and any(
                granted and key is not None and scope.startswith(key)
                for key, granted in state.items()
            ):
                return True
        return state.get(None, False)

    def records(self, tool_name: str | None = None) -> dict[str, list[Permission]]:
        """Snapshot of the ledger history."""
        if tool_name is not None:
            return {tool_name: list(self._records.get(tool_name, []))}
        return {name: list(records) for name, records in self._records.items()}

    def pending_requests(self) -> list[PermissionRequest]:
        return [pending.request for pending in self._pending.values()]

    # ----- write side -----

    def _append(self, tool_name: str, record: Permission) -> None:
        self._records.setdefault(tool_name, []).append(record)

    def grant(
        self,
        tool_name: str,
        perm_type: PermissionType,
        scope: str | None = None,
    ) -> None:
        self._append(tool_name, Permission(type=perm_type, scope=scope, granted=True))
        log.info("Permission granted", tool=tool_name, type=perm_type.value, scope=scope)

    def revoke(
        self,
        tool_name: str,
        perm_type: PermissionType,
        scope: str | None = None,
    ) -> None:
        """Revoke one scope, or every scope of the type when ``scope`` is None."""
        if scope is None:
            for granted_scope, granted in self._latest(tool_name, perm_type).items():
                if granted and granted_scope is not None:
                    self._append(
                        tool_name,
                        Permission(type=perm_type, scope=granted_scope, granted=False),
                    )
        self._append(tool_name, Permission(type=perm_type, scope=scope, granted=False))
        log.info("Permission revoked", tool=tool_name, type=perm_type.value, scope=scope)

    # ----- request / resolve protocol -----

    async def request_and_wait(
        self,
        tool_name: str,
        perm_type: PermissionType,
        scope: str | None = None,
        reason: str | None = None,
        timeout: float | None | object = _UNSET,
    ) -> bool:
        """Return True once the tool may proceed, False on any kind of denial."""
        if self.has_permission(tool_name, perm_type, scope):
            return True

        wait_timeout = self.request_timeout if timeout is _UNSET else timeout
        request = PermissionRequest(
            request_id=f"{tool_name}:{perm_type.value}:{scope or '*'}-{uuid.uuid4().hex}",
            tool_name=tool_name,
            type=perm_type,
            scope=scope,
            reason=reason,
        )
        pending = PendingPermissionRequest(
            request=request,
            future=asyncio.get_running_loop().create_future(),
        )
        self._pending[request.request_id] = pending
        log.debug("Permission requested", request_id=request.request_id, tool=tool_name)

        prompt_task = asyncio.create_task(self._run_prompt(request))
        try:
            if wait_timeout is None:
                return await pending.future
            return await asyncio.wait_for(asyncio.shield(pending.future), timeout=wait_timeout)
        except asyncio.TimeoutError:
            log.warning(
                "Permission request timed out",
                request_id=request.request_id,
                timeout=wait_timeout,
            )
            return False
        finally:
            self._pending.pop(request.request_id, None)
            if not pending.future.done():
                pending.future.cancel()
            if not prompt_task.done():
                prompt_task.cancel()

    async def _run_prompt(self, request: PermissionRequest) -> None:
        if self.prompt is None:
            log.warning("No permission prompt configured, denying", tool=request.tool_name)
            self.resolve(request.request_id, False)
            return
        try:
            decision = await self.prompt(request)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(
                "Permission prompt failed, denying",
                request_id=request.request_id,
                error=str(e),
            )
            self.resolve(request.request_id, False)
            return
        if decision is not None:
            self.resolve(request.request_id, bool(decision))

    def resolve(self, request_id: str, granted: bool) -> bool:
        """Answer a pending request. Unknown ids are ignored."""
        pending = self._pending.pop(request_id, None)
        if pending is None:
            log.debug("Ignoring resolution for unknown permission request", request_id=request_id)
            return False

        request = pending.request
        if granted:
            self.grant(request.tool_name, request.type, request.scope)
        else:
            log.info("Permission denied", tool=request.tool_name, scope=request.scope)
        if not pending.future.done():
            pending.future.set_result(granted)
        return True

    def cancel(self, request_id: str) -> bool:
        """Abandon a pending request; its waiter sees a denial."""
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return False
        if not pending.future.done():
            pending.future.set_result(False)
        log.debug("Permission request cancelled", request_id=request_id)
        return True

    def cancel_all(self) -> int:
        count = 0
        for request_id in list(self._pending):
            if self.cancel(request_id):
                count += 1
        return count

    # ----- persistence -----

    def checkpoint(self) -> dict[str, int]:
        """Record counts per tool; pass to ``to_store`` to export only later records."""
        return {name: len(records) for name, records in self._records.items()}

    def to_store(self, since: dict[str, int] | None = None) -> PermissionStore:
        since = since or {}
        tools = {
            name: list(records[since.get(name, 0):])
            for name, records in self._records.items()
        }
        return PermissionStore(tools={name: records for name, records in tools.items() if records})

    def merge_store(self, store: PermissionStore) -> None:
        """Append persisted records after the existing history."""
        for tool_name, records in store.tools.items():
            for record in records:
                self._append(tool_name, record)

    def load_file(self, path: Path | str) -> bool:
        """Merge a persisted ledger. Returns False when the file is missing."""
        file_path = Path(path).expanduser()
        if not file_path.exists():
            return False
        try:
            raw = json.loads(file_path.read_text(encoding="utf-8") or "{}")
            store = PermissionStore.model_validate(raw)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise PermissionStoreError(f"Failed to load permissions from {file_path}: {e}") from e
        self.merge_store(store)
        log.debug("Loaded permissions", path=str(file_path), tools=len(store.tools))
        return True

    def save_file(self, path: Path | str, since: dict[str, int] | None = None) -> None:
        file_path = Path(path).expanduser()
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_text(
                self.to_store(since).model_dump_json(indent=2) + "\n",
                encoding="utf-8",
            )
        except OSError as e:
            raise PermissionStoreError(f"Failed to save permissions to {file_path}: {e}") from e
        log.debug("Saved permissions", path=str(file_path))
