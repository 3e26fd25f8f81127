import asyncio
import json

import pytest

from forq.exceptions import PermissionStoreError
from forq.permissions import PermissionLedger, PermissionRequest, PermissionType

FS = PermissionType.FILESYSTEM
SHELL = PermissionType.SHELL


def test_filesystem_grant_covers_descendants():
    ledger = PermissionLedger()
    ledger.grant("readFile", FS, "/project")

    assert ledger.has_permission("readFile", FS, "/project")
    assert ledger.has_permission("readFile", FS, "/project/src/main.py")
    assert not ledger.has_permission("readFile", FS, "/other/file.txt")


def test_filesystem_prefix_is_plain_string_prefix():
    ledger = PermissionLedger()
    ledger.grant("readFile", FS, "/project")

    assert ledger.has_permission("readFile", FS, "/project-other/file.txt")


def test_revoked_narrow_scope_falls_back_to_ancestor_grant():
    ledger = PermissionLedger()
    ledger.grant("readFile", FS, "/a")
    ledger.revoke("readFile", FS, "/a/b")

    assert ledger.has_permission("readFile", FS, "/a/b/c")
    assert ledger.has_permission("readFile", FS, "/a/b")


def test_revoked_exact_scope_falls_back_to_global_grant():
    ledger = PermissionLedger()
    ledger.grant("bash", SHELL)
    ledger.grant("bash", SHELL, "ls")
    ledger.revoke("bash", SHELL, "ls")

    assert ledger.has_permission("bash", SHELL, "ls")


def test_revoked_exact_scope_without_broader_grant_is_denied():
    ledger = PermissionLedger()
    ledger.grant("editFile", FS, "/project/src")
    ledger.revoke("editFile", FS, "/project/src")

    assert not ledger.has_permission("editFile", FS, "/project/src/app.py")
    assert not ledger.has_permission("editFile", FS, "/project/src")


def test_non_filesystem_scopes_match_exactly():
    ledger = PermissionLedger()
    ledger.grant("fetch", PermissionType.NETWORK, "https://example.com")

    assert ledger.has_permission("fetch", PermissionType.NETWORK, "https://example.com")
    assert not ledger.has_permission("fetch", PermissionType.NETWORK, "https://example.com/api")


def test_global_grant_applies_to_every_scope():
    ledger = PermissionLedger()
    ledger.grant("bash", SHELL)

    assert ledger.has_permission("bash", SHELL)
    assert ledger.has_permission("bash", SHELL, "ls -la")


def test_grants_are_per_tool_and_type():
    ledger = PermissionLedger()
    ledger.grant("readFile", FS, "/project")

    assert not ledger.has_permission("editFile", FS, "/project/a.txt")
    assert not ledger.has_permission("readFile", SHELL, "/project/a.txt")


def test_latest_record_decides():
    ledger = PermissionLedger()
    ledger.grant("bash", SHELL)
    ledger.revoke("bash", SHELL)
    assert not ledger.has_permission("bash", SHELL)

    ledger.grant("bash", SHELL)
    assert ledger.has_permission("bash", SHELL)
    assert len(ledger.records("bash")["bash"]) == 3


def test_revoke_without_scope_revokes_every_scope():
    ledger = PermissionLedger()
    ledger.grant("readFile", FS, "/a")
    ledger.grant("readFile", FS, "/b")
    ledger.grant("readFile", FS)

    ledger.revoke("readFile", FS)

    assert not ledger.has_permission("readFile", FS, "/a/x")
    assert not ledger.has_permission("readFile", FS, "/b")
    assert not ledger.has_permission("readFile", FS, "/c")


@pytest.mark.asyncio
async def test_request_returns_immediately_when_already_granted():
    calls: list[PermissionRequest] = []

    async def prompt(request):
        calls.append(request)
        return False

    ledger = PermissionLedger(prompt=prompt)
    ledger.grant("readFile", FS, "/project")

    assert await ledger.request_and_wait("readFile", FS, "/project/a.txt")
    assert calls == []


@pytest.mark.asyncio
async def test_request_grant_is_recorded():
    async def prompt(request):
        return True

    ledger = PermissionLedger(prompt=prompt)

    assert await ledger.request_and_wait("createFile", FS, "/project/new.txt")
    assert ledger.has_permission("createFile", FS, "/project/new.txt")
    assert ledger.pending_requests() == []


@pytest.mark.asyncio
async def test_request_denial_is_not_recorded():
    async def prompt(request):
        return False

    ledger = PermissionLedger(prompt=prompt)

    assert not await ledger.request_and_wait("deleteFile", FS, "/project/a.txt")
    assert ledger.records() == {}


@pytest.mark.asyncio
async def test_request_without_prompt_fails_closed():
    ledger = PermissionLedger()
    assert not await ledger.request_and_wait("bash", SHELL)
    assert ledger.pending_requests() == []


@pytest.mark.asyncio
async def test_prompt_exception_fails_closed():
    async def prompt(request):
        raise RuntimeError("terminal went away")

    ledger = PermissionLedger(prompt=prompt)
    assert not await ledger.request_and_wait("bash", SHELL)
    assert ledger.pending_requests() == []


@pytest.mark.asyncio
async def test_request_times_out_as_denial():
    async def prompt(request):
        return None

    ledger = PermissionLedger(prompt=prompt, request_timeout=0.05)
    assert not await ledger.request_and_wait("bash", SHELL)
    assert ledger.pending_requests() == []


@pytest.mark.asyncio
async def test_deferred_resolution_through_resolve():
    seen: list[PermissionRequest] = []

    async def prompt(request):
        seen.append(request)
        return None

    ledger = PermissionLedger(prompt=prompt)
    waiter = asyncio.create_task(ledger.request_and_wait("editFile", FS, "/p/a.py", reason="Edit a.py"))
    while not seen:
        await asyncio.sleep(0)

    request = seen[0]
    assert request.request_id.startswith("editFile:file_system:/p/a.py-")
    assert request.reason == "Edit a.py"
    assert ledger.pending_requests() == [request]

    assert ledger.resolve(request.request_id, True)
    assert await waiter
    assert ledger.has_permission("editFile", FS, "/p/a.py")


@pytest.mark.asyncio
async def test_concurrent_requests_get_distinct_ids_and_resolve_independently():
    seen: list[PermissionRequest] = []

    async def prompt(request):
        seen.append(request)
        return None

    ledger = PermissionLedger(prompt=prompt)
    first = asyncio.create_task(ledger.request_and_wait("readFile", FS, "/p/a"))
    second = asyncio.create_task(ledger.request_and_wait("readFile", FS, "/p/a"))
    while len(seen) < 2:
        await asyncio.sleep(0)

    assert seen[0].request_id != seen[1].request_id
    ledger.resolve(seen[1].request_id, False)
    assert not await second
    assert not first.done()

    ledger.resolve(seen[0].request_id, True)
    assert await first


def test_resolve_unknown_id_is_ignored():
    ledger = PermissionLedger()
    assert not ledger.resolve("missing", True)
    assert ledger.records() == {}


@pytest.mark.asyncio
async def test_cancel_all_denies_waiters():
    async def prompt(request):
        return None

    ledger = PermissionLedger(prompt=prompt)
    waiter = asyncio.create_task(ledger.request_and_wait("bash", SHELL))
    while not ledger.pending_requests():
        await asyncio.sleep(0)

    assert ledger.cancel_all() == 1
    assert not await waiter
    assert ledger.pending_requests() == []


@pytest.mark.asyncio
async def test_cancelling_the_waiter_removes_pending_entry():
    async def prompt(request):
        return None

    ledger = PermissionLedger(prompt=prompt)
    waiter = asyncio.create_task(ledger.request_and_wait("bash", SHELL))
    while not ledger.pending_requests():
        await asyncio.sleep(0)

    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter
    assert ledger.pending_requests() == []


def test_save_and_load_round_trip(tmp_path):
    path = tmp_path / ".forq" / "permissions.json"
    ledger = PermissionLedger()
    ledger.grant("readFile", FS, "/project")
    ledger.revoke("bash", SHELL)
    ledger.save_file(path)

    data = json.loads(path.read_text())
    assert set(data["tools"]) == {"readFile", "bash"}
    assert data["tools"]["readFile"][0]["type"] == "file_system"

    restored = PermissionLedger()
    assert restored.load_file(path)
    assert restored.has_permission("readFile", FS, "/project/x")
    assert not restored.has_permission("bash", SHELL)


def test_save_since_checkpoint_skips_earlier_records(tmp_path):
    ledger = PermissionLedger()
    ledger.grant("readFile", FS, "/global")
    checkpoint = ledger.checkpoint()
    ledger.grant("readFile", FS, "/project")
    ledger.grant("bash", SHELL)

    path = tmp_path / "permissions.json"
    ledger.save_file(path, since=checkpoint)

    data = json.loads(path.read_text())
    assert [record["scope"] for record in data["tools"]["readFile"]] == ["/project"]
    assert len(data["tools"]["bash"]) == 1


def test_load_missing_file_returns_false(tmp_path):
    assert not PermissionLedger().load_file(tmp_path / "absent.json")


def test_load_invalid_file_raises(tmp_path):
    path = tmp_path / "permissions.json"
    path.write_text('{"tools": {"bash": [{"type": "teleport", "granted": true}]}}')

    with pytest.raises(PermissionStoreError):
        PermissionLedger().load_file(path)
