from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

import pytest

from _testkit import wait_until
from mcp_cmd.core.errors import NotRunningError, OperationFailedError, ProcessGoneError
from mcp_cmd.runtime import supervisor
from mcp_cmd.runtime.registry import LocalLaunchSpec, RegistryEntry, RegistryStore
from mcp_cmd.runtime.supervisor import probe_pid, with_live_entry

pytestmark = pytest.mark.skipif(os.name == "nt", reason="POSIX process semantics only")


def _entry(name: str, pid: int) -> RegistryEntry:
    return RegistryEntry(name=name, launch=LocalLaunchSpec(command="x"), pid=pid, socket_path=f"/tmp/{name}.sock")


def _dead_pid() -> int:
    p = subprocess.Popen([sys.executable, "-c", "pass"])  # noqa: S603
    p.wait()
    return p.pid


def test_missing_entry_is_not_running(tmp_path: Path) -> None:
    store = RegistryStore(tmp_path / "reg.json")
    with pytest.raises(NotRunningError) as ei:
        with_live_entry(store, "nope", lambda e: e)
    assert ei.value.message == 'Server "nope" is not running'


def test_live_entry_runs_operation(tmp_path: Path) -> None:
    store = RegistryStore(tmp_path / "reg.json")
    store.put(_entry("me", os.getpid()))
    assert with_live_entry(store, "me", lambda e: e.pid) == os.getpid()


def test_dead_process_is_pruned_and_operation_skipped(tmp_path: Path) -> None:
    """
    进程已退出：条目被自动移除，operation 不执行，调用方收到 ProcessGone。
    """

    store = RegistryStore(tmp_path / "reg.json")
    store.put(_entry("gone", _dead_pid()))
    store.put(_entry("other", os.getpid()))
    called = []

    with pytest.raises(ProcessGoneError) as ei:
        with_live_entry(store, "gone", lambda e: called.append(e))

    assert ei.value.message == 'Server "gone" process is no longer running'
    assert called == []
    assert sorted(store.load()) == ["other"]


def test_permission_error_leaves_registry_untouched(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    store = RegistryStore(tmp_path / "reg.json")
    store.put(_entry("locked", 4242))

    def _kill(pid: int, sig: int) -> None:
        raise PermissionError(1, "Operation not permitted")

    monkeypatch.setattr(supervisor.os, "kill", _kill)
    with pytest.raises(OperationFailedError) as ei:
        with_live_entry(store, "locked", lambda e: e)

    assert ei.value.message.startswith('Operation failed for "locked":')
    assert "locked" in store.load()


@pytest.mark.skipif(not Path("/proc/self/stat").exists(), reason="requires /proc")
def test_unreaped_child_counts_as_gone() -> None:
    p = subprocess.Popen([sys.executable, "-c", "pass"])  # noqa: S603
    try:
        assert wait_until(lambda: supervisor._is_zombie(p.pid), timeout_sec=10)
        assert probe_pid(p.pid) is False
    finally:
        p.wait()
