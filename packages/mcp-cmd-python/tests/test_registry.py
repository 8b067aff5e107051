from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from mcp_cmd.core.errors import OperationFailedError
from mcp_cmd.runtime.registry import LocalLaunchSpec, RegistryEntry, RegistryStore, RemoteLaunchSpec


def _local_entry(name: str = "files", pid: int = 4242) -> RegistryEntry:
    return RegistryEntry(
        name=name,
        launch=LocalLaunchSpec(command="npx", args=["-y", "server-files", "/data"], cwd="/work", env={"TOKEN": "x"}),
        pid=pid,
        socket_path=f"/tmp/mcp-cmd-{name}.sock",
    )


def test_load_missing_registry_is_empty(tmp_path: Path) -> None:
    store = RegistryStore(tmp_path / ".mcp-cmd.json")
    assert store.load() == {}
    assert not store.path.exists()


def test_put_get_remove_roundtrip(tmp_path: Path) -> None:
    store = RegistryStore(tmp_path / ".mcp-cmd.json")
    entry = _local_entry()
    store.put(entry)

    got = store.get("files")
    assert got == entry
    assert isinstance(got.launch, LocalLaunchSpec)
    assert got.launch.args == ["-y", "server-files", "/data"]

    assert store.remove("files") is True
    assert store.get("files") is None
    assert store.remove("files") is False


def test_registry_file_is_json_keyed_by_name(tmp_path: Path) -> None:
    path = tmp_path / ".mcp-cmd.json"
    store = RegistryStore(path)
    store.put(_local_entry("a", pid=11))
    store.put(RegistryEntry(name="b", launch=RemoteLaunchSpec(url="https://example.test/mcp"), pid=12, socket_path="/tmp/b.sock"))

    obj = json.loads(path.read_text(encoding="utf-8"))
    assert sorted(obj) == ["a", "b"]
    assert obj["a"]["pid"] == 11
    assert obj["a"]["launch"]["kind"] == "local"
    assert obj["b"]["launch"] == {"kind": "remote", "url": "https://example.test/mcp"}
    assert obj["b"]["socket_path"] == "/tmp/b.sock"
    assert obj["b"]["started_at"]


def test_put_reloads_before_saving(tmp_path: Path) -> None:
    """两个 store 实例交替写入：每次修改前都重新 load，不会丢掉对方已保存的条目。"""

    path = tmp_path / ".mcp-cmd.json"
    s1 = RegistryStore(path)
    s2 = RegistryStore(path)
    s1.put(_local_entry("a", pid=1))
    s2.put(_local_entry("b", pid=2))
    assert sorted(s1.load()) == ["a", "b"]


def test_save_leaves_no_temp_files(tmp_path: Path) -> None:
    store = RegistryStore(tmp_path / ".mcp-cmd.json")
    store.put(_local_entry())
    store.remove("files")
    assert sorted(p.name for p in tmp_path.iterdir()) == [".mcp-cmd.json", ".mcp-cmd.json.lock"]


def test_invalid_entries_are_skipped(tmp_path: Path) -> None:
    path = tmp_path / ".mcp-cmd.json"
    good = _local_entry("good").to_jsonable()
    path.write_text(
        json.dumps({"good": good, "bad": {"pid": "nope"}, "weird": 3, "extra": {**good, "future_field": 1}}),
        encoding="utf-8",
    )
    entries = RegistryStore(path).load()
    assert sorted(entries) == ["extra", "good"]
    assert entries["extra"].name == "extra"


def test_corrupt_registry_raises_operation_failed(tmp_path: Path) -> None:
    path = tmp_path / ".mcp-cmd.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(OperationFailedError):
        RegistryStore(path).load()

    path.write_text("[]", encoding="utf-8")
    with pytest.raises(OperationFailedError):
        RegistryStore(path).load()


def test_local_spec_rejects_unknown_fields() -> None:
    with pytest.raises(ValueError):
        LocalLaunchSpec.model_validate({"command": "x", "shell": True})


def test_concurrent_puts_from_processes_keep_every_entry(tmp_path: Path) -> None:
    """多个进程并发 put：load-修改-save 在 advisory 锁内完成，不丢条目。"""

    src = Path(__file__).resolve().parents[1] / "src"
    path = tmp_path / ".mcp-cmd.json"
    script = (
        "import sys\n"
        "from pathlib import Path\n"
        "from mcp_cmd.runtime.registry import LocalLaunchSpec, RegistryEntry, RegistryStore\n"
        "store = RegistryStore(Path(sys.argv[1]))\n"
        "for i in range(10):\n"
        "    name = f'{sys.argv[2]}-{i}'\n"
        "    store.put(RegistryEntry(name=name, launch=LocalLaunchSpec(command='x'), pid=1, socket_path='/tmp/' + name))\n"
    )
    env = {**os.environ, "PYTHONPATH": str(src)}
    procs = [
        subprocess.Popen([sys.executable, "-c", script, str(path), f"w{n}"], env=env)  # noqa: S603
        for n in range(4)
    ]
    assert [p.wait(timeout=60) for p in procs] == [0, 0, 0, 0]
    assert len(RegistryStore(path).load()) == 40
