from __future__ import annotations

from pathlib import Path

import pytest

from mcp_cmd.bootstrap import discover_overlay_paths, resolve_config, resolve_registry_path
from mcp_cmd.config import load_config
from mcp_cmd.config.defaults import load_default_config_dict
from mcp_cmd.core.errors import ConfigError


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    for key in (
        "MCP_CMD_REGISTRY_PATH",
        "MCP_CMD_SOCKET_DIR",
        "MCP_CMD_STARTUP_TIMEOUT_SEC",
        "MCP_CMD_RPC_TIMEOUT_SEC",
        "MCP_CMD_LOG_LEVEL",
    ):
        monkeypatch.delenv(key, raising=False)


def test_embedded_defaults(tmp_path: Path) -> None:
    cfg = resolve_config(cwd=tmp_path)
    assert cfg.registry.path == ".mcp-cmd.json"
    assert cfg.runtime.socket_dir is None
    assert cfg.runtime.socket_prefix == "mcp-cmd"
    assert cfg.runtime.startup_timeout_sec == 60
    assert cfg.runtime.effective_rpc_timeout() is None
    assert cfg.logging.level == "INFO"
    assert resolve_registry_path(cfg, cwd=tmp_path) == tmp_path.resolve() / ".mcp-cmd.json"


def test_cwd_overlay_then_explicit_overlay(tmp_path: Path) -> None:
    (tmp_path / ".mcp-cmd.yaml").write_text("runtime:\n  startup_timeout_sec: 5\n  rpc_timeout_sec: 3\n", encoding="utf-8")
    (tmp_path / "extra.yaml").write_text("runtime:\n  startup_timeout_sec: 9\n", encoding="utf-8")

    paths = discover_overlay_paths(cwd=tmp_path, explicit=["extra.yaml"])
    assert paths == [(tmp_path / ".mcp-cmd.yaml").resolve(), (tmp_path / "extra.yaml").resolve()]

    cfg = resolve_config(cwd=tmp_path, overlay_paths=["extra.yaml"])
    assert cfg.runtime.startup_timeout_sec == 9
    assert cfg.runtime.effective_rpc_timeout() == 3.0


def test_env_overrides_win_over_overlays(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    (tmp_path / ".mcp-cmd.yaml").write_text("registry:\n  path: a.json\n", encoding="utf-8")
    monkeypatch.setenv("MCP_CMD_REGISTRY_PATH", str(tmp_path / "state" / "reg.json"))
    monkeypatch.setenv("MCP_CMD_LOG_LEVEL", "debug")
    monkeypatch.setenv("MCP_CMD_SOCKET_DIR", "   ")

    cfg = resolve_config(cwd=tmp_path)
    assert resolve_registry_path(cfg, cwd=tmp_path) == tmp_path / "state" / "reg.json"
    assert cfg.logging.level == "DEBUG"
    assert cfg.runtime.socket_dir is None


def test_unknown_keys_are_rejected(tmp_path: Path) -> None:
    (tmp_path / ".mcp-cmd.yaml").write_text("runtime:\n  startup_timeout: 5\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        resolve_config(cwd=tmp_path)


def test_missing_explicit_overlay_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError) as ei:
        resolve_config(cwd=tmp_path, overlay_paths=["nope.yaml"])
    assert ei.value.code == "CONFIG_INVALID"


def test_non_mapping_overlay_is_an_error(tmp_path: Path) -> None:
    (tmp_path / "list.yaml").write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        resolve_config(cwd=tmp_path, overlay_paths=["list.yaml"])


def test_zero_rpc_timeout_means_wait_forever(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setenv("MCP_CMD_RPC_TIMEOUT_SEC", "0")
    assert resolve_config(cwd=tmp_path).runtime.effective_rpc_timeout() is None


def test_load_config_merges_files_in_order(tmp_path: Path) -> None:
    import yaml

    base = tmp_path / "base.yaml"
    base.write_text(yaml.safe_dump(load_default_config_dict()), encoding="utf-8")
    overlay = tmp_path / "overlay.yaml"
    overlay.write_text("runtime:\n  socket_prefix: team-a\nlogging:\n  level: ERROR\n", encoding="utf-8")

    cfg = load_config([base, overlay])
    assert cfg.runtime.socket_prefix == "team-a"
    assert cfg.runtime.startup_timeout_sec == 60
    assert cfg.logging.level == "ERROR"
