"""
Registry Store：server name -> worker 启动/运行元数据（单个 JSON 文件）。

语义：
- 每次 CLI 调用整体 load / 整体 save；文件不存在时 load 返回空 mapping；
- 调用方在任何“修改后保存”之前必须重新 load；`put`/`remove` 在 load-修改-save 期间持有 `<registry>.lock` 上的 advisory 排他锁，
  直接调用 `save` 仍是 last-writer-wins；
- 条目存在只代表“某次 start 认为 worker 启动成功”，不代表进程仍存活（存活性由 supervisor 惰性检查）。
"""

from __future__ import annotations

import contextlib
import fcntl
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
import tempfile
from typing import Annotated, Any, Dict, Iterator, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from mcp_cmd.core.errors import OperationFailedError

logger = logging.getLogger(__name__)


class LocalLaunchSpec(BaseModel):
    """本地 spawn：`command args...`，在 `cwd` 下运行，`env` 覆盖默认环境变量。"""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["local"] = "local"
    command: str = Field(min_length=1)
    args: List[str] = Field(default_factory=list)
    cwd: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)


class RemoteLaunchSpec(BaseModel):
    """远端 endpoint：按 URL 连接。"""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["remote"] = "remote"
    url: str = Field(min_length=1)


LaunchSpec = Annotated[Union[LocalLaunchSpec, RemoteLaunchSpec], Field(discriminator="kind")]


class RegistryEntry(BaseModel):
    """
    一个命名 worker 的记录。

    字段：
    - name：registry key（创建后不变）
    - launch：启动规格（local 与 remote 二选一）
    - pid：worker 进程号（用于存活探测与终止）
    - socket_path：worker ready 信号中回报的 socket 路径
    - started_at：创建时间（ISO 8601，UTC）
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    name: str
    launch: LaunchSpec
    pid: int = Field(gt=0)
    socket_path: str
    started_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_jsonable(self) -> Dict[str, Any]:
        """投影为可 JSON 序列化的 dict（launch 中的空字段省略）。"""

        return self.model_dump(mode="json", exclude_none=True)


class RegistryStore:
    """
    registry 文件读写。

    说明：
    - save 采用“同目录临时文件 + os.replace”，读者不会看到写了一半的文件（不保证 crash 原子性）。
    """

    def __init__(self, path: Path) -> None:
        """
        参数：
        - path：registry 文件路径（通常为 `<cwd>/.mcp-cmd.json`）
        """

        self._path = Path(path)

    @property
    def path(self) -> Path:
        """registry 文件路径。"""

        return self._path

    def load(self) -> Dict[str, RegistryEntry]:
        """
        读取整个 registry。

        返回：
        - dict[name, RegistryEntry]；文件不存在时为空 dict

        异常：
        - OperationFailedError：文件存在但不是合法 JSON object
        """

        if not self._path.exists():
            return {}
        try:
            obj = json.loads(self._path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as exc:
            raise OperationFailedError(
                f"Registry file is unreadable: {self._path}",
                details={"path": str(self._path), "reason": str(exc)},
            ) from exc
        if not isinstance(obj, dict):
            raise OperationFailedError(
                f"Registry file root must be an object: {self._path}",
                details={"path": str(self._path), "actual": type(obj).__name__},
            )

        entries: Dict[str, RegistryEntry] = {}
        for name, raw in obj.items():
            if not isinstance(raw, dict):
                logger.warning("Skipping malformed registry entry %r in %s", name, self._path)
                continue
            try:
                entries[str(name)] = RegistryEntry.model_validate({**raw, "name": str(name)})
            except ValidationError:
                logger.warning("Skipping invalid registry entry %r in %s", name, self._path, exc_info=True)
        return entries

    def save(self, entries: Dict[str, RegistryEntry]) -> None:
        """整体覆盖写入 registry。"""

        payload = {name: entry.to_jsonable() for name, entry in entries.items()}
        text = json.dumps(payload, ensure_ascii=False, indent=2) + "\n"
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{self._path.name}.", suffix=".tmp", dir=str(self._path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp, self._path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    @contextlib.contextmanager
    def _mutation_lock(self) -> Iterator[None]:
        """load-修改-save 期间持有的跨进程 advisory 排他锁（flock）。"""

        lock_path = self._path.with_name(f"{self._path.name}.lock")
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        with lock_path.open("a+", encoding="utf-8") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def get(self, name: str) -> Optional[RegistryEntry]:
        """读取单个条目（每次都重新 load）。"""

        return self.load().get(name)

    def put(self, entry: RegistryEntry) -> None:
        """重新 load 后写入/覆盖一个条目并保存。"""

        with self._mutation_lock():
            entries = self.load()
            entries[entry.name] = entry
            self.save(entries)

    def remove(self, name: str) -> bool:
        """
        重新 load 后删除一个条目并保存。

        返回：
        - bool：条目是否存在（不存在时不写文件）
        """

        with self._mutation_lock():
            entries = self.load()
            if name not in entries:
                return False
            del entries[name]
            self.save(entries)
        return True
