from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path
from typing import Iterator

import pytest


@pytest.fixture
def short_dir() -> Iterator[Path]:
    """
    短路径临时目录（AF_UNIX 路径上限约 104~108 bytes，pytest 的 tmp_path 可能过长）。
    """

    d = Path(tempfile.mkdtemp(prefix="mcpcmd-", dir="/tmp" if os.path.isdir("/tmp") else None))
    try:
        yield d
    finally:
        shutil.rmtree(d, ignore_errors=True)
