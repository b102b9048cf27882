"""Crash-safe file persistence helpers."""

from __future__ import annotations

import fcntl
import json
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import Any

from guarded_agent.infrastructure.logging import get_logger

logger = get_logger(__name__)


def _fsync_dir(dir_path: Path) -> None:
    """ディレクトリを fsync し、rename のメタデータを永続化する（非対応環境では無視）."""
    flags = os.O_RDONLY
    if hasattr(os, "O_DIRECTORY"):
        flags |= os.O_DIRECTORY
    try:
        fd = os.open(str(dir_path), flags)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        logger.debug("Directory fsync not supported", path=str(dir_path))
    finally:
        os.close(fd)


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """
    テキストをアトミックに書き込む.

    同じディレクトリの一時ファイルに書き込み、fsync してから置き換える.
    途中でクラッシュしても元のファイルは壊れない.

    Args:
        path: 書き込み先
        content: 書き込む内容
        encoding: 文字コード
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

        os.replace(tmp_path, path)
        _fsync_dir(path.parent)
    finally:
        if tmp_path.exists():
            with suppress(OSError):
                tmp_path.unlink()


def atomic_write_json(path: Path, data: Any) -> None:
    """JSONをインデント付きでアトミックに書き込む."""
    atomic_write_text(path, json.dumps(data, ensure_ascii=False, indent=2) + "\n")


@contextmanager
def locked_file(path: Path) -> Iterator[None]:
    """
    ``<path>.lock`` に排他ロックを取得する.

    複数プロセスが同じファイルを read-modify-write する区間を直列化する.

    Args:
        path: 保護対象のファイル
    """
    lock_path = path.with_name(f"{path.name}.lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_fd:
        fcntl.flock(lock_fd, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_fd, fcntl.LOCK_UN)
