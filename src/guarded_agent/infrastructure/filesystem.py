"""Concrete file operations on already-authorized workspace paths."""

from __future__ import annotations

import os
import re
import shutil
from collections.abc import Callable, Iterator
from pathlib import Path

import pathspec

from guarded_agent.infrastructure.config import STATE_DIR_NAME
from guarded_agent.infrastructure.logging import get_logger
from guarded_agent.infrastructure.shell import truncation_notice
from guarded_agent.infrastructure.storage import atomic_write_text

logger = get_logger(__name__)

ALWAYS_SKIP_DIRS: frozenset[str] = frozenset({
    ".git", ".hg", ".svn", "node_modules", "__pycache__", ".venv", "venv",
    ".mypy_cache", ".pytest_cache", ".ruff_cache", ".tox", ".eggs", STATE_DIR_NAME,
})

_BINARY_SNIFF_BYTES = 8192
_MAX_SEARCH_FILE_BYTES = 2 * 1024 * 1024


def _format_size(size: float) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}TB"


def _is_binary(head: bytes) -> bool:
    return b"\0" in head[:_BINARY_SNIFF_BYTES]


class WorkspaceFileSystem:
    """ファイル操作の実装.

    パスは呼び出し側でパーミッション判定と正規化を済ませた絶対パスを受け取る.
    変更系の操作はワークスペース外のパスを受け付けない.
    """

    def __init__(self, workspace_root: Path) -> None:
        """
        Initialize WorkspaceFileSystem.

        Args:
            workspace_root: 正規化済みのワークスペースルート
        """
        self._root = workspace_root
        self._gitignore: pathspec.PathSpec | None = None
        self._gitignore_loaded = False

    def display(self, path: Path) -> str:
        """表示用のパス（ワークスペース内は相対パス）."""
        if path == self._root:
            return "."
        if path.is_relative_to(self._root):
            return str(path.relative_to(self._root))
        return str(path)

    def _ensure_inside(self, path: Path) -> None:
        if not (path == self._root or path.is_relative_to(self._root)):
            msg = f"Refusing to modify '{path}' outside the workspace"
            raise PermissionError(msg)

    def _load_gitignore(self) -> pathspec.PathSpec | None:
        if self._gitignore_loaded:
            return self._gitignore
        self._gitignore_loaded = True
        gitignore_path = self._root / ".gitignore"
        if gitignore_path.is_file():
            with gitignore_path.open(encoding="utf-8", errors="replace") as f:
                self._gitignore = pathspec.PathSpec.from_lines("gitwildmatch", f)
        return self._gitignore

    def is_ignored(self, path: Path, *, is_dir: bool) -> bool:
        """.gitignore と常時除外ディレクトリに該当する場合 True."""
        if is_dir and path.name in ALWAYS_SKIP_DIRS:
            return True
        spec = self._load_gitignore()
        if spec is None or not path.is_relative_to(self._root) or path == self._root:
            return False
        rel = str(path.relative_to(self._root))
        return spec.match_file(rel + "/" if is_dir else rel)

    def read_file(self, path: Path, max_bytes: int) -> str:
        """
        テキストファイルを読み込む.

        Args:
            path: 対象ファイル
            max_bytes: 読み込む最大バイト数（超過分は注記付きで切り詰める）

        Returns:
            ファイル内容

        Raises:
            FileNotFoundError: ファイルが存在しない場合
            IsADirectoryError: ディレクトリの場合
            ValueError: バイナリファイルの場合
        """
        if path.is_dir():
            msg = f"'{self.display(path)}' is a directory; use list_directory"
            raise IsADirectoryError(msg)
        size = path.stat().st_size
        with path.open("rb") as f:
            data = f.read(max_bytes)
        if _is_binary(data):
            msg = f"'{self.display(path)}' appears to be a binary file"
            raise ValueError(msg)
        text = data.decode("utf-8", errors="replace")
        if size > max_bytes:
            text += "\n" + truncation_notice(len(data), size)
        logger.debug("File read", path=str(path), bytes=len(data))
        return text

    def read_image(self, path: Path, max_bytes: int) -> bytes:
        """
        画像ファイルをバイト列で読み込む.

        Raises:
            ValueError: max_bytes を超える場合
        """
        size = path.stat().st_size
        if size > max_bytes:
            msg = (
                f"Image too large: {self.display(path)} "
                f"({_format_size(size)}, max {_format_size(max_bytes)})"
            )
            raise ValueError(msg)
        return path.read_bytes()

    def write_file(self, path: Path, content: str) -> str:
        """ファイルを作成または上書きする（親ディレクトリも作成）."""
        self._ensure_inside(path)
        if path.is_dir():
            msg = f"'{self.display(path)}' is a directory"
            raise IsADirectoryError(msg)
        atomic_write_text(path, content)
        size = len(content.encode("utf-8"))
        logger.info("File written", path=str(path), bytes=size)
        return f"Wrote {size} bytes to {self.display(path)}"

    def list_directory(self, path: Path) -> str:
        """ディレクトリの内容を一覧する（.gitignore 対象は除外）."""
        if not path.is_dir():
            msg = f"Not a directory: {self.display(path)}"
            raise NotADirectoryError(msg)
        lines: list[str] = []
        for entry in sorted(path.iterdir(), key=lambda p: (not p.is_dir(), p.name)):
            is_dir = entry.is_dir()
            if self.is_ignored(entry, is_dir=is_dir):
                continue
            if is_dir:
                lines.append(f"  {entry.name}/")
            else:
                try:
                    size = entry.stat().st_size
                except OSError:
                    size = 0
                lines.append(f"  {entry.name} ({_format_size(size)})")
        header = f"{self.display(path)}/"
        if not lines:
            return f"{header} (empty)"
        return header + "\n" + "\n".join(lines)

    def create_directory(self, path: Path) -> str:
        """ディレクトリを作成する（親も作成）."""
        self._ensure_inside(path)
        path.mkdir(parents=True, exist_ok=True)
        logger.info("Directory created", path=str(path))
        return f"Created directory {self.display(path)}"

    def delete_file(self, path: Path) -> str:
        """ファイルを削除する."""
        self._ensure_inside(path)
        if path.is_dir() and not path.is_symlink():
            msg = f"'{self.display(path)}' is a directory; use delete_directory"
            raise IsADirectoryError(msg)
        path.unlink()
        logger.info("File deleted", path=str(path))
        return f"Deleted file {self.display(path)}"

    def delete_directory(self, path: Path) -> str:
        """ディレクトリを中身ごと削除する."""
        self._ensure_inside(path)
        if path == self._root:
            msg = "Refusing to delete the workspace root"
            raise PermissionError(msg)
        if not path.is_dir():
            msg = f"Not a directory: {self.display(path)}"
            raise NotADirectoryError(msg)
        shutil.rmtree(path)
        logger.info("Directory deleted", path=str(path))
        return f"Deleted directory {self.display(path)}"

    def move_file(self, source: Path, destination: Path) -> str:
        """ファイルまたはディレクトリを移動する."""
        self._ensure_inside(source)
        self._ensure_inside(destination)
        if not source.exists():
            msg = f"No such file or directory: {self.display(source)}"
            raise FileNotFoundError(msg)
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(source), str(destination))
        logger.info("Path moved", source=str(source), destination=str(destination))
        return f"Moved {self.display(source)} to {self.display(destination)}"

    def copy_file(
        self,
        source: Path,
        destination: Path,
        readable: Callable[[Path], bool] | None = None,
    ) -> str:
        """
        ファイルまたはディレクトリをコピーする.

        ディレクトリ内のシンボリックリンクはリンクのままコピーし、
        readable が False を返すエントリはコピーしない.

        Args:
            source: コピー元
            destination: コピー先（ワークスペース内）
            readable: ディレクトリ内の各エントリを読んでよいか判定する関数
        """
        self._ensure_inside(destination)
        if not source.exists():
            msg = f"No such file or directory: {self.display(source)}"
            raise FileNotFoundError(msg)
        destination.parent.mkdir(parents=True, exist_ok=True)
        skipped: list[Path] = []
        if source.is_dir():

            def ignore(directory: str, names: list[str]) -> set[str]:
                if readable is None:
                    return set()
                denied = {n for n in names if not readable(Path(directory) / n)}
                skipped.extend(Path(directory) / n for n in sorted(denied))
                return denied

            shutil.copytree(source, destination, symlinks=True, ignore=ignore)
        else:
            shutil.copy2(source, destination)
        logger.info(
            "Path copied",
            source=str(source),
            destination=str(destination),
            skipped=len(skipped),
        )
        message = f"Copied {self.display(source)} to {self.display(destination)}"
        if skipped:
            message += f" ({len(skipped)} entries skipped: access denied)"
        return message

    def search_code(
        self,
        pattern: str,
        path: Path,
        include: str | None = None,
        max_results: int = 100,
        readable: Callable[[Path], bool] | None = None,
    ) -> str:
        """
        正規表現でテキストファイルを検索する.

        Args:
            pattern: Python の正規表現
            path: 検索するファイルまたはディレクトリ
            include: ファイル名のグロブ（例: ``*.py``）
            max_results: 返す最大件数
            readable: 各ファイルを読んでよいか判定する関数（False のファイルは検索しない）

        Returns:
            ``path:line: text`` 形式の一致行

        Raises:
            ValueError: 正規表現が不正な場合
        """
        try:
            regex = re.compile(pattern)
        except re.error as e:
            msg = f"Invalid regular expression {pattern!r}: {e}"
            raise ValueError(msg) from e
        include_spec = (
            pathspec.PathSpec.from_lines("gitwildmatch", [include]) if include else None
        )

        matches: list[str] = []
        total = 0
        skipped = 0
        for file_path in self._iter_files(path):
            if include_spec is not None and not include_spec.match_file(file_path.name):
                continue
            if readable is not None and not readable(file_path):
                skipped += 1
                continue
            for lineno, line in self._search_file(file_path, regex):
                total += 1
                if len(matches) < max_results:
                    matches.append(f"{self.display(file_path)}:{lineno}: {line}")

        if skipped:
            logger.debug("Search skipped unreadable files", path=str(path), skipped=skipped)
        if not matches:
            return "No matches found."
        result = "\n".join(matches)
        if total > len(matches):
            result += f"\n\n... [{total - len(matches)} more matches truncated]"
        return result

    def _iter_files(self, path: Path) -> Iterator[Path]:
        if path.is_file():
            yield path
            return
        for dirpath, dirnames, filenames in os.walk(path):
            current = Path(dirpath)
            dirnames[:] = sorted(
                d for d in dirnames if not self.is_ignored(current / d, is_dir=True)
            )
            for name in sorted(filenames):
                file_path = current / name
                if not self.is_ignored(file_path, is_dir=False):
                    yield file_path

    @staticmethod
    def _search_file(file_path: Path, regex: re.Pattern[str]) -> list[tuple[int, str]]:
        try:
            if file_path.stat().st_size > _MAX_SEARCH_FILE_BYTES:
                return []
            data = file_path.read_bytes()
        except OSError:
            return []
        if _is_binary(data):
            return []
        text = data.decode("utf-8", errors="replace")
        return [
            (lineno, line.rstrip())
            for lineno, line in enumerate(text.splitlines(), start=1)
            if regex.search(line)
        ]
