"""Tool registry: concrete capabilities and externally provided tools."""

from __future__ import annotations

import asyncio
import base64
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from guarded_agent.application.errors import MalformedInputError, PermissionDeniedError
from guarded_agent.application.models import ImageBlock, ToolOutcome, ToolSpec
from guarded_agent.application.resilience import (
    DEFAULT_JOIN_TIMEOUT,
    CancellationToken,
    RetryPolicy,
    call_with_retry,
)
from guarded_agent.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from pathlib import Path

    from guarded_agent.application.permission import PermissionEngine
    from guarded_agent.infrastructure.filesystem import WorkspaceFileSystem
    from guarded_agent.infrastructure.shell import ShellRunner

logger = get_logger(__name__)

NAMESPACE_SEPARATOR = "__"

MAX_IMAGE_BYTES = 20 * 1024 * 1024

IMAGE_MEDIA_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
}

ToolHandler = Callable[[dict[str, Any], CancellationToken | None], Awaitable[ToolOutcome]]


class ToolProvider(Protocol):
    """外部ツールプロバイダー（MCPサーバー、Web検索など）."""

    def list_tools(self) -> Sequence[ToolSpec]:
        """提供するツールの定義を返す."""
        ...

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolOutcome:
        """ツールを実行する."""
        ...


@dataclass(frozen=True)
class ToolAccess:
    """ツールがパーミッション判定で必要とする情報."""

    path_arguments: tuple[str, ...] = ()
    write_arguments: tuple[str, ...] = ()
    optional_path_defaults: tuple[tuple[str, str], ...] = ()
    command_argument: str | None = None
    destructive: bool = False
    self_limited: bool = False


@dataclass(frozen=True)
class RegisteredTool:
    """レジストリに登録されたツール."""

    spec: ToolSpec
    handler: ToolHandler
    access: ToolAccess = ToolAccess()
    provider: str | None = None


class ToolRegistry:
    """ツール名から実装を引くレジストリ."""

    def __init__(self) -> None:
        """Initialize ToolRegistry."""
        self._tools: dict[str, RegisteredTool] = {}

    def register(
        self,
        spec: ToolSpec,
        handler: ToolHandler,
        *,
        access: ToolAccess | None = None,
        provider: str | None = None,
    ) -> None:
        """
        ツールを登録する.

        Raises:
            ValueError: 同名のツールが登録済みの場合
        """
        if spec.name in self._tools:
            msg = f"Tool '{spec.name}' is already registered"
            raise ValueError(msg)
        self._tools[spec.name] = RegisteredTool(
            spec=spec, handler=handler, access=access or ToolAccess(), provider=provider
        )

    def register_provider(
        self,
        namespace: str | None,
        provider: ToolProvider,
        *,
        retry_policy: RetryPolicy | None = None,
        join_timeout: float = DEFAULT_JOIN_TIMEOUT,
    ) -> list[str]:
        """
        外部プロバイダーのツールを登録する.

        namespace を指定した場合、ツール名は ``<namespace>__<tool>`` になる.
        呼び出しはリトライ層を経由する.

        Args:
            namespace: 名前空間（None の場合はツール名をそのまま使う）
            provider: プロバイダー
            retry_policy: リトライ方針
            join_timeout: 中断したタスクの終了待ち秒数

        Returns:
            登録したツール名
        """
        policy = retry_policy or RetryPolicy()
        names: list[str] = []
        for spec in provider.list_tools():
            exposed = (
                spec.name if namespace is None else f"{namespace}{NAMESPACE_SEPARATOR}{spec.name}"
            )

            def make_handler(remote_name: str) -> ToolHandler:
                async def handler(
                    arguments: dict[str, Any], token: CancellationToken | None
                ) -> ToolOutcome:
                    return await call_with_retry(
                        lambda: provider.call_tool(remote_name, dict(arguments)),
                        policy,
                        token=token,
                        join_timeout=join_timeout,
                    )

                return handler

            self.register(
                spec.model_copy(update={"name": exposed}),
                make_handler(spec.name),
                provider=namespace or "external",
            )
            names.append(exposed)
        logger.info("Tool provider registered", namespace=namespace, tools=names)
        return names

    def get(self, name: str) -> RegisteredTool | None:
        """ツールを取得する."""
        return self._tools.get(name)

    def names(self) -> list[str]:
        """登録済みのツール名."""
        return list(self._tools)

    def specs(self, *, read_only: bool = False) -> list[ToolSpec]:
        """
        モデルに提示するツール定義を返す.

        Args:
            read_only: True の場合は読み取り専用ツールのみ
        """
        return [t.spec for t in self._tools.values() if t.spec.read_only or not read_only]

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        token: CancellationToken | None = None,
    ) -> ToolOutcome:
        """
        ツールを実行する.

        Raises:
            MalformedInputError: 未登録のツールまたは引数が不正な場合
        """
        tool = self._tools.get(name)
        if tool is None:
            msg = f"Unknown tool '{name}'"
            raise MalformedInputError(msg)
        return await tool.handler(arguments, token)


def require_str(arguments: dict[str, Any], key: str, default: str | None = None) -> str:
    """
    文字列引数を取り出す.

    Raises:
        MalformedInputError: 引数が無いか文字列でない場合
    """
    value = arguments.get(key, default)
    if value is None:
        msg = f"Missing required argument '{key}'"
        raise MalformedInputError(msg)
    if not isinstance(value, str):
        msg = f"Argument '{key}' must be a string, got {type(value).__name__}"
        raise MalformedInputError(msg)
    return value


def _schema(properties: dict[str, dict[str, Any]], required: list[str]) -> dict[str, Any]:
    return {"type": "object", "properties": properties, "required": required}


_PATH = {"type": "string", "description": "Path relative to the workspace root"}

LOCAL_TOOL_SPECS: dict[str, ToolSpec] = {
    spec.name: spec
    for spec in (
        ToolSpec(
            name="read_file",
            description="Read the contents of a text file.",
            input_schema=_schema({"path": _PATH}, ["path"]),
            read_only=True,
        ),
        ToolSpec(
            name="list_directory",
            description="List files and directories, skipping .gitignore'd entries.",
            input_schema=_schema({"path": _PATH}, []),
            read_only=True,
        ),
        ToolSpec(
            name="search_code",
            description="Search text files with a regular expression.",
            input_schema=_schema(
                {
                    "pattern": {"type": "string", "description": "Python regular expression"},
                    "path": _PATH,
                    "include": {"type": "string", "description": "File name glob, e.g. *.py"},
                    "max_results": {"type": "integer", "minimum": 1},
                },
                ["pattern"],
            ),
            read_only=True,
        ),
        ToolSpec(
            name="write_file",
            description="Create or overwrite a file inside the workspace.",
            input_schema=_schema({"path": _PATH, "content": {"type": "string"}}, ["path", "content"]),
        ),
        ToolSpec(
            name="create_directory",
            description="Create a directory (and parents) inside the workspace.",
            input_schema=_schema({"path": _PATH}, ["path"]),
        ),
        ToolSpec(
            name="delete_file",
            description="Delete a file inside the workspace. Requires user confirmation.",
            input_schema=_schema({"path": _PATH}, ["path"]),
        ),
        ToolSpec(
            name="delete_directory",
            description="Delete a directory and its contents. Requires user confirmation.",
            input_schema=_schema({"path": _PATH}, ["path"]),
        ),
        ToolSpec(
            name="move_file",
            description="Move or rename a file or directory inside the workspace.",
            input_schema=_schema({"source": _PATH, "destination": _PATH}, ["source", "destination"]),
        ),
        ToolSpec(
            name="copy_file",
            description="Copy a file or directory into the workspace.",
            input_schema=_schema({"source": _PATH, "destination": _PATH}, ["source", "destination"]),
        ),
        ToolSpec(
            name="fetch_image",
            description=(
                "Load an image (JPEG, PNG, GIF, WebP) from a workspace path or an "
                "http(s) URL so it can be attached to the conversation."
            ),
            input_schema=_schema(
                {"source": {"type": "string", "description": "Image path or URL"}},
                ["source"],
            ),
            read_only=True,
        ),
        ToolSpec(
            name="execute_bash",
            description=(
                "Run a shell command in the workspace root. Destructive commands, "
                "output redirection, directory changes and paths outside the "
                "workspace are blocked; unknown commands need user approval."
            ),
            input_schema=_schema({"command": {"type": "string"}}, ["command"]),
        ),
    )
}


class LocalTools:
    """ワークスペースに対する組み込みツール群."""

    def __init__(
        self,
        engine: PermissionEngine,
        filesystem: WorkspaceFileSystem,
        shell: ShellRunner,
        max_file_read_bytes: int,
    ) -> None:
        """
        Initialize LocalTools.

        Args:
            engine: パスの正規化に使うパーミッションエンジン
            filesystem: ファイル操作の実装
            shell: コマンド実行の実装
            max_file_read_bytes: read_file の最大バイト数
        """
        self._engine = engine
        self._fs = filesystem
        self._shell = shell
        self._max_file_read_bytes = max_file_read_bytes

    def register_into(self, registry: ToolRegistry) -> None:
        """レジストリに全ツールを登録する."""
        path = ("path",)
        src_dst = ("source", "destination")
        entries: list[tuple[str, ToolHandler, ToolAccess]] = [
            ("read_file", self.read_file, ToolAccess(path_arguments=path, self_limited=True)),
            (
                "list_directory",
                self.list_directory,
                ToolAccess(optional_path_defaults=(("path", "."),)),
            ),
            (
                "search_code",
                self.search_code,
                ToolAccess(optional_path_defaults=(("path", "."),)),
            ),
            ("write_file", self.write_file, ToolAccess(path_arguments=path, write_arguments=path)),
            (
                "create_directory",
                self.create_directory,
                ToolAccess(path_arguments=path, write_arguments=path),
            ),
            (
                "delete_file",
                self.delete_file,
                ToolAccess(path_arguments=path, write_arguments=path, destructive=True),
            ),
            (
                "delete_directory",
                self.delete_directory,
                ToolAccess(path_arguments=path, write_arguments=path, destructive=True),
            ),
            (
                "move_file",
                self.move_file,
                ToolAccess(path_arguments=src_dst, write_arguments=src_dst),
            ),
            (
                "copy_file",
                self.copy_file,
                ToolAccess(path_arguments=src_dst, write_arguments=("destination",)),
            ),
            ("fetch_image", self.fetch_image, ToolAccess(self_limited=True)),
            (
                "execute_bash",
                self.execute_bash,
                ToolAccess(command_argument="command", self_limited=True),
            ),
        ]
        for name, handler, access in entries:
            registry.register(LOCAL_TOOL_SPECS[name], handler, access=access, provider="local")

    def _path(self, arguments: dict[str, Any], key: str, default: str | None = None) -> Path:
        return self._engine.canonicalize(require_str(arguments, key, default))

    def _readable(self, path: Path) -> bool:
        # ディレクトリ配下の各エントリも個別に Read ルールで判定する
        return self._engine.evaluate(path).allowed

    async def read_file(
        self, arguments: dict[str, Any], token: CancellationToken | None = None
    ) -> ToolOutcome:
        path = self._engine.canonicalize(require_str(arguments, "path"), must_exist=True)
        text = await asyncio.to_thread(self._fs.read_file, path, self._max_file_read_bytes)
        return ToolOutcome(text)

    async def list_directory(
        self, arguments: dict[str, Any], token: CancellationToken | None = None
    ) -> ToolOutcome:
        path = self._path(arguments, "path", ".")
        return ToolOutcome(await asyncio.to_thread(self._fs.list_directory, path))

    async def search_code(
        self, arguments: dict[str, Any], token: CancellationToken | None = None
    ) -> ToolOutcome:
        pattern = require_str(arguments, "pattern")
        path = self._path(arguments, "path", ".")
        include = arguments.get("include")
        if include is not None and not isinstance(include, str):
            msg = "Argument 'include' must be a string"
            raise MalformedInputError(msg)
        max_results = arguments.get("max_results", 100)
        if not isinstance(max_results, int) or max_results < 1:
            msg = "Argument 'max_results' must be a positive integer"
            raise MalformedInputError(msg)
        output = await asyncio.to_thread(
            self._fs.search_code, pattern, path, include, max_results, self._readable
        )
        return ToolOutcome(output)

    async def write_file(
        self, arguments: dict[str, Any], token: CancellationToken | None = None
    ) -> ToolOutcome:
        path = self._path(arguments, "path")
        content = require_str(arguments, "content")
        return ToolOutcome(await asyncio.to_thread(self._fs.write_file, path, content))

    async def create_directory(
        self, arguments: dict[str, Any], token: CancellationToken | None = None
    ) -> ToolOutcome:
        path = self._path(arguments, "path")
        return ToolOutcome(await asyncio.to_thread(self._fs.create_directory, path))

    async def delete_file(
        self, arguments: dict[str, Any], token: CancellationToken | None = None
    ) -> ToolOutcome:
        path = self._path(arguments, "path")
        return ToolOutcome(await asyncio.to_thread(self._fs.delete_file, path))

    async def delete_directory(
        self, arguments: dict[str, Any], token: CancellationToken | None = None
    ) -> ToolOutcome:
        path = self._path(arguments, "path")
        return ToolOutcome(await asyncio.to_thread(self._fs.delete_directory, path))

    async def move_file(
        self, arguments: dict[str, Any], token: CancellationToken | None = None
    ) -> ToolOutcome:
        source = self._path(arguments, "source")
        destination = self._path(arguments, "destination")
        return ToolOutcome(await asyncio.to_thread(self._fs.move_file, source, destination))

    async def copy_file(
        self, arguments: dict[str, Any], token: CancellationToken | None = None
    ) -> ToolOutcome:
        source = self._path(arguments, "source")
        destination = self._path(arguments, "destination")
        output = await asyncio.to_thread(
            self._fs.copy_file, source, destination, self._readable
        )
        return ToolOutcome(output)

    async def fetch_image(
        self, arguments: dict[str, Any], token: CancellationToken | None = None
    ) -> ToolOutcome:
        """
        画像を読み込む.

        URL はそのまま画像ブロックとして渡し、ローカルパスはパーミッション判定のうえ
        base64 にエンコードした画像ブロックを結果に添付する.
        """
        source = require_str(arguments, "source").strip()
        if source.startswith(("http://", "https://")):
            return ToolOutcome(
                f"Image URL attached: {source}", images=(ImageBlock(url=source),)
            )
        if "://" in source:
            msg = f"Invalid image URL: {source}. Must start with http:// or https://"
            raise MalformedInputError(msg)

        decision = self._engine.evaluate(source, must_exist=True)
        if not decision.allowed or decision.canonical_path is None:
            raise PermissionDeniedError(decision.reason, decision.hint)
        path = decision.canonical_path
        media_type = IMAGE_MEDIA_TYPES.get(path.suffix.lower().lstrip("."))
        if media_type is None:
            msg = (
                f"Unsupported image format: '{path.suffix}'. "
                "Supported formats: JPEG, PNG, GIF, WebP"
            )
            raise MalformedInputError(msg)
        data = await asyncio.to_thread(self._fs.read_image, path, MAX_IMAGE_BYTES)
        return ToolOutcome(
            f"Image loaded: {self._fs.display(path)} ({media_type}, {len(data)} bytes)",
            images=(
                ImageBlock(
                    media_type=media_type,
                    data=base64.b64encode(data).decode("ascii"),
                ),
            ),
        )

    async def execute_bash(
        self, arguments: dict[str, Any], token: CancellationToken | None = None
    ) -> ToolOutcome:
        command = require_str(arguments, "command")
        result = await self._shell.run(command)
        return ToolOutcome(result.format(), is_error=not result.succeeded)
