"""Tests for permission-gated tool dispatch."""

from __future__ import annotations

import asyncio
import base64
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pytest

from guarded_agent.application.bash import BashClassifier
from guarded_agent.application.dispatcher import BatchInterruptedError, ToolDispatcher
from guarded_agent.application.errors import (
    MalformedInputError,
    OperationCancelledError,
    PermissionDeniedError,
    TransientError,
)
from guarded_agent.application.models import (
    ConfirmationChoice,
    ConfirmationRequest,
    ConfirmationResponse,
    ConversationTurn,
    Decision,
    ImageBlock,
    Role,
    RuleKind,
    ToolCall,
    ToolOutcome,
    ToolSpec,
    ToolStatus,
)
from guarded_agent.application.permission import PermissionEngine
from guarded_agent.application.resilience import CancellationToken, RetryPolicy
from guarded_agent.application.rules import RuleStore
from guarded_agent.application.tools import LocalTools, ToolRegistry
from guarded_agent.infrastructure.filesystem import WorkspaceFileSystem
from guarded_agent.infrastructure.shell import ShellRunner


class ScriptedConfirmation:
    """あらかじめ決めた応答を返す確認UI."""

    def __init__(self, *responses: ConfirmationResponse) -> None:
        self.responses = list(responses)
        self.requests: list[ConfirmationRequest] = []

    async def ask(self, request: ConfirmationRequest) -> ConfirmationResponse:
        self.requests.append(request)
        return self.responses.pop(0)


class HangingConfirmation:
    """応答しない確認UI."""

    def __init__(self) -> None:
        self.asked = asyncio.Event()

    async def ask(self, request: ConfirmationRequest) -> ConfirmationResponse:
        self.asked.set()
        await asyncio.sleep(60)
        return ConfirmationResponse(choice=ConfirmationChoice.ALLOW_ONCE)


class FlakySearchProvider:
    """1回目だけ一時的に失敗する外部ツールプロバイダー."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def list_tools(self) -> Sequence[ToolSpec]:
        return [ToolSpec(name="web_search", description="Search the web", read_only=True)]

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolOutcome:
        self.calls.append((name, arguments))
        if len(self.calls) == 1:
            msg = "search backend unavailable"
            raise TransientError(msg)
        return ToolOutcome(f"results for {arguments['query']}")


def _response(
    choice: ConfirmationChoice, *, remember_pattern: bool = False
) -> ConfirmationResponse:
    return ConfirmationResponse(choice=choice, remember_pattern=remember_pattern)


@pytest.fixture
def registry(engine: PermissionEngine, workspace: Path) -> ToolRegistry:
    """ローカルツールを登録したレジストリ."""
    registry = ToolRegistry()
    LocalTools(
        engine,
        WorkspaceFileSystem(workspace),
        ShellRunner(workspace, 1024 * 1024, 10.0),
        1024 * 1024,
    ).register_into(registry)
    return registry


def _dispatcher(
    registry: ToolRegistry,
    engine: PermissionEngine,
    classifier: BashClassifier,
    confirmation: Any = None,
    **kwargs: Any,
) -> ToolDispatcher:
    return ToolDispatcher(
        registry, engine, classifier, confirmation or ScriptedConfirmation(), **kwargs
    )


def _call(name: str, call_id: str = "call_1", **arguments: Any) -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=arguments)


class TestPathAuthorization:
    """パス引数を持つツールの判定."""

    @pytest.mark.asyncio
    async def test_read_inside_workspace(
        self,
        registry: ToolRegistry,
        engine: PermissionEngine,
        classifier: BashClassifier,
        workspace: Path,
    ) -> None:
        """ワークスペース内のファイルを読めることを確認する."""
        (workspace / "hello.txt").write_text("hello", encoding="utf-8")
        dispatcher = _dispatcher(registry, engine, classifier)
        call = _call("read_file", path="hello.txt")

        assert await dispatcher.authorize(call) is None
        result = await dispatcher.execute(call)

        assert result.status is ToolStatus.OK
        assert result.payload == "hello"

    @pytest.mark.asyncio
    async def test_read_outside_denied_with_hint(
        self, registry: ToolRegistry, engine: PermissionEngine, classifier: BashClassifier
    ) -> None:
        """ワークスペース外の読み込みは理由とヒント付きで拒否されることを確認する."""
        dispatcher = _dispatcher(registry, engine, classifier)

        result = await dispatcher.authorize(_call("read_file", path="../outside/a.txt"))

        assert result is not None
        assert result.status is ToolStatus.DENIED
        assert result.is_error
        assert result.payload.startswith("Permission denied: ")
        assert "\nHint: " in result.payload
        assert "Read(" in result.payload

    @pytest.mark.asyncio
    async def test_write_outside_denied_even_when_readable(
        self,
        registry: ToolRegistry,
        engine: PermissionEngine,
        classifier: BashClassifier,
        outside: Path,
        set_rules: Any,
    ) -> None:
        """読み込みが許可されていてもワークスペース外には書き込めないことを確認する."""
        set_rules("global", allow=[f"Read({outside}/**)"])
        dispatcher = _dispatcher(registry, engine, classifier)

        result = await dispatcher.authorize(
            _call("write_file", path=str(outside / "x.txt"), content="x")
        )

        assert result is not None
        assert result.status is ToolStatus.DENIED
        assert "can only modify paths inside the workspace" in result.payload
        assert not (outside / "x.txt").exists()

    @pytest.mark.asyncio
    async def test_copy_from_readable_outside(
        self,
        registry: ToolRegistry,
        engine: PermissionEngine,
        classifier: BashClassifier,
        workspace: Path,
        outside: Path,
        set_rules: Any,
    ) -> None:
        """許可されたワークスペース外からワークスペース内へコピーできることを確認する."""
        (outside / "ref.txt").write_text("ref", encoding="utf-8")
        set_rules("global", allow=[f"Read({outside}/**)"])
        dispatcher = _dispatcher(registry, engine, classifier)
        call = _call("copy_file", source=str(outside / "ref.txt"), destination="ref.txt")

        assert await dispatcher.authorize(call) is None
        result = await dispatcher.execute(call)

        assert result.status is ToolStatus.OK
        assert (workspace / "ref.txt").read_text(encoding="utf-8") == "ref"

    @pytest.mark.asyncio
    async def test_denied_by_rule(
        self,
        registry: ToolRegistry,
        engine: PermissionEngine,
        classifier: BashClassifier,
        set_rules: Any,
    ) -> None:
        """Deny ルールに一致するパスは拒否されることを確認する."""
        set_rules("local", deny=["Read(./secrets/**)"])
        dispatcher = _dispatcher(registry, engine, classifier)

        result = await dispatcher.authorize(_call("list_directory", path="secrets/keys"))

        assert result is not None
        assert result.status is ToolStatus.DENIED

    @pytest.mark.asyncio
    async def test_optional_path_defaults_to_root(
        self,
        registry: ToolRegistry,
        engine: PermissionEngine,
        classifier: BashClassifier,
        workspace: Path,
    ) -> None:
        """path を省略するとワークスペースのルートを対象にすることを確認する."""
        (workspace / "main.py").write_text("", encoding="utf-8")
        dispatcher = _dispatcher(registry, engine, classifier)
        call = _call("list_directory")

        assert await dispatcher.authorize(call) is None
        result = await dispatcher.execute(call)

        assert "main.py" in result.payload

    @pytest.mark.asyncio
    async def test_malformed_path_argument(
        self, registry: ToolRegistry, engine: PermissionEngine, classifier: BashClassifier
    ) -> None:
        """パス引数が文字列でない場合はエラー結果になることを確認する."""
        dispatcher = _dispatcher(registry, engine, classifier)

        result = await dispatcher.authorize(_call("read_file", path=5))

        assert result is not None
        assert result.status is ToolStatus.ERROR
        assert result.payload.startswith("Invalid arguments: ")

    @pytest.mark.asyncio
    async def test_unknown_tool(
        self, registry: ToolRegistry, engine: PermissionEngine, classifier: BashClassifier
    ) -> None:
        """未登録のツールはエラー結果になることを確認する."""
        dispatcher = _dispatcher(registry, engine, classifier)

        result = await dispatcher.authorize(_call("format_disk"))

        assert result is not None
        assert result.status is ToolStatus.ERROR
        assert "Unknown tool 'format_disk'" in result.payload


class TestEntryLevelPermissions:
    """ディレクトリ配下のエントリごとの判定."""

    @pytest.mark.asyncio
    async def test_search_skips_denied_files(
        self,
        registry: ToolRegistry,
        engine: PermissionEngine,
        classifier: BashClassifier,
        workspace: Path,
        set_rules: Any,
    ) -> None:
        """Deny ルールに一致するファイルは検索結果に含まれないことを確認する."""
        (workspace / "secrets").mkdir()
        (workspace / "secrets" / "key.txt").write_text("token=abc\n", encoding="utf-8")
        (workspace / "app.py").write_text("token=None\n", encoding="utf-8")
        set_rules("local", deny=["Read(./secrets/**)"])
        dispatcher = _dispatcher(registry, engine, classifier)
        call = _call("search_code", pattern="token")

        assert await dispatcher.authorize(call) is None
        result = await dispatcher.execute(call)

        assert result.status is ToolStatus.OK
        assert result.payload == "app.py:1: token=None"

    @pytest.mark.asyncio
    async def test_search_skips_symlink_to_outside(
        self,
        registry: ToolRegistry,
        engine: PermissionEngine,
        classifier: BashClassifier,
        workspace: Path,
        outside: Path,
    ) -> None:
        """ワークスペース外を指すシンボリックリンクの中身は検索しないことを確認する."""
        (outside / "secret.txt").write_text("password=hunter2\n", encoding="utf-8")
        (workspace / "link.txt").symlink_to(outside / "secret.txt")
        dispatcher = _dispatcher(registry, engine, classifier)

        result = await dispatcher.execute(_call("search_code", pattern="password"))

        assert result.payload == "No matches found."

    @pytest.mark.asyncio
    async def test_copy_directory_keeps_outside_symlink_unread(
        self,
        registry: ToolRegistry,
        engine: PermissionEngine,
        classifier: BashClassifier,
        workspace: Path,
        outside: Path,
    ) -> None:
        """ディレクトリのコピーでワークスペース外の内容が複製されないことを確認する."""
        (outside / "secret.txt").write_text("password=hunter2", encoding="utf-8")
        (workspace / "d").mkdir()
        (workspace / "d" / "ok.txt").write_text("ok", encoding="utf-8")
        (workspace / "d" / "link.txt").symlink_to(outside / "secret.txt")
        dispatcher = _dispatcher(registry, engine, classifier)
        call = _call("copy_file", source="d", destination="e")

        assert await dispatcher.authorize(call) is None
        result = await dispatcher.execute(call)

        assert result.status is ToolStatus.OK
        assert "1 entries skipped" in result.payload
        assert (workspace / "e" / "ok.txt").read_text(encoding="utf-8") == "ok"
        assert not (workspace / "e" / "link.txt").exists()
        assert not (workspace / "e" / "link.txt").is_symlink()

    @pytest.mark.asyncio
    async def test_copy_directory_skips_denied_subpath(
        self,
        registry: ToolRegistry,
        engine: PermissionEngine,
        classifier: BashClassifier,
        workspace: Path,
        set_rules: Any,
    ) -> None:
        """Deny ルールに一致するサブパスはコピーされないことを確認する."""
        (workspace / "d" / "secrets").mkdir(parents=True)
        (workspace / "d" / "secrets" / "key.txt").write_text("abc", encoding="utf-8")
        (workspace / "d" / "readme.md").write_text("hi", encoding="utf-8")
        set_rules("local", deny=["Read(./d/secrets/**)"])
        dispatcher = _dispatcher(registry, engine, classifier)

        result = await dispatcher.execute(_call("copy_file", source="d", destination="e"))

        assert result.status is ToolStatus.OK
        assert (workspace / "e" / "readme.md").exists()
        assert not (workspace / "e" / "secrets" / "key.txt").exists()


class TestAgentStateProtection:
    """エージェント自身の状態ディレクトリの保護."""

    @pytest.mark.asyncio
    async def test_write_rule_file_denied(
        self,
        registry: ToolRegistry,
        engine: PermissionEngine,
        classifier: BashClassifier,
        local_rules_file: Path,
        set_rules: Any,
    ) -> None:
        """ローカルのルールファイルはツールから書き換えられないことを確認する."""
        set_rules("local", deny=["Bash(curl:*)"])
        before = local_rules_file.read_text(encoding="utf-8")
        dispatcher = _dispatcher(registry, engine, classifier)

        result = await dispatcher.authorize(
            _call(
                "write_file",
                path=".guarded-agent/permissions.local.json",
                content='{"permissions": {"allow": ["Bash(*)"]}}',
            )
        )

        assert result is not None
        assert result.status is ToolStatus.DENIED
        assert "agent's own state" in result.payload
        assert local_rules_file.read_text(encoding="utf-8") == before

    @pytest.mark.asyncio
    async def test_copy_into_state_dir_denied(
        self,
        registry: ToolRegistry,
        engine: PermissionEngine,
        classifier: BashClassifier,
        workspace: Path,
    ) -> None:
        """状態ディレクトリへのコピーは拒否されることを確認する."""
        (workspace / "evil.json").write_text("{}", encoding="utf-8")
        dispatcher = _dispatcher(registry, engine, classifier)

        result = await dispatcher.authorize(
            _call(
                "copy_file",
                source="evil.json",
                destination=".guarded-agent/permissions.local.json",
            )
        )

        assert result is not None
        assert result.status is ToolStatus.DENIED

    @pytest.mark.asyncio
    async def test_delete_state_dir_denied(
        self,
        registry: ToolRegistry,
        engine: PermissionEngine,
        classifier: BashClassifier,
        workspace: Path,
    ) -> None:
        """状態ディレクトリは確認なしで削除を拒否されることを確認する."""
        (workspace / ".guarded-agent" / "sessions").mkdir(parents=True)
        confirmation = ScriptedConfirmation()
        dispatcher = _dispatcher(registry, engine, classifier, confirmation)

        result = await dispatcher.authorize(_call("delete_directory", path=".guarded-agent"))

        assert result is not None
        assert result.status is ToolStatus.DENIED
        assert confirmation.requests == []
        assert (workspace / ".guarded-agent" / "sessions").is_dir()

    @pytest.mark.asyncio
    async def test_read_rule_file_allowed(
        self,
        registry: ToolRegistry,
        engine: PermissionEngine,
        classifier: BashClassifier,
        local_rules_file: Path,
        set_rules: Any,
    ) -> None:
        """ルールファイルの読み取りは許可されることを確認する."""
        set_rules("local", deny=["Bash(curl:*)"])
        dispatcher = _dispatcher(registry, engine, classifier)
        call = _call("read_file", path=".guarded-agent/permissions.local.json")

        assert await dispatcher.authorize(call) is None


class TestSafeMode:
    """セーフモードの判定."""

    def test_available_specs(
        self, registry: ToolRegistry, engine: PermissionEngine, classifier: BashClassifier
    ) -> None:
        """セーフモードでは読み取り専用ツールだけを提示することを確認する."""
        dispatcher = _dispatcher(registry, engine, classifier)

        names = {s.name for s in dispatcher.available_specs(safe_mode=True)}

        assert names == {"read_file", "list_directory", "search_code", "fetch_image"}
        assert len(dispatcher.available_specs(safe_mode=False)) == len(registry.names())

    @pytest.mark.asyncio
    async def test_mutating_tool_denied(
        self, registry: ToolRegistry, engine: PermissionEngine, classifier: BashClassifier
    ) -> None:
        """セーフモードでは変更系ツールが拒否されることを確認する."""
        dispatcher = _dispatcher(registry, engine, classifier)

        result = await dispatcher.authorize(
            _call("execute_bash", command="ls"), safe_mode=True
        )

        assert result is not None
        assert result.status is ToolStatus.DENIED
        assert "not available in safe mode" in result.payload
        assert "read_file" in result.payload


class TestBashAuthorization:
    """execute_bash の判定."""

    @pytest.mark.asyncio
    async def test_allowed_runs_without_asking(
        self, registry: ToolRegistry, engine: PermissionEngine, classifier: BashClassifier
    ) -> None:
        """許可リストのコマンドは確認なしで実行されることを確認する."""
        confirmation = ScriptedConfirmation()
        dispatcher = _dispatcher(registry, engine, classifier, confirmation)
        call = _call("execute_bash", command="echo hi")

        assert await dispatcher.authorize(call) is None
        result = await dispatcher.execute(call)

        assert confirmation.requests == []
        assert result.status is ToolStatus.OK
        assert result.payload == "STDOUT:\nhi\n"

    @pytest.mark.asyncio
    async def test_failed_command_is_error(
        self, registry: ToolRegistry, engine: PermissionEngine, classifier: BashClassifier
    ) -> None:
        """終了コードが0以外ならエラー結果になることを確認する."""
        dispatcher = _dispatcher(registry, engine, classifier)

        result = await dispatcher.execute(_call("execute_bash", command="false"))

        assert result.status is ToolStatus.ERROR
        assert "exit code 1" in result.payload

    @pytest.mark.asyncio
    async def test_forbidden_never_asks(
        self, registry: ToolRegistry, engine: PermissionEngine, classifier: BashClassifier
    ) -> None:
        """禁止コマンドは確認せずに拒否することを確認する."""
        confirmation = ScriptedConfirmation()
        dispatcher = _dispatcher(registry, engine, classifier, confirmation)

        result = await dispatcher.authorize(_call("execute_bash", command="rm -rf /tmp"))

        assert result is not None
        assert result.status is ToolStatus.DENIED
        assert confirmation.requests == []

    @pytest.mark.asyncio
    async def test_remember_persists_exact_command(
        self,
        registry: ToolRegistry,
        engine: PermissionEngine,
        classifier: BashClassifier,
        rule_store: RuleStore,
    ) -> None:
        """「記憶する」を選ぶとコマンドが Allow ルールとして保存されることを確認する."""
        confirmation = ScriptedConfirmation(_response(ConfirmationChoice.REMEMBER))
        dispatcher = _dispatcher(registry, engine, classifier, confirmation)
        call = _call("execute_bash", command="foo-tool --flag")

        assert await dispatcher.authorize(call) is None
        request = confirmation.requests[0]
        assert request.subject == "foo-tool --flag"
        assert request.suggested_pattern == "foo-tool:*"
        assert not request.destructive

        rules = [(r.pattern, r.decision) for r in rule_store.rules_for(RuleKind.BASH)]
        assert rules == [("foo-tool --flag", Decision.ALLOW)]

        # 2回目は確認なしで許可される
        assert await dispatcher.authorize(call) is None
        assert len(confirmation.requests) == 1

    @pytest.mark.asyncio
    async def test_remember_pattern(
        self,
        registry: ToolRegistry,
        engine: PermissionEngine,
        classifier: BashClassifier,
        rule_store: RuleStore,
    ) -> None:
        """パターンで記憶するとコマンド名のワイルドカードが保存されることを確認する."""
        confirmation = ScriptedConfirmation(
            _response(ConfirmationChoice.REMEMBER, remember_pattern=True)
        )
        dispatcher = _dispatcher(registry, engine, classifier, confirmation)

        await dispatcher.authorize(_call("execute_bash", command="foo-tool --flag"))

        assert [r.pattern for r in rule_store.rules_for(RuleKind.BASH)] == ["foo-tool:*"]
        assert await dispatcher.authorize(
            _call("execute_bash", command="foo-tool other")
        ) is None

    @pytest.mark.asyncio
    async def test_deny_forever(
        self,
        registry: ToolRegistry,
        engine: PermissionEngine,
        classifier: BashClassifier,
        rule_store: RuleStore,
    ) -> None:
        """「常に拒否」を選ぶと Deny ルールが保存されることを確認する."""
        confirmation = ScriptedConfirmation(_response(ConfirmationChoice.DENY_FOREVER))
        dispatcher = _dispatcher(registry, engine, classifier, confirmation)
        call = _call("execute_bash", command="foo-tool --flag")

        result = await dispatcher.authorize(call)

        assert result is not None
        assert result.status is ToolStatus.DENIED
        assert "rejected by the user" in result.payload
        assert [r.decision for r in rule_store.rules_for(RuleKind.BASH)] == [Decision.DENY]

        # 2回目は確認なしで拒否される
        again = await dispatcher.authorize(call)
        assert again is not None
        assert again.status is ToolStatus.DENIED
        assert len(confirmation.requests) == 1

    @pytest.mark.asyncio
    async def test_deny_once_saves_nothing(
        self,
        registry: ToolRegistry,
        engine: PermissionEngine,
        classifier: BashClassifier,
        rule_store: RuleStore,
    ) -> None:
        """1回だけ拒否した場合はルールを保存しないことを確認する."""
        confirmation = ScriptedConfirmation(_response(ConfirmationChoice.DENY_ONCE))
        dispatcher = _dispatcher(registry, engine, classifier, confirmation)

        result = await dispatcher.authorize(_call("execute_bash", command="foo-tool"))

        assert result is not None
        assert result.status is ToolStatus.DENIED
        assert rule_store.rules == ()

    @pytest.mark.asyncio
    async def test_remember_write_failure_becomes_error(
        self,
        registry: ToolRegistry,
        engine: PermissionEngine,
        classifier: BashClassifier,
        rule_store: RuleStore,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """ルールの保存に失敗した場合は例外ではなくエラー結果になることを確認する."""

        def fail(*args: Any) -> None:
            msg = "disk full"
            raise OSError(msg)

        monkeypatch.setattr(rule_store, "remember", fail)
        confirmation = ScriptedConfirmation(_response(ConfirmationChoice.REMEMBER))
        dispatcher = _dispatcher(registry, engine, classifier, confirmation)

        result = await dispatcher.authorize(_call("execute_bash", command="foo-tool"))

        assert result is not None
        assert result.status is ToolStatus.ERROR
        assert "Could not save permission rule" in result.payload
        assert "disk full" in result.payload

    @pytest.mark.asyncio
    async def test_confirmation_timeout_denies(
        self, registry: ToolRegistry, engine: PermissionEngine, classifier: BashClassifier
    ) -> None:
        """確認がタイムアウトすると拒否されることを確認する."""
        dispatcher = _dispatcher(
            registry, engine, classifier, HangingConfirmation(), confirmation_timeout=0.05
        )

        result = await dispatcher.authorize(
            _call("execute_bash", command="foo-tool"), token=CancellationToken()
        )

        assert result is not None
        assert result.status is ToolStatus.DENIED

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_for_confirmation(
        self, registry: ToolRegistry, engine: PermissionEngine, classifier: BashClassifier
    ) -> None:
        """確認待ちの間にキャンセルされると中断することを確認する."""
        confirmation = HangingConfirmation()
        dispatcher = _dispatcher(registry, engine, classifier, confirmation)
        token = CancellationToken()

        async def trigger() -> None:
            await confirmation.asked.wait()
            token.cancel("user interrupt")

        with pytest.raises(OperationCancelledError, match="user interrupt"):
            await asyncio.gather(
                dispatcher.authorize(_call("execute_bash", command="foo-tool"), token=token),
                trigger(),
            )

    @pytest.mark.asyncio
    async def test_malformed_command(
        self, registry: ToolRegistry, engine: PermissionEngine, classifier: BashClassifier
    ) -> None:
        """command が文字列でない場合はエラー結果になることを確認する."""
        dispatcher = _dispatcher(registry, engine, classifier)

        result = await dispatcher.authorize(_call("execute_bash", command=["ls"]))

        assert result is not None
        assert result.status is ToolStatus.ERROR


class TestDestructiveConfirmation:
    """削除系ツールの確認."""

    @pytest.mark.asyncio
    async def test_delete_approved(
        self,
        registry: ToolRegistry,
        engine: PermissionEngine,
        classifier: BashClassifier,
        workspace: Path,
    ) -> None:
        """承認されると削除されることを確認する."""
        (workspace / "old.txt").write_text("x", encoding="utf-8")
        confirmation = ScriptedConfirmation(_response(ConfirmationChoice.ALLOW_ONCE))
        dispatcher = _dispatcher(registry, engine, classifier, confirmation)
        call = _call("delete_file", path="old.txt")

        assert await dispatcher.authorize(call) is None
        result = await dispatcher.execute(call)

        assert confirmation.requests[0].destructive
        assert confirmation.requests[0].subject == "old.txt"
        assert result.status is ToolStatus.OK
        assert not (workspace / "old.txt").exists()

    @pytest.mark.asyncio
    async def test_delete_refused(
        self,
        registry: ToolRegistry,
        engine: PermissionEngine,
        classifier: BashClassifier,
        workspace: Path,
    ) -> None:
        """拒否されると削除しないことを確認する."""
        (workspace / "keep").mkdir()
        confirmation = ScriptedConfirmation(_response(ConfirmationChoice.DENY_ONCE))
        dispatcher = _dispatcher(registry, engine, classifier, confirmation)

        result = await dispatcher.authorize(_call("delete_directory", path="keep"))

        assert result is not None
        assert "Deletion cancelled by user" in result.payload
        assert (workspace / "keep").is_dir()

    @pytest.mark.asyncio
    async def test_delete_outside_denied_without_asking(
        self, registry: ToolRegistry, engine: PermissionEngine, classifier: BashClassifier
    ) -> None:
        """ワークスペース外の削除は確認せずに拒否することを確認する."""
        confirmation = ScriptedConfirmation()
        dispatcher = _dispatcher(registry, engine, classifier, confirmation)

        result = await dispatcher.authorize(_call("delete_file", path="../outside/a.txt"))

        assert result is not None
        assert result.status is ToolStatus.DENIED
        assert confirmation.requests == []


class TestExecution:
    """execute / execute_batch のテスト."""

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_error(
        self, engine: PermissionEngine, classifier: BashClassifier
    ) -> None:
        """ツールの例外はエラー結果に変換されることを確認する."""
        registry = ToolRegistry()

        async def boom(arguments: dict[str, Any], token: Any) -> ToolOutcome:
            msg = "disk on fire"
            raise RuntimeError(msg)

        registry.register(ToolSpec(name="boom", description="fails"), boom)
        dispatcher = _dispatcher(registry, engine, classifier)

        result = await dispatcher.execute(_call("boom"))

        assert result.status is ToolStatus.ERROR
        assert result.payload == "Tool 'boom' failed: disk on fire"

    @pytest.mark.asyncio
    async def test_permission_error_from_handler(
        self, engine: PermissionEngine, classifier: BashClassifier
    ) -> None:
        """ツール内のパーミッション拒否は Denied になることを確認する."""
        registry = ToolRegistry()

        async def guarded(arguments: dict[str, Any], token: Any) -> ToolOutcome:
            raise PermissionDeniedError("not here", "try elsewhere")

        registry.register(ToolSpec(name="guarded", description="denies"), guarded)
        dispatcher = _dispatcher(registry, engine, classifier)

        result = await dispatcher.execute(_call("guarded"))

        assert result.status is ToolStatus.DENIED
        assert result.payload == "Permission denied: not here\nHint: try elsewhere"

    @pytest.mark.asyncio
    async def test_malformed_input_from_handler(
        self, engine: PermissionEngine, classifier: BashClassifier
    ) -> None:
        """ツール内の引数エラーはエラー結果になることを確認する."""
        registry = ToolRegistry()

        async def strict(arguments: dict[str, Any], token: Any) -> ToolOutcome:
            msg = "Missing required argument 'x'"
            raise MalformedInputError(msg)

        registry.register(ToolSpec(name="strict", description="validates"), strict)
        dispatcher = _dispatcher(registry, engine, classifier)

        result = await dispatcher.execute(_call("strict"))

        assert result.payload == "Invalid arguments: Missing required argument 'x'"

    @pytest.mark.asyncio
    async def test_output_truncated(
        self, engine: PermissionEngine, classifier: BashClassifier
    ) -> None:
        """上限を超える出力は切り詰められることを確認する."""
        registry = ToolRegistry()

        async def verbose(arguments: dict[str, Any], token: Any) -> ToolOutcome:
            return ToolOutcome("x" * 100)

        registry.register(ToolSpec(name="verbose", description="talks"), verbose)
        dispatcher = _dispatcher(registry, engine, classifier, max_output_bytes=10)

        result = await dispatcher.execute(_call("verbose"))

        assert result.payload.startswith("x" * 10 + "\n")
        assert "showing first 10 of 100 bytes" in result.payload

    @pytest.mark.asyncio
    async def test_self_limited_tool_not_truncated(
        self, registry: ToolRegistry, engine: PermissionEngine, classifier: BashClassifier
    ) -> None:
        """独自に上限を持つツールの出力は切り詰めないことを確認する."""
        dispatcher = _dispatcher(registry, engine, classifier, max_output_bytes=5)

        result = await dispatcher.execute(_call("execute_bash", command="echo hello world"))

        assert "hello world" in result.payload

    @pytest.mark.asyncio
    async def test_batch_preserves_call_order(
        self, engine: PermissionEngine, classifier: BashClassifier
    ) -> None:
        """並行実行しても結果は呼び出し順に並ぶことを確認する."""
        registry = ToolRegistry()
        finished: list[str] = []

        async def sleepy(arguments: dict[str, Any], token: Any) -> ToolOutcome:
            await asyncio.sleep(arguments["delay"])
            finished.append(arguments["label"])
            return ToolOutcome(arguments["label"])

        registry.register(ToolSpec(name="sleepy", description="waits"), sleepy)
        dispatcher = _dispatcher(registry, engine, classifier, max_parallel=3)
        calls = [
            _call("sleepy", "c1", delay=0.06, label="first"),
            _call("sleepy", "c2", delay=0.01, label="second"),
            _call("sleepy", "c3", delay=0.03, label="third"),
        ]

        results = await dispatcher.execute_batch(calls, CancellationToken())

        assert finished == ["second", "third", "first"]
        assert [r.call_id for r in results] == ["c1", "c2", "c3"]
        assert [r.payload for r in results] == ["first", "second", "third"]

    @pytest.mark.asyncio
    async def test_batch_interrupted_keeps_completed(
        self, engine: PermissionEngine, classifier: BashClassifier
    ) -> None:
        """バッチ中断時に完了済みの結果を保持することを確認する."""
        registry = ToolRegistry()
        fast_done = asyncio.Event()

        async def fast(arguments: dict[str, Any], token: Any) -> ToolOutcome:
            fast_done.set()
            return ToolOutcome("fast")

        async def slow(arguments: dict[str, Any], token: Any) -> ToolOutcome:
            await asyncio.sleep(60)
            return ToolOutcome("slow")

        registry.register(ToolSpec(name="fast", description="fast"), fast)
        registry.register(ToolSpec(name="slow", description="slow"), slow)
        dispatcher = _dispatcher(registry, engine, classifier, max_parallel=2)
        token = CancellationToken()

        async def trigger() -> None:
            await fast_done.wait()
            await asyncio.sleep(0.01)
            token.cancel("user interrupt")

        with pytest.raises(BatchInterruptedError) as exc_info:
            await asyncio.gather(
                dispatcher.execute_batch([_call("fast", "a"), _call("slow", "b")], token),
                trigger(),
            )

        assert list(exc_info.value.completed) == ["a"]
        assert exc_info.value.completed["a"].payload == "fast"


class TestProviders:
    """外部ツールプロバイダーのテスト."""

    @pytest.mark.asyncio
    async def test_namespaced_provider_with_retry(
        self, registry: ToolRegistry, engine: PermissionEngine, classifier: BashClassifier
    ) -> None:
        """名前空間付きで登録され、一時的な失敗はリトライされることを確認する."""
        provider = FlakySearchProvider()
        names = registry.register_provider(
            "web",
            provider,
            retry_policy=RetryPolicy(max_attempts=3, base_delay=0.0, jitter=0.0),
        )
        dispatcher = _dispatcher(registry, engine, classifier)
        call = _call("web__web_search", query="pathspec")

        assert names == ["web__web_search"]
        assert await dispatcher.authorize(call, safe_mode=True) is None
        result = await dispatcher.execute(call, CancellationToken())

        assert result.status is ToolStatus.OK
        assert result.payload == "results for pathspec"
        assert [name for name, _ in provider.calls] == ["web_search", "web_search"]

    def test_duplicate_name_rejected(self, registry: ToolRegistry) -> None:
        """名前空間なしで同名のツールは登録できないことを確認する."""
        registry.register_provider(None, FlakySearchProvider())
        with pytest.raises(ValueError, match="already registered"):
            registry.register_provider(None, FlakySearchProvider())


class TestFetchImage:
    """fetch_image のテスト."""

    @pytest.mark.asyncio
    async def test_local_image(
        self,
        registry: ToolRegistry,
        engine: PermissionEngine,
        classifier: BashClassifier,
        workspace: Path,
    ) -> None:
        """ワークスペース内の画像が base64 の画像ブロックとして結果に添付されることを確認する."""
        data = b"\x89PNG\r\n\x1a\n" + b"\x00" * 8
        (workspace / "pic.PNG").write_bytes(data)
        dispatcher = _dispatcher(registry, engine, classifier)

        result = await dispatcher.execute(_call("fetch_image", source="pic.PNG"))

        assert result.status is ToolStatus.OK
        assert result.payload == f"Image loaded: pic.PNG (image/png, {len(data)} bytes)"
        [image] = result.images
        assert image.media_type == "image/png"
        assert base64.b64decode(image.data or "") == data
        assert image.url is None

    @pytest.mark.asyncio
    async def test_image_survives_persistence(
        self,
        registry: ToolRegistry,
        engine: PermissionEngine,
        classifier: BashClassifier,
        workspace: Path,
    ) -> None:
        """画像ブロックが会話ターンの保存形式に含まれることを確認する."""
        (workspace / "pic.gif").write_bytes(b"GIF89a")
        dispatcher = _dispatcher(registry, engine, classifier)
        result = await dispatcher.execute(_call("fetch_image", source="pic.gif"))

        turn = ConversationTurn(role=Role.TOOL, content_blocks=[result])
        restored = ConversationTurn.model_validate_json(turn.model_dump_json())

        assert restored.tool_results[0].images == result.images

    @pytest.mark.asyncio
    async def test_url(
        self, registry: ToolRegistry, engine: PermissionEngine, classifier: BashClassifier
    ) -> None:
        """URL はそのまま添付されることを確認する."""
        dispatcher = _dispatcher(registry, engine, classifier)

        result = await dispatcher.execute(
            _call("fetch_image", source="https://example.com/cat.jpg")
        )

        assert result.status is ToolStatus.OK
        assert result.payload == "Image URL attached: https://example.com/cat.jpg"
        assert result.images == [ImageBlock(url="https://example.com/cat.jpg")]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("source", "status", "fragment"),
        [
            ("ftp://example.com/a.png", ToolStatus.ERROR, "Invalid image URL"),
            ("notes.bmp", ToolStatus.ERROR, "Unsupported image format"),
            ("../outside/pic.png", ToolStatus.DENIED, "Permission denied"),
        ],
    )
    async def test_rejected_sources(
        self,
        registry: ToolRegistry,
        engine: PermissionEngine,
        classifier: BashClassifier,
        workspace: Path,
        outside: Path,
        source: str,
        status: ToolStatus,
        fragment: str,
    ) -> None:
        """不正な画像指定はエラーまたは拒否になることを確認する."""
        (workspace / "notes.bmp").write_bytes(b"BM")
        (outside / "pic.png").write_bytes(b"\x89PNG")
        dispatcher = _dispatcher(registry, engine, classifier)

        result = await dispatcher.execute(_call("fetch_image", source=source))

        assert result.status is status
        assert fragment in result.payload
