"""Permission-gated dispatch of model tool calls."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import TYPE_CHECKING, Protocol

from guarded_agent.application.bash import suggest_rule_pattern
from guarded_agent.application.errors import (
    FatalError,
    MalformedInputError,
    OperationCancelledError,
    PermissionDeniedError,
)
from guarded_agent.application.models import (
    BashTier,
    ConfirmationChoice,
    ConfirmationRequest,
    ConfirmationResponse,
    Decision,
    RuleKind,
    ToolCall,
    ToolResult,
    ToolSpec,
)
from guarded_agent.application.resilience import (
    DEFAULT_JOIN_TIMEOUT,
    CancellationToken,
    run_cancellable,
)
from guarded_agent.infrastructure.logging import get_logger
from guarded_agent.infrastructure.shell import truncation_notice

if TYPE_CHECKING:
    from guarded_agent.application.bash import BashClassifier
    from guarded_agent.application.permission import PermissionEngine
    from guarded_agent.application.tools import RegisteredTool, ToolRegistry

logger = get_logger(__name__)


class ConfirmationProvider(Protocol):
    """対話的な確認を行うUI."""

    async def ask(self, request: ConfirmationRequest) -> ConfirmationResponse:
        """確認を求め、ユーザーの選択を返す."""
        ...


class BatchInterruptedError(OperationCancelledError):
    """ツールのバッチ実行中にキャンセルされた場合の例外."""

    def __init__(self, reason: str, completed: dict[str, ToolResult]) -> None:
        """
        Initialize BatchInterruptedError.

        Args:
            reason: キャンセル理由
            completed: 完了済みの呼び出しID -> 結果
        """
        super().__init__(reason)
        self.completed = completed


def _denial_text(reason: str, hint: str | None) -> str:
    return f"Permission denied: {PermissionDeniedError(reason, hint)}"


class ToolDispatcher:
    """ツール呼び出しをパーミッション判定してから実行する."""

    def __init__(
        self,
        registry: ToolRegistry,
        engine: PermissionEngine,
        classifier: BashClassifier,
        confirmation: ConfirmationProvider,
        *,
        max_output_bytes: int = 1024 * 1024,
        max_parallel: int = 1,
        confirmation_timeout: float | None = None,
        join_timeout: float = DEFAULT_JOIN_TIMEOUT,
    ) -> None:
        """
        Initialize ToolDispatcher.

        Args:
            registry: ツールレジストリ
            engine: パーミッションエンジン
            classifier: Bashコマンド分類器
            confirmation: 確認UI
            max_output_bytes: 自前で上限を持たないツールの出力上限
            max_parallel: バッチ内の同時実行数
            confirmation_timeout: 確認待ちのタイムアウト秒数（超過時は拒否）
            join_timeout: 中断したタスクの終了待ち秒数
        """
        self._registry = registry
        self._engine = engine
        self._classifier = classifier
        self._confirmation = confirmation
        self._max_output_bytes = max_output_bytes
        self._max_parallel = max_parallel
        self._confirmation_timeout = confirmation_timeout
        self._join_timeout = join_timeout

    def available_specs(self, *, safe_mode: bool) -> list[ToolSpec]:
        """モデルに提示するツール定義（セーフモードでは読み取り専用のみ）."""
        return self._registry.specs(read_only=safe_mode)

    async def authorize(
        self,
        call: ToolCall,
        *,
        safe_mode: bool = False,
        token: CancellationToken | None = None,
    ) -> ToolResult | None:
        """
        ツール呼び出しを実行してよいか判定する.

        Ask の場合は確認UIの応答を待つ（この呼び出しだけがブロックされる）.

        Args:
            call: ツール呼び出し
            safe_mode: セーフモードかどうか
            token: キャンセルトークン

        Returns:
            実行してよい場合は None、そうでない場合は代わりに使う ToolResult

        Raises:
            OperationCancelledError: 確認待ちの間にキャンセルされた場合
        """
        tool = self._registry.get(call.name)
        if tool is None:
            logger.warning("Unknown tool requested", tool=call.name, call_id=call.id)
            return ToolResult.error(call.id, f"Unknown tool '{call.name}'")

        if safe_mode and not tool.spec.read_only:
            available = ", ".join(s.name for s in self.available_specs(safe_mode=True))
            return self._deny(
                call,
                f"Tool '{call.name}' is not available in safe mode",
                f"Only read-only tools are available: {available}",
            )

        try:
            if tool.access.command_argument is not None:
                return await self._authorize_command(call, tool, token)
            denial = self._authorize_paths(call, tool)
            if denial is not None:
                return denial
            if tool.access.destructive:
                return await self._confirm_destructive(call, tool, token)
        except MalformedInputError as e:
            return ToolResult.error(call.id, f"Invalid arguments: {e}")
        return None

    def _authorize_paths(self, call: ToolCall, tool: RegisteredTool) -> ToolResult | None:
        access = tool.access
        requested: list[tuple[str, object]] = [
            (name, call.arguments.get(name)) for name in access.path_arguments
        ]
        requested.extend(
            (name, call.arguments.get(name, default))
            for name, default in access.optional_path_defaults
        )
        for name, value in requested:
            if not isinstance(value, str) or not value:
                msg = f"Argument '{name}' must be a non-empty string"
                raise MalformedInputError(msg)
            decision = self._engine.evaluate(value)
            if not decision.allowed:
                return self._deny(call, decision.reason, decision.hint)
            if name in access.write_arguments and not decision.inside_workspace:
                return self._deny(
                    call,
                    f"'{call.name}' can only modify paths inside the workspace; "
                    f"'{value}' resolves to '{decision.canonical_path}'",
                    None,
                )
            if (
                name in access.write_arguments
                and decision.canonical_path is not None
                and self._engine.is_protected(decision.canonical_path)
            ):
                return self._deny(
                    call,
                    f"'{value}' is part of the agent's own state (permission rules "
                    "and sessions) and cannot be modified by tools",
                    "Permission rules change only when you choose to remember a "
                    "decision at a confirmation prompt",
                )
        return None

    async def _authorize_command(
        self, call: ToolCall, tool: RegisteredTool, token: CancellationToken | None
    ) -> ToolResult | None:
        name = tool.access.command_argument or "command"
        command = call.arguments.get(name)
        if not isinstance(command, str):
            msg = f"Argument '{name}' must be a string"
            raise MalformedInputError(msg)

        classification = self._classifier.classify(command)
        if classification.tier is BashTier.ALLOWED:
            return None
        if classification.tier is BashTier.FORBIDDEN:
            return self._deny(call, classification.reason, classification.hint)

        response = await self._ask(
            ConfirmationRequest(
                call_id=call.id,
                tool_name=call.name,
                subject=classification.raw_command,
                reason=classification.reason,
                suggested_pattern=suggest_rule_pattern(classification, as_pattern=True),
            ),
            token,
        )
        rule_store = self._engine.rule_store
        try:
            if response.choice is ConfirmationChoice.REMEMBER:
                pattern = suggest_rule_pattern(
                    classification, as_pattern=response.remember_pattern
                )
                rule_store.remember(RuleKind.BASH, pattern, Decision.ALLOW)
            elif response.choice is ConfirmationChoice.DENY_FOREVER:
                rule_store.remember(
                    RuleKind.BASH, classification.raw_command, Decision.DENY
                )
        except OSError as e:
            # 保存できなかった判断では実行しない
            logger.warning(
                "Could not save permission rule", call_id=call.id, error=str(e)
            )
            return ToolResult.error(
                call.id, f"Could not save permission rule, command not run: {e}"
            )

        if response.approved:
            logger.info(
                "Command approved by user",
                call_id=call.id,
                command=classification.raw_command,
                choice=response.choice.value,
            )
            return None
        return self._deny(call, "Command was rejected by the user", None)

    async def _confirm_destructive(
        self, call: ToolCall, tool: RegisteredTool, token: CancellationToken | None
    ) -> ToolResult | None:
        subject = ", ".join(
            str(call.arguments.get(name)) for name in tool.access.path_arguments
        )
        response = await self._ask(
            ConfirmationRequest(
                call_id=call.id,
                tool_name=call.name,
                subject=subject,
                reason=f"'{call.name}' permanently deletes data",
                destructive=True,
            ),
            token,
        )
        if response.approved:
            return None
        return self._deny(call, "Deletion cancelled by user", None)

    async def _ask(
        self, request: ConfirmationRequest, token: CancellationToken | None
    ) -> ConfirmationResponse:
        logger.info(
            "Confirmation requested",
            call_id=request.call_id,
            tool=request.tool_name,
            subject=request.subject,
        )
        pending = self._confirmation.ask(request)
        if self._confirmation_timeout is not None:
            pending = asyncio.wait_for(pending, timeout=self._confirmation_timeout)
        try:
            return await run_cancellable(pending, token, join_timeout=self._join_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Confirmation timed out, denying",
                call_id=request.call_id,
                timeout=self._confirmation_timeout,
            )
            return ConfirmationResponse(choice=ConfirmationChoice.DENY_ONCE)

    def _deny(self, call: ToolCall, reason: str, hint: str | None) -> ToolResult:
        logger.warning(
            "Tool call denied", tool=call.name, call_id=call.id, reason=reason
        )
        return ToolResult.denied(call.id, _denial_text(reason, hint))

    async def execute(
        self, call: ToolCall, token: CancellationToken | None = None
    ) -> ToolResult:
        """
        許可済みのツール呼び出しを実行する.

        実行時のエラーはすべて is_error の ToolResult に変換する.

        Raises:
            OperationCancelledError: キャンセルされた場合
            FatalError: 中断したタスクが時間内に終了しなかった場合
        """
        logger.info("Executing tool", tool=call.name, call_id=call.id)
        try:
            outcome = await self._registry.execute(call.name, call.arguments, token)
        except (OperationCancelledError, FatalError):
            raise
        except PermissionDeniedError as e:
            return self._deny(call, e.reason, e.hint)
        except MalformedInputError as e:
            return ToolResult.error(call.id, f"Invalid arguments: {e}")
        except Exception as e:
            logger.exception("Tool execution failed", tool=call.name, call_id=call.id)
            return ToolResult.error(call.id, f"Tool '{call.name}' failed: {e}")

        payload = outcome.payload
        tool = self._registry.get(call.name)
        if tool is not None and not tool.access.self_limited:
            payload = self._truncate(payload)
        if outcome.is_error:
            return ToolResult.error(call.id, payload)
        return ToolResult.ok(call.id, payload, list(outcome.images))

    def _truncate(self, payload: str) -> str:
        encoded = payload.encode("utf-8")
        if len(encoded) <= self._max_output_bytes:
            return payload
        shown = encoded[: self._max_output_bytes].decode("utf-8", errors="ignore")
        return f"{shown}\n{truncation_notice(self._max_output_bytes, len(encoded))}"

    async def execute_batch(
        self, calls: Sequence[ToolCall], token: CancellationToken | None = None
    ) -> list[ToolResult]:
        """
        許可済みの呼び出しを実行し、呼び出し順に結果を返す.

        max_parallel 件まで並行実行するが、結果の順序は完了順に依存しない.

        Raises:
            BatchInterruptedError: キャンセルされた場合（完了済みの結果を保持する）
            FatalError: 中断したタスクが時間内に終了しなかった場合
        """
        results: list[ToolResult | None] = [None] * len(calls)
        semaphore = asyncio.Semaphore(self._max_parallel)

        async def run_one(index: int, call: ToolCall) -> None:
            async with semaphore:
                results[index] = await self.execute(call, token)

        try:
            await run_cancellable(
                asyncio.gather(*(run_one(i, c) for i, c in enumerate(calls))),
                token,
                join_timeout=self._join_timeout,
            )
        except OperationCancelledError as e:
            completed = {
                calls[i].id: r for i, r in enumerate(results) if r is not None
            }
            logger.info(
                "Tool batch interrupted",
                completed=len(completed),
                total=len(calls),
            )
            raise BatchInterruptedError(e.reason, completed) from e
        return [r for r in results if r is not None]
