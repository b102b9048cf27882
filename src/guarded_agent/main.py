"""Runtime wiring and the process entry point."""

from __future__ import annotations

import asyncio
import signal
import sys
from collections.abc import Mapping
from typing import TYPE_CHECKING

from guarded_agent.application.bash import BashClassifier
from guarded_agent.application.dispatcher import ConfirmationProvider, ToolDispatcher
from guarded_agent.application.orchestrator import LoopOutcome, LoopState, Orchestrator
from guarded_agent.application.permission import PermissionEngine
from guarded_agent.application.resilience import CancellationToken, RetryPolicy
from guarded_agent.application.rules import RuleStore
from guarded_agent.application.session import (
    SessionState,
    SessionStore,
    TokenCounter,
    estimate_tokens,
)
from guarded_agent.application.tools import LocalTools, ToolProvider, ToolRegistry
from guarded_agent.infrastructure.config import Config, get_config
from guarded_agent.infrastructure.filesystem import WorkspaceFileSystem
from guarded_agent.infrastructure.logging import configure_logging, get_logger
from guarded_agent.infrastructure.shell import ShellRunner
from guarded_agent.presentation.confirmation import ConsoleConfirmationProvider

if TYPE_CHECKING:
    from guarded_agent.application.models import ModelOptions
    from guarded_agent.application.orchestrator import ModelClient

logger = get_logger(__name__)


def build_runtime(
    config: Config,
    model_client: ModelClient,
    confirmation: ConfirmationProvider | None = None,
    *,
    providers: Mapping[str | None, ToolProvider] | None = None,
    session_id: str | None = None,
    system_prompt: str | None = None,
    options: ModelOptions | None = None,
    token_counter: TokenCounter = estimate_tokens,
) -> Orchestrator:
    """
    設定から実行に必要なコンポーネントを組み立てる.

    Args:
        config: 設定
        model_client: モデルクライアント
        confirmation: 確認UI（省略時はコンソール）
        providers: 名前空間 -> 外部ツールプロバイダー（None は名前空間なし）
        session_id: 再開するセッションID（省略時は新規作成）
        system_prompt: 新規セッションのシステムプロンプト
        options: モデル呼び出しのオプション
        token_counter: トークン数の見積もり関数

    Returns:
        組み立て済みのループ

    Raises:
        FileNotFoundError: ワークスペースが存在しない場合
        MalformedRuleError: ルールファイルが不正な場合
        SessionNotFoundError: 指定したセッションが存在しない場合
        SessionCorruptedError: 指定したセッションが壊れている場合
    """
    rule_store = RuleStore.from_config(config)
    engine = PermissionEngine(config.workspace_root, rule_store)
    root = engine.workspace_root

    registry = ToolRegistry()
    LocalTools(
        engine,
        WorkspaceFileSystem(root),
        ShellRunner(root, config.max_bash_output_bytes, config.command_timeout),
        config.max_file_read_bytes,
    ).register_into(registry)
    retry_policy = RetryPolicy.from_config(config)
    for namespace, provider in (providers or {}).items():
        registry.register_provider(
            namespace, provider, retry_policy=retry_policy, join_timeout=config.join_timeout
        )

    dispatcher = ToolDispatcher(
        registry,
        engine,
        BashClassifier(engine),
        confirmation or ConsoleConfirmationProvider(),
        max_output_bytes=config.max_tool_output_bytes,
        max_parallel=config.max_parallel_tools,
        confirmation_timeout=config.confirmation_timeout,
        join_timeout=config.join_timeout,
    )

    store = SessionStore.from_config(config)
    if session_id is None:
        session = SessionState.create(
            store,
            system_prompt=system_prompt,
            safe_mode=config.safe_mode,
            token_counter=token_counter,
        )
    else:
        session = SessionState.restore(store, session_id, token_counter=token_counter)
        if session.safe_mode != config.safe_mode:
            session.set_safe_mode(
                config.safe_mode,
                (s.name for s in dispatcher.available_specs(safe_mode=config.safe_mode)),
            )

    logger.info(
        "Runtime built",
        workspace=str(root),
        session_id=session.session.id,
        tools=registry.names(),
        safe_mode=session.safe_mode,
    )
    return Orchestrator.from_config(config, model_client, dispatcher, session, options)


async def run(
    prompt: str,
    model_client: ModelClient,
    *,
    config: Config | None = None,
    confirmation: ConfirmationProvider | None = None,
    providers: Mapping[str | None, ToolProvider] | None = None,
    session_id: str | None = None,
    system_prompt: str | None = None,
    options: ModelOptions | None = None,
) -> LoopOutcome:
    """
    1件のリクエストを処理する.

    SIGINT / SIGTERM を受けるとキャンセルトークンを発火し、
    ループは中断状態を保存して終了する.

    Args:
        prompt: ユーザーの入力
        model_client: モデルクライアント
        config: 設定（省略時はグローバル設定）
        confirmation: 確認UI
        providers: 外部ツールプロバイダー
        session_id: 再開するセッションID
        system_prompt: 新規セッションのシステムプロンプト
        options: モデル呼び出しのオプション

    Returns:
        ループの結果
    """
    config = config or get_config()
    configure_logging(
        log_level=config.log_level,
        log_dir=config.log_dir,
        log_backup_count=config.log_backup_count,
    )

    orchestrator = build_runtime(
        config,
        model_client,
        confirmation,
        providers=providers,
        session_id=session_id,
        system_prompt=system_prompt,
        options=options,
    )
    token = CancellationToken()

    def signal_handler() -> None:
        if token.cancelled:
            return
        logger.info("Received interrupt signal, cancelling current request")
        token.cancel("Interrupted by signal")

    # Windows では loop.add_signal_handler が未実装のため signal.signal にフォールバック
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)
    except NotImplementedError:
        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(signal_handler))

    try:
        outcome = await orchestrator.run(prompt, token)
    finally:
        try:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
        except NotImplementedError:
            for sig in (signal.SIGINT, signal.SIGTERM):
                signal.signal(sig, signal.SIG_DFL)

    session_id = orchestrator.session.session.id
    if outcome.state is LoopState.FATAL_ERROR:
        print(
            f"Error: {outcome.error}\n"
            f"The session was saved and can be resumed with id {session_id}.",
            file=sys.stderr,
        )
    elif outcome.state is LoopState.INTERRUPTED:
        print(f"Interrupted. Resume with session id {session_id}.", file=sys.stderr)
    return outcome
