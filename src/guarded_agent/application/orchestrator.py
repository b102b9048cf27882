"""The model/tool control loop as an explicit state machine."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Protocol

from guarded_agent.application.dispatcher import BatchInterruptedError
from guarded_agent.application.errors import FatalError, OperationCancelledError
from guarded_agent.application.models import (
    ConversationTurn,
    ModelOptions,
    ModelResponse,
    Role,
    TextBlock,
    ToolCall,
    ToolResult,
    ToolSpec,
)
from guarded_agent.application.resilience import (
    DEFAULT_JOIN_TIMEOUT,
    CancellationToken,
    RetryPolicy,
    RetryState,
    call_with_retry,
)
from guarded_agent.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from guarded_agent.application.dispatcher import ToolDispatcher
    from guarded_agent.application.session import SessionState
    from guarded_agent.infrastructure.config import Config

logger = get_logger(__name__)

ITERATION_LIMIT_DISPLAY_TEXT = "[System: Maximum tool iterations reached]"


def iteration_limit_notice(limit: int) -> str:
    """反復上限に達したことをモデルに伝える本文."""
    return (
        "SYSTEM INTERRUPTION: You have reached the maximum number of tool "
        f"iterations ({limit}). This limit prevents infinite loops. Please provide "
        "a summary of what you've accomplished so far and suggest how the user "
        "should proceed."
    )


class LoopState(str, Enum):
    """ループの状態."""

    AWAITING_MODEL = "awaiting_model"
    DISPATCHING = "dispatching"
    PERMISSION_CHECK = "permission_check"
    EXECUTING = "executing"
    COLLECTING = "collecting"
    DONE = "done"
    INTERRUPTED = "interrupted"
    FATAL_ERROR = "fatal_error"


TERMINAL_STATES = frozenset({LoopState.DONE, LoopState.INTERRUPTED, LoopState.FATAL_ERROR})


class ModelClient(Protocol):
    """モデルプロバイダーのクライアント."""

    async def send(
        self,
        transcript: Sequence[ConversationTurn],
        tools: Sequence[ToolSpec],
        options: ModelOptions,
    ) -> ModelResponse:
        """会話履歴を送信し、応答を返す."""
        ...


@dataclass
class LoopOutcome:
    """1回のユーザー入力に対するループの結果."""

    state: LoopState
    iterations: int = 0
    error: BaseException | None = None
    final_text: str = ""


@dataclass
class _Round:
    """モデル応答1回分の処理中データ."""

    response: ModelResponse
    calls: list[ToolCall]
    allowed: list[ToolCall] = field(default_factory=list)
    results: dict[str, ToolResult] = field(default_factory=dict)
    committed: bool = False

    def assistant_turn(self) -> ConversationTurn:
        return ConversationTurn(
            role=Role.ASSISTANT, content_blocks=list(self.response.content_blocks)
        )

    def ordered_results(self) -> list[ToolResult]:
        """完了した結果を呼び出し順に返す."""
        return [self.results[c.id] for c in self.calls if c.id in self.results]

    def missing_ids(self) -> list[str]:
        return [c.id for c in self.calls if c.id not in self.results]


class Orchestrator:
    """モデルの応答をツール実行に変換し、結果をモデルに返すループ.

    AwaitingModel → Dispatching → PermissionCheck → Executing → Collecting →
    AwaitingModel を繰り返し、Done / Interrupted / FatalError で終了する.
    """

    def __init__(
        self,
        model_client: ModelClient,
        dispatcher: ToolDispatcher,
        session: SessionState,
        *,
        retry_policy: RetryPolicy | None = None,
        options: ModelOptions | None = None,
        max_tool_iterations: int = 200,
        max_context_tokens: int = 180_000,
        join_timeout: float = DEFAULT_JOIN_TIMEOUT,
    ) -> None:
        """
        Initialize Orchestrator.

        Args:
            model_client: モデルクライアント
            dispatcher: ツールディスパッチャー
            session: セッション状態
            retry_policy: モデル呼び出しのリトライ方針
            options: モデル呼び出しのオプション
            max_tool_iterations: ツール実行の往復回数の上限
            max_context_tokens: 会話履歴のトークン予算
            join_timeout: 中断したタスクの終了待ち秒数
        """
        self._client = model_client
        self._dispatcher = dispatcher
        self._session = session
        self._retry_policy = retry_policy or RetryPolicy()
        self._options = options or ModelOptions()
        self._max_tool_iterations = max_tool_iterations
        self._max_context_tokens = max_context_tokens
        self._join_timeout = join_timeout

    @classmethod
    def from_config(
        cls,
        config: Config,
        model_client: ModelClient,
        dispatcher: ToolDispatcher,
        session: SessionState,
        options: ModelOptions | None = None,
    ) -> Orchestrator:
        """設定からループを作成する."""
        return cls(
            model_client,
            dispatcher,
            session,
            retry_policy=RetryPolicy.from_config(config),
            options=options,
            max_tool_iterations=config.max_tool_iterations,
            max_context_tokens=config.max_context_tokens,
            join_timeout=config.join_timeout,
        )

    @property
    def session(self) -> SessionState:
        """セッション状態."""
        return self._session

    async def run(
        self, user_input: str, token: CancellationToken | None = None
    ) -> LoopOutcome:
        """
        ユーザー入力を1件処理する.

        前回が中断で終わっていた場合は、未実行の呼び出しに合成結果を
        追加してから入力を追加する.

        Args:
            user_input: ユーザーの入力
            token: キャンセルトークン

        Returns:
            終了状態と反復回数
        """
        token = token or CancellationToken()
        session_id = self._session.session.id
        self._session.resume_after_interrupt()
        self._session.append_turn(ConversationTurn.from_text(Role.USER, user_input))
        self._session.persist()

        outcome = LoopOutcome(state=LoopState.AWAITING_MODEL)
        current: _Round | None = None

        while outcome.state not in TERMINAL_STATES:
            state = outcome.state
            try:
                if state is LoopState.AWAITING_MODEL:
                    current = await self._await_model(token)
                    next_state = self._after_model(current, outcome)
                elif current is None:
                    msg = f"No model response to process in state {state.value}"
                    raise FatalError(msg)
                elif state is LoopState.DISPATCHING:
                    next_state = self._dispatch(current)
                elif state is LoopState.PERMISSION_CHECK:
                    await self._check_permissions(current, token)
                    next_state = LoopState.EXECUTING
                elif state is LoopState.EXECUTING:
                    await self._execute(current, token)
                    next_state = LoopState.COLLECTING
                else:
                    next_state = await self._collect(current, outcome, token)
            except OperationCancelledError as e:
                if state is LoopState.AWAITING_MODEL or (current and current.committed):
                    current = None
                elif isinstance(e, BatchInterruptedError) and current is not None:
                    current.results.update(e.completed)
                self._interrupt(current)
                outcome.error = e
                next_state = LoopState.INTERRUPTED
            except FatalError as e:
                logger.error(
                    "Loop failed", session_id=session_id, state=state.value, error=str(e)
                )
                outcome.error = e
                next_state = LoopState.FATAL_ERROR
            except Exception as e:
                logger.exception("Unexpected loop failure", session_id=session_id, state=state.value)
                outcome.error = e
                next_state = LoopState.FATAL_ERROR

            logger.debug(
                "Loop transition",
                session_id=session_id,
                from_state=state.value,
                to_state=next_state.value,
                iteration=outcome.iterations,
            )
            outcome.state = next_state

        logger.info(
            "Loop finished",
            session_id=session_id,
            state=outcome.state.value,
            iterations=outcome.iterations,
        )
        return outcome

    async def _request(
        self,
        token: CancellationToken,
        tools: Sequence[ToolSpec],
    ) -> ModelResponse:
        # 全試行で同じリクエストを送る
        snapshot = tuple(self._session.transcript)
        tool_specs = tuple(tools)

        def on_retry(state: RetryState, delay: float) -> None:
            logger.info(
                "Retrying model request",
                session_id=self._session.session.id,
                attempt=state.attempt,
                delay=round(delay, 3),
            )

        response = await call_with_retry(
            lambda: self._client.send(snapshot, tool_specs, self._options),
            self._retry_policy,
            token=token,
            join_timeout=self._join_timeout,
            on_retry=on_retry,
        )
        self._session.record_usage(response.usage)
        return response

    async def _await_model(self, token: CancellationToken) -> _Round:
        tools = self._dispatcher.available_specs(safe_mode=self._session.safe_mode)
        response = await self._request(token, tools)
        logger.info(
            "Model responded",
            session_id=self._session.session.id,
            tool_calls=len(response.tool_calls),
            stop_reason=response.stop_reason,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        return _Round(response=response, calls=response.tool_calls)

    def _after_model(self, current: _Round, outcome: LoopOutcome) -> LoopState:
        if current.calls:
            return LoopState.DISPATCHING
        self._session.append_turn(current.assistant_turn())
        self._session.persist()
        outcome.final_text = current.assistant_turn().text
        return LoopState.DONE

    def _dispatch(self, current: _Round) -> LoopState:
        seen: set[str] = set()
        for call in current.calls:
            if call.id in seen:
                msg = f"Model issued duplicate tool call id '{call.id}'"
                raise FatalError(msg)
            seen.add(call.id)
        return LoopState.PERMISSION_CHECK

    async def _check_permissions(self, current: _Round, token: CancellationToken) -> None:
        safe_mode = self._session.safe_mode
        for call in current.calls:
            token.raise_if_cancelled()
            denial = await self._dispatcher.authorize(call, safe_mode=safe_mode, token=token)
            if denial is None:
                current.allowed.append(call)
            else:
                current.results[call.id] = denial

    async def _execute(self, current: _Round, token: CancellationToken) -> None:
        if not current.allowed:
            return
        results = await self._dispatcher.execute_batch(current.allowed, token)
        for call, result in zip(current.allowed, results, strict=True):
            current.results[call.id] = result

    async def _collect(
        self, current: _Round, outcome: LoopOutcome, token: CancellationToken
    ) -> LoopState:
        results = current.ordered_results()
        if len(results) != len(current.calls):
            msg = (
                f"Collected {len(results)} results for {len(current.calls)} tool calls"
            )
            raise FatalError(msg)

        self._session.append_turns(
            [
                current.assistant_turn(),
                ConversationTurn(role=Role.TOOL, content_blocks=list(results)),
            ]
        )
        self._session.persist()
        current.committed = True
        outcome.iterations += 1
        if self._session.trim_to_budget(self._max_context_tokens):
            self._session.persist()

        if outcome.iterations >= self._max_tool_iterations:
            logger.warning(
                "Tool iteration limit reached",
                session_id=self._session.session.id,
                limit=self._max_tool_iterations,
            )
            outcome.final_text = await self._finish_at_limit(token)
            return LoopState.DONE
        return LoopState.AWAITING_MODEL

    async def _finish_at_limit(self, token: CancellationToken) -> str:
        """上限到達を通知し、ツールなしで最後の要約を依頼する."""
        self._session.append_notice(
            iteration_limit_notice(self._max_tool_iterations), ITERATION_LIMIT_DISPLAY_TEXT
        )
        self._session.persist()

        response = await self._request(token, ())
        text_blocks = [b for b in response.content_blocks if isinstance(b, TextBlock)]
        if not text_blocks:
            return ""
        summary = ConversationTurn(role=Role.ASSISTANT, content_blocks=list(text_blocks))
        self._session.append_turn(summary)
        self._session.persist()
        return summary.text

    def _interrupt(self, current: _Round | None) -> None:
        """
        中断時点までの結果を確定して保存する.

        応答を受け取っていた場合はアシスタントターンと完了済みの結果を追加し、
        結果の無い呼び出しIDを記録する.
        """
        pending: list[str] = []
        if current is not None:
            turns = [current.assistant_turn()]
            completed = current.ordered_results()
            if completed:
                turns.append(ConversationTurn(role=Role.TOOL, content_blocks=list(completed)))
            self._session.append_turns(turns)
            pending = current.missing_ids()
        self._session.mark_interrupted(pending)
        self._session.persist()
