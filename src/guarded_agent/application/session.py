"""Conversation state, persistence and context-budget trimming."""

from __future__ import annotations

import json
import re
import time
import uuid
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

import tiktoken
from pydantic import BaseModel, Field, ValidationError

from guarded_agent.application.errors import (
    MalformedInputError,
    SessionCorruptedError,
    SessionNotFoundError,
)
from guarded_agent.application.models import (
    ConversationTurn,
    DisplayEntry,
    DisplayKind,
    DisplayTurn,
    ImageBlock,
    Role,
    TextBlock,
    ToolCall,
    ToolResult,
    Usage,
)
from guarded_agent.infrastructure.logging import get_logger
from guarded_agent.infrastructure.storage import atomic_write_json, locked_file

if TYPE_CHECKING:
    from guarded_agent.infrastructure.config import Config

logger = get_logger(__name__)

TokenCounter = Callable[[str], int]

PREVIEW_LENGTH = 120
INTERRUPTED_DISPLAY_TEXT = "[Interrupted - no response received]"
INTERRUPTION_NOTICE = (
    "[SYSTEM: The previous request was interrupted by the user before it "
    "completed. Tool calls that were not executed are marked as such.]"
)
NOT_EXECUTED_PAYLOAD = "Tool call was not executed: the request was interrupted by the user"
# 画像は本文の代わりにこの文字列でトークン数を見積もる
IMAGE_PLACEHOLDER = "[image]"

# ターンごとの役割・区切りの概算トークン数
_TURN_OVERHEAD_TOKENS = 4
_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")

_TOKENIZER: tiktoken.Encoding | None = None
_TOKENIZER_FALLBACK_LOGGED = False


def _get_tokenizer() -> tiktoken.Encoding:
    """tiktoken のエンコーダーを取得する（初回のみ初期化）."""
    global _TOKENIZER
    if _TOKENIZER is None:
        _TOKENIZER = tiktoken.get_encoding("cl100k_base")
    return _TOKENIZER


def estimate_tokens(text: str) -> int:
    """
    テキストのトークン数を見積もる.

    エンコーダーが使えない環境（語彙ファイルを取得できない場合など）では
    文字数 / 4 で概算する.
    """
    global _TOKENIZER_FALLBACK_LOGGED
    if not text:
        return 0
    try:
        return len(_get_tokenizer().encode(text, disallowed_special=()))
    except Exception as e:
        if not _TOKENIZER_FALLBACK_LOGGED:
            _TOKENIZER_FALLBACK_LOGGED = True
            logger.warning(
                "Tokenizer unavailable, estimating tokens from text length",
                error=str(e),
            )
        return max(1, len(text) // 4)


def _now() -> datetime:
    return datetime.now(UTC)


def generate_session_id() -> str:
    """``session_<ミリ秒>_<乱数>`` 形式のセッションIDを生成する."""
    return f"session_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


def turn_text(turn: ConversationTurn) -> str:
    """トークン見積もり用にターンの内容を文字列化する."""
    parts: list[str] = [turn.role.value]
    for block in turn.content_blocks:
        if isinstance(block, TextBlock):
            parts.append(block.text)
        elif isinstance(block, ToolCall):
            parts.append(block.name)
            parts.append(json.dumps(block.arguments, ensure_ascii=False))
        elif isinstance(block, ImageBlock):
            parts.append(IMAGE_PLACEHOLDER)
        elif isinstance(block, ToolResult):
            parts.append(block.payload)
            parts.extend(IMAGE_PLACEHOLDER for _ in block.images)
    return "\n".join(parts)


def render_display(
    turn: ConversationTurn, calls_by_id: dict[str, ToolCall] | None = None
) -> DisplayTurn:
    """
    ConversationTurn を表示用ターンに変換する.

    Args:
        turn: 変換するターン
        calls_by_id: Tool ターンの結果からツール名と入力を引くための対応表

    Returns:
        表示用ターン
    """
    calls_by_id = calls_by_id or {}
    entries: list[DisplayEntry] = []
    if turn.role is Role.SYSTEM:
        entries.append(DisplayEntry(kind=DisplayKind.NOTICE, content=turn.text))
    elif turn.role is Role.USER:
        entries.append(DisplayEntry(kind=DisplayKind.USER_MESSAGE, content=turn.text))
    elif turn.role is Role.ASSISTANT:
        if turn.text:
            entries.append(
                DisplayEntry(kind=DisplayKind.ASSISTANT_MESSAGE, content=turn.text)
            )
    else:
        for result in turn.tool_results:
            call = calls_by_id.get(result.call_id)
            entries.append(
                DisplayEntry(
                    kind=DisplayKind.TOOL_EXECUTION,
                    tool_name=call.name if call else None,
                    tool_input=(
                        json.dumps(call.arguments, ensure_ascii=False) if call else None
                    ),
                    tool_output=result.payload,
                    is_error=result.is_error,
                )
            )
    return DisplayTurn(entries=entries)


class Session(BaseModel):
    """セッション（会話履歴と実行状態）."""

    id: str = Field(default_factory=generate_session_id)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    transcript: list[ConversationTurn] = Field(default_factory=list)
    display: list[DisplayTurn] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    safe_mode: bool = False
    interrupted: bool = False
    # 中断時に結果が得られなかったツール呼び出しID
    pending_call_ids: list[str] = Field(default_factory=list)


class SessionMetadata(BaseModel):
    """セッション一覧に表示する情報."""

    id: str
    preview: str
    created_at: datetime
    updated_at: datetime
    turn_count: int


class _ApiFile(BaseModel):
    id: str
    created_at: datetime
    updated_at: datetime
    usage: Usage = Field(default_factory=Usage)
    safe_mode: bool = False
    interrupted: bool = False
    pending_call_ids: list[str] = Field(default_factory=list)
    transcript: list[ConversationTurn]


class _DisplayFile(BaseModel):
    id: str
    display: list[DisplayTurn]


class _IndexFile(BaseModel):
    sessions: list[SessionMetadata] = Field(default_factory=list)


def _preview(transcript: Iterable[ConversationTurn]) -> str:
    for turn in transcript:
        if turn.role is Role.USER and turn.text:
            text = " ".join(turn.text.split())
            if len(text) > PREVIEW_LENGTH:
                return text[:PREVIEW_LENGTH] + "..."
            return text
    return ""


class SessionStore:
    """セッションをディレクトリに保存・復元する.

    1セッションにつき ``<id>.api.json`` と ``<id>.display.json`` の2ファイルと、
    全セッションの ``index.json`` を管理する.
    """

    def __init__(self, sessions_dir: Path) -> None:
        """
        Initialize SessionStore.

        Args:
            sessions_dir: セッション保存ディレクトリ
        """
        self._dir = sessions_dir

    @classmethod
    def from_config(cls, config: Config) -> SessionStore:
        """設定からセッションストアを作成する."""
        return cls(config.sessions_dir)

    @property
    def index_path(self) -> Path:
        """インデックスファイルのパス."""
        return self._dir / "index.json"

    def _paths(self, session_id: str) -> tuple[Path, Path]:
        if not _SESSION_ID_RE.match(session_id):
            msg = f"Invalid session id: {session_id!r}"
            raise MalformedInputError(msg)
        return (
            self._dir / f"{session_id}.api.json",
            self._dir / f"{session_id}.display.json",
        )

    def persist(self, session: Session) -> None:
        """
        セッションを保存する.

        2つのファイルをそれぞれアトミックに書き込み、インデックスを更新する.

        Raises:
            SessionCorruptedError: 会話履歴と表示履歴の長さが一致しない場合
        """
        if len(session.transcript) != len(session.display):
            raise SessionCorruptedError(
                session.id,
                f"transcript has {len(session.transcript)} turns but display has "
                f"{len(session.display)}",
            )
        api_path, display_path = self._paths(session.id)
        api = _ApiFile(
            id=session.id,
            created_at=session.created_at,
            updated_at=session.updated_at,
            usage=session.usage,
            safe_mode=session.safe_mode,
            interrupted=session.interrupted,
            pending_call_ids=session.pending_call_ids,
            transcript=session.transcript,
        )
        atomic_write_json(api_path, api.model_dump(mode="json"))
        atomic_write_json(
            display_path,
            _DisplayFile(id=session.id, display=session.display).model_dump(mode="json"),
        )
        self._update_index(session)
        logger.debug(
            "Session persisted", session_id=session.id, turns=len(session.transcript)
        )

    def _read_index(self) -> _IndexFile:
        try:
            return _IndexFile.model_validate_json(self.index_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return _IndexFile()
        except (ValidationError, ValueError) as e:
            logger.warning("Session index is unreadable, rebuilding", error=str(e))
            return _IndexFile()

    def _update_index(self, session: Session) -> None:
        entry = SessionMetadata(
            id=session.id,
            preview=_preview(session.transcript),
            created_at=session.created_at,
            updated_at=session.updated_at,
            turn_count=len(session.transcript),
        )
        with locked_file(self.index_path):
            index = self._read_index()
            sessions = [s for s in index.sessions if s.id != session.id]
            sessions.append(entry)
            sessions.sort(key=lambda s: s.updated_at, reverse=True)
            atomic_write_json(
                self.index_path, _IndexFile(sessions=sessions).model_dump(mode="json")
            )

    def restore(self, session_id: str) -> Session:
        """
        セッションを読み込む.

        Raises:
            SessionNotFoundError: ファイルが存在しない場合
            SessionCorruptedError: ファイルが壊れているか整合しない場合
        """
        api_path, display_path = self._paths(session_id)
        try:
            api_raw = api_path.read_text(encoding="utf-8")
            display_raw = display_path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise SessionNotFoundError(session_id) from e

        try:
            api = _ApiFile.model_validate_json(api_raw)
            display = _DisplayFile.model_validate_json(display_raw)
        except (ValidationError, ValueError) as e:
            logger.error("Session file is corrupted", session_id=session_id, error=str(e))
            raise SessionCorruptedError(session_id, str(e)) from e

        if api.id != session_id or display.id != session_id:
            raise SessionCorruptedError(session_id, "session id does not match file name")
        if len(api.transcript) != len(display.display):
            raise SessionCorruptedError(
                session_id,
                f"transcript has {len(api.transcript)} turns but display has "
                f"{len(display.display)}",
            )

        logger.info("Session restored", session_id=session_id, turns=len(api.transcript))
        return Session(
            id=api.id,
            created_at=api.created_at,
            updated_at=api.updated_at,
            transcript=api.transcript,
            display=display.display,
            usage=api.usage,
            safe_mode=api.safe_mode,
            interrupted=api.interrupted,
            pending_call_ids=api.pending_call_ids,
        )

    def list_sessions(self) -> list[SessionMetadata]:
        """保存済みセッションを更新日時の新しい順に返す."""
        return sorted(self._read_index().sessions, key=lambda s: s.updated_at, reverse=True)

    def delete(self, session_id: str) -> bool:
        """
        セッションを削除する.

        Returns:
            削除した場合 True、存在しなかった場合 False
        """
        api_path, display_path = self._paths(session_id)
        existed = False
        for path in (api_path, display_path):
            if path.exists():
                path.unlink()
                existed = True
        with locked_file(self.index_path):
            index = self._read_index()
            remaining = [s for s in index.sessions if s.id != session_id]
            if len(remaining) != len(index.sessions):
                existed = True
                atomic_write_json(
                    self.index_path, _IndexFile(sessions=remaining).model_dump(mode="json")
                )
        if existed:
            logger.info("Session deleted", session_id=session_id)
        return existed


class SessionState:
    """実行中セッションの状態を管理する.

    会話履歴と表示履歴は常に同じ長さに保たれる.
    ループ以外から変更しないこと.
    """

    def __init__(
        self,
        session: Session,
        store: SessionStore,
        token_counter: TokenCounter = estimate_tokens,
    ) -> None:
        """
        Initialize SessionState.

        Args:
            session: 管理するセッション
            store: 保存先
            token_counter: トークン数の見積もり関数
        """
        self._session = session
        self._store = store
        self._count_tokens = token_counter

    @classmethod
    def create(
        cls,
        store: SessionStore,
        *,
        system_prompt: str | None = None,
        safe_mode: bool = False,
        token_counter: TokenCounter = estimate_tokens,
    ) -> SessionState:
        """新しいセッションを作成する."""
        state = cls(Session(safe_mode=safe_mode), store, token_counter)
        if system_prompt:
            state.append_turn(ConversationTurn.from_text(Role.SYSTEM, system_prompt))
        logger.info("Session created", session_id=state.session.id, safe_mode=safe_mode)
        return state

    @classmethod
    def restore(
        cls,
        store: SessionStore,
        session_id: str,
        *,
        token_counter: TokenCounter = estimate_tokens,
    ) -> SessionState:
        """保存済みセッションを復元する."""
        return cls(store.restore(session_id), store, token_counter)

    @property
    def session(self) -> Session:
        """管理しているセッション."""
        return self._session

    @property
    def transcript(self) -> list[ConversationTurn]:
        """会話履歴のスナップショット."""
        return list(self._session.transcript)

    @property
    def display(self) -> list[DisplayTurn]:
        """表示履歴のスナップショット."""
        return list(self._session.display)

    @property
    def safe_mode(self) -> bool:
        """セーフモードかどうか."""
        return self._session.safe_mode

    def _calls_by_id(self) -> dict[str, ToolCall]:
        return {
            call.id: call
            for turn in self._session.transcript
            if turn.role is Role.ASSISTANT
            for call in turn.tool_calls
        }

    def append_turn(
        self, turn: ConversationTurn, display: DisplayTurn | None = None
    ) -> None:
        """
        ターンを追加する.

        Args:
            turn: 追加するターン
            display: 表示用ターン（省略時は turn から生成する）
        """
        if display is None:
            display = render_display(turn, self._calls_by_id())
        self._session.transcript.append(turn)
        self._session.display.append(display)
        self._session.updated_at = _now()

    def append_turns(self, turns: Iterable[ConversationTurn]) -> None:
        """複数のターンを順に追加する."""
        for turn in turns:
            self.append_turn(turn)

    def append_notice(self, text: str, display_text: str | None = None) -> None:
        """
        モデル向けの通知をユーザーターンとして追加する.

        Args:
            text: モデルに送る本文
            display_text: 表示用の文言（省略時は text）
        """
        self.append_turn(
            ConversationTurn.from_text(Role.USER, text),
            DisplayTurn(
                entries=[DisplayEntry(kind=DisplayKind.NOTICE, content=display_text or text)]
            ),
        )

    def record_usage(self, usage: Usage) -> None:
        """トークン使用量を加算する."""
        self._session.usage = self._session.usage.add(usage)

    def set_safe_mode(self, enabled: bool, available_tools: Iterable[str]) -> None:
        """
        セーフモードを切り替え、モデルに通知するターンを追加する.

        永続化されたパーミッションルールには影響しない.
        """
        if self._session.safe_mode == enabled:
            return
        self._session.safe_mode = enabled
        tools = ", ".join(available_tools)
        if enabled:
            text = (
                "[SYSTEM: Safe mode is now enabled. Only read-only tools are "
                f"available: {tools}. Do not attempt to modify files or run commands.]"
            )
        else:
            text = (
                "[SYSTEM: Safe mode is now disabled. All tools are available "
                f"again: {tools}.]"
            )
        self.append_notice(text, "[Safe mode enabled]" if enabled else "[Safe mode disabled]")
        logger.info("Safe mode toggled", session_id=self._session.id, enabled=enabled)

    def mark_interrupted(self, pending_call_ids: Iterable[str]) -> None:
        """中断を記録する（結果が得られなかった呼び出しIDを保持する）."""
        self._session.interrupted = True
        self._session.pending_call_ids = list(pending_call_ids)
        self._session.updated_at = _now()
        logger.info(
            "Session interrupted",
            session_id=self._session.id,
            pending_calls=self._session.pending_call_ids,
        )

    def resume_after_interrupt(self) -> bool:
        """
        前回の中断を履歴に反映する.

        未実行の呼び出しに合成エラー結果を追加し（再実行はしない）、
        続けて中断の通知を追加する.

        Returns:
            中断から再開した場合 True
        """
        if not self._session.interrupted:
            return False
        pending = self._session.pending_call_ids
        if pending:
            self.append_turn(
                ConversationTurn(
                    role=Role.TOOL,
                    content_blocks=[
                        ToolResult.error(call_id, NOT_EXECUTED_PAYLOAD) for call_id in pending
                    ],
                )
            )
        self.append_notice(INTERRUPTION_NOTICE, INTERRUPTED_DISPLAY_TEXT)
        self._session.interrupted = False
        self._session.pending_call_ids = []
        logger.info(
            "Resumed after interruption",
            session_id=self._session.id,
            synthesized_results=len(pending),
        )
        return True

    def _turn_tokens(self, turn: ConversationTurn) -> int:
        return self._count_tokens(turn_text(turn)) + _TURN_OVERHEAD_TOKENS

    def estimate_tokens(self) -> int:
        """会話履歴全体のトークン数を見積もる."""
        return sum(self._turn_tokens(t) for t in self._session.transcript)

    def _groups(self) -> tuple[int, list[tuple[int, int]]]:
        """
        (固定する先頭ターン数, 削除単位のグループ [start, end)) を返す.

        Tool ターンは直前のグループに含める.
        """
        transcript = self._session.transcript
        pinned = 1 if transcript and transcript[0].role is Role.SYSTEM else 0
        groups: list[tuple[int, int]] = []
        for i in range(pinned, len(transcript)):
            if transcript[i].role is Role.TOOL and groups:
                start, _ = groups[-1]
                groups[-1] = (start, i + 1)
            else:
                groups.append((i, i + 1))
        return pinned, groups

    def trim_to_budget(self, max_tokens: int) -> int:
        """
        トークン予算を超えている間、古いグループから削除する.

        先頭の System ターンと最新のグループは削除しない.
        ツール呼び出しと結果の組は分割しない.

        Args:
            max_tokens: トークン予算

        Returns:
            削除したターン数
        """
        total = self.estimate_tokens()
        if total <= max_tokens:
            return 0
        pinned, groups = self._groups()
        transcript = self._session.transcript

        cut = pinned
        dropped_groups = 0
        for start, end in groups[:-1]:
            if total <= max_tokens:
                break
            total -= sum(self._turn_tokens(t) for t in transcript[start:end])
            cut = end
            dropped_groups += 1

        removed = cut - pinned
        if removed == 0:
            return 0
        del self._session.transcript[pinned:cut]
        del self._session.display[pinned:cut]
        logger.info(
            "Transcript trimmed",
            session_id=self._session.id,
            removed_turns=removed,
            removed_groups=dropped_groups,
            estimated_tokens=total,
            budget=max_tokens,
        )
        return removed

    def persist(self) -> None:
        """現在の状態を保存する."""
        self._store.persist(self._session)
