"""Data models shared across the execution core."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class RuleScope(str, Enum):
    """ルールの適用スコープ."""

    GLOBAL = "global"
    LOCAL = "local"


class RuleKind(str, Enum):
    """ルールの種別."""

    READ = "Read"
    BASH = "Bash"


class Decision(str, Enum):
    """ルールの判定."""

    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"


class BashTier(str, Enum):
    """Bashコマンドの分類."""

    ALLOWED = "allowed"
    FORBIDDEN = "forbidden"
    ASK = "ask"


class ToolStatus(str, Enum):
    """ツール実行結果の状態."""

    OK = "ok"
    DENIED = "denied"
    ERROR = "error"


class Role(str, Enum):
    """会話ターンの話者."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ConfirmationChoice(str, Enum):
    """確認ダイアログでのユーザーの選択."""

    ALLOW_ONCE = "allow_once"
    REMEMBER = "remember"
    DENY_ONCE = "deny_once"
    DENY_FOREVER = "deny_forever"


class PermissionRule(BaseModel):
    """永続化されたパーミッションルール."""

    model_config = ConfigDict(frozen=True)

    scope: RuleScope
    kind: RuleKind
    pattern: str
    decision: Decision

    def to_entry(self) -> str:
        """ルールファイルでの表記（例: ``Read(./secrets/**)``）を返す."""
        return f"{self.kind.value}({self.pattern})"


class TextBlock(BaseModel):
    """テキストのコンテンツブロック."""

    type: Literal["text"] = "text"
    text: str


class ToolCall(BaseModel):
    """モデルが発行したツール呼び出し."""

    type: Literal["tool_call"] = "tool_call"
    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ImageBlock(BaseModel):
    """画像のコンテンツブロック.

    ローカルファイルは base64 の data、Web 上の画像は url で渡す.
    """

    type: Literal["image"] = "image"
    media_type: str | None = None
    data: str | None = None
    url: str | None = None


class ToolResult(BaseModel):
    """ツール呼び出しの結果."""

    type: Literal["tool_result"] = "tool_result"
    call_id: str
    status: ToolStatus
    payload: str
    is_error: bool = False
    images: list[ImageBlock] = Field(default_factory=list)

    @classmethod
    def ok(
        cls, call_id: str, payload: str, images: list[ImageBlock] | None = None
    ) -> ToolResult:
        """成功した結果を作成する."""
        return cls(
            call_id=call_id, status=ToolStatus.OK, payload=payload, images=images or []
        )

    @classmethod
    def denied(cls, call_id: str, reason: str) -> ToolResult:
        """拒否された呼び出しの結果を作成する."""
        return cls(
            call_id=call_id, status=ToolStatus.DENIED, payload=reason, is_error=True
        )

    @classmethod
    def error(cls, call_id: str, message: str) -> ToolResult:
        """実行時エラーの結果を作成する."""
        return cls(
            call_id=call_id, status=ToolStatus.ERROR, payload=message, is_error=True
        )


ContentBlock = Annotated[
    TextBlock | ImageBlock | ToolCall | ToolResult, Field(discriminator="type")
]


class ConversationTurn(BaseModel):
    """会話の1ターン."""

    role: Role
    content_blocks: list[ContentBlock] = Field(default_factory=list)

    @classmethod
    def from_text(cls, role: Role, text: str) -> ConversationTurn:
        """テキストだけのターンを作成する."""
        return cls(role=role, content_blocks=[TextBlock(text=text)])

    @property
    def text(self) -> str:
        """テキストブロックを連結した文字列."""
        return "\n".join(b.text for b in self.content_blocks if isinstance(b, TextBlock))

    @property
    def tool_calls(self) -> list[ToolCall]:
        """このターンに含まれるツール呼び出し."""
        return [b for b in self.content_blocks if isinstance(b, ToolCall)]

    @property
    def tool_results(self) -> list[ToolResult]:
        """このターンに含まれるツール結果."""
        return [b for b in self.content_blocks if isinstance(b, ToolResult)]


class DisplayKind(str, Enum):
    """表示用エントリの種別."""

    USER_MESSAGE = "user_message"
    ASSISTANT_MESSAGE = "assistant_message"
    TOOL_EXECUTION = "tool_execution"
    NOTICE = "notice"


class DisplayEntry(BaseModel):
    """画面に表示する1要素."""

    kind: DisplayKind
    content: str = ""
    tool_name: str | None = None
    tool_input: str | None = None
    tool_output: str | None = None
    is_error: bool = False


class DisplayTurn(BaseModel):
    """ConversationTurn と同じ位置に対応する表示用ターン."""

    entries: list[DisplayEntry] = Field(default_factory=list)


class Usage(BaseModel):
    """トークン使用量."""

    input_tokens: int = 0
    output_tokens: int = 0

    def add(self, other: Usage) -> Usage:
        """使用量を加算した新しいインスタンスを返す."""
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


class ModelResponse(BaseModel):
    """モデルクライアントからの応答."""

    content_blocks: list[ContentBlock] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    stop_reason: str | None = None

    @property
    def tool_calls(self) -> list[ToolCall]:
        """応答に含まれるツール呼び出し."""
        return [b for b in self.content_blocks if isinstance(b, ToolCall)]


class ToolSpec(BaseModel):
    """モデルに提示するツール定義."""

    name: str
    description: str
    input_schema: dict[str, Any] = Field(default_factory=dict)
    read_only: bool = False


@dataclass(frozen=True)
class ModelOptions:
    """モデル呼び出しのオプション."""

    max_output_tokens: int | None = None
    temperature: float | None = None


@dataclass(frozen=True)
class PathDecision:
    """パス評価の結果."""

    requested_path: str
    canonical_path: Path | None
    inside_workspace: bool
    decision: Decision
    matched_rule: PermissionRule | None = None
    reason: str = ""
    hint: str | None = None

    @property
    def allowed(self) -> bool:
        """許可された場合 True."""
        return self.decision is Decision.ALLOW


@dataclass(frozen=True)
class BashClassification:
    """Bashコマンドの分類結果."""

    raw_command: str
    tier: BashTier
    reason: str
    path_arguments: tuple[str, ...] = ()
    command_names: tuple[str, ...] = ()
    matched_rule: PermissionRule | None = None
    hint: str | None = None


@dataclass(frozen=True)
class ConfirmationRequest:
    """確認要求（Dispatcher → UI）."""

    call_id: str
    tool_name: str
    subject: str  # コマンド文字列または対象パス
    reason: str
    suggested_pattern: str | None = None
    destructive: bool = False


@dataclass
class ConfirmationResponse:
    """確認応答（UI → Dispatcher）."""

    choice: ConfirmationChoice
    remember_pattern: bool = False

    @property
    def approved(self) -> bool:
        """実行を許可する選択の場合 True."""
        return self.choice in {ConfirmationChoice.ALLOW_ONCE, ConfirmationChoice.REMEMBER}


@dataclass(frozen=True)
class ToolOutcome:
    """ツールレジストリの実行結果."""

    payload: str
    is_error: bool = False
    images: tuple[ImageBlock, ...] = ()
