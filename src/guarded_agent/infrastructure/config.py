"""Configuration management."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ワークスペース内の状態ディレクトリ名
STATE_DIR_NAME = ".guarded-agent"
LOCAL_RULES_FILE_NAME = "permissions.local.json"

_MIB = 1024 * 1024


class Config(BaseSettings):
    """アプリケーション設定."""

    model_config = SettingsConfigDict(
        env_prefix="GUARDED_AGENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ワークスペース設定
    workspace_root: Path = Field(
        default_factory=Path.cwd,
        description="エージェントが操作するワークスペースのルート",
    )
    global_rules_file: Path = Field(
        default_factory=lambda: Path.home() / STATE_DIR_NAME / "permissions.json",
        description="グローバルスコープのパーミッションルールファイル",
    )

    # 実行制限
    safe_mode: bool = Field(
        default=False,
        description="読み取り専用ツールのみ許可するモード",
    )
    max_context_tokens: int = Field(
        default=180_000,
        description="会話履歴のトークン予算",
    )
    max_tool_iterations: int = Field(
        default=200,
        description="モデルとツールの往復回数の上限",
    )
    max_bash_output_bytes: int = Field(
        default=50 * _MIB,
        description="Bash出力の最大バイト数",
    )
    max_file_read_bytes: int = Field(
        default=10 * _MIB,
        description="ファイル読み込みの最大バイト数",
    )
    max_tool_output_bytes: int = Field(
        default=1 * _MIB,
        description="その他ツール出力の最大バイト数",
    )
    max_parallel_tools: int = Field(
        default=1,
        description="同一バッチ内で並行実行するツール数",
    )

    # リトライ設定
    retry_max_attempts: int = Field(default=4, description="最大試行回数")
    retry_base_delay: float = Field(default=1.0, description="初回バックオフ秒数")
    retry_max_delay: float = Field(default=30.0, description="バックオフ上限秒数")
    retry_jitter: float = Field(default=0.25, description="ジッター比率（0〜1）")

    # タイムアウト設定
    command_timeout: float = Field(
        default=600.0,
        description="Bashコマンドのタイムアウト秒数",
    )
    confirmation_timeout: float | None = Field(
        default=None,
        description="確認待ちのタイムアウト秒数（None は無期限、超過時は拒否）",
    )
    join_timeout: float = Field(
        default=10.0,
        description="中断したバックグラウンドタスクの終了待ち秒数",
    )

    # ロギング設定
    log_level: str = Field(default="INFO", description="ログレベル")
    log_dir: str = Field(default="logs", description="ログ出力ディレクトリ")
    log_backup_count: int = Field(default=7, description="ログ保持日数")

    @field_validator("workspace_root", "global_rules_file", mode="before")
    @classmethod
    def expand_path(cls, v: str | Path) -> Path:
        """パスをPathに変換し、~ を展開する."""
        return Path(v).expanduser()

    @field_validator(
        "max_context_tokens",
        "max_tool_iterations",
        "max_bash_output_bytes",
        "max_file_read_bytes",
        "max_tool_output_bytes",
        "max_parallel_tools",
        "retry_max_attempts",
    )
    @classmethod
    def require_positive(cls, v: int) -> int:
        """上限値が正の整数であることを検証する."""
        if v <= 0:
            msg = f"Value must be positive, got {v}"
            raise ValueError(msg)
        return v

    @field_validator("retry_jitter")
    @classmethod
    def check_jitter(cls, v: float) -> float:
        """ジッター比率が 0〜1 の範囲であることを検証する."""
        if not 0.0 <= v <= 1.0:
            msg = f"retry_jitter must be between 0 and 1, got {v}"
            raise ValueError(msg)
        return v

    @property
    def state_dir(self) -> Path:
        """ワークスペース内の状態ディレクトリ."""
        return self.workspace_root / STATE_DIR_NAME

    @property
    def local_rules_file(self) -> Path:
        """ローカルスコープのパーミッションルールファイル."""
        return self.state_dir / LOCAL_RULES_FILE_NAME

    @property
    def sessions_dir(self) -> Path:
        """セッション保存ディレクトリ."""
        return self.state_dir / "sessions"


# グローバル設定インスタンス（シングルトン）
_config: Config | None = None


def get_config() -> Config:
    """
    グローバル設定インスタンスを取得する.

    Returns:
        設定インスタンス
    """
    global _config
    if _config is None:
        _config = Config()
    return _config
