"""Error taxonomy of the execution core."""

from __future__ import annotations


class AgentError(Exception):
    """エージェント実行コアの基底例外."""


class PermissionDeniedError(AgentError):
    """ワークスペース境界またはルールによって操作が拒否された場合の例外.

    モデルには Denied の ToolResult として返され、モデル側で対処できる.
    """

    def __init__(self, reason: str, hint: str | None = None) -> None:
        """
        Initialize PermissionDeniedError.

        Args:
            reason: 人間が読める拒否理由
            hint: 許可するために追加すべきルールなどの対処方法
        """
        message = reason if hint is None else f"{reason}\nHint: {hint}"
        super().__init__(message)
        self.reason = reason
        self.hint = hint


class MalformedInputError(AgentError):
    """ツール引数や設定が不正な場合の例外（リトライしない）."""


class MalformedRuleError(MalformedInputError):
    """パーミッションルールの記法が不正な場合の例外."""

    def __init__(self, source: str, entry: object, detail: str) -> None:
        """
        Initialize MalformedRuleError.

        Args:
            source: ルールの読み込み元（ファイルパスなど）
            entry: 不正なエントリ
            detail: 不正な理由
        """
        super().__init__(f"Invalid permission rule {entry!r} in {source}: {detail}")
        self.source = source
        self.entry = entry


class TransientError(AgentError):
    """ネットワークや一時的な I/O 障害など、リトライで回復しうる例外."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        """
        Initialize TransientError.

        Args:
            message: エラーメッセージ
            retry_after: サーバーが指示した待機秒数
        """
        super().__init__(message)
        self.retry_after = retry_after


class FatalError(AgentError):
    """ループを終了させる回復不能な例外."""


class RetryExhaustedError(FatalError):
    """リトライ回数を使い切った場合の例外."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        """
        Initialize RetryExhaustedError.

        Args:
            attempts: 実行した試行回数
            last_error: 最後に発生した例外
        """
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class SessionCorruptedError(FatalError):
    """保存されたセッションが読み込めない場合の例外."""

    def __init__(self, session_id: str, detail: str) -> None:
        """
        Initialize SessionCorruptedError.

        Args:
            session_id: セッションID
            detail: 破損の内容
        """
        super().__init__(f"Session {session_id} is corrupted: {detail}")
        self.session_id = session_id


class SessionNotFoundError(AgentError):
    """指定されたセッションが見つからない場合の例外."""

    def __init__(self, session_id: str) -> None:
        """
        Initialize SessionNotFoundError.

        Args:
            session_id: 見つからなかったセッションID
        """
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class OperationCancelledError(AgentError):
    """キャンセルトークンが発火した場合の例外."""

    def __init__(self, reason: str = "Cancelled by user") -> None:
        """
        Initialize OperationCancelledError.

        Args:
            reason: キャンセル理由
        """
        super().__init__(reason)
        self.reason = reason
