"""Cooperative cancellation and bounded retries around external calls."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, TypeVar

from guarded_agent.application.errors import (
    FatalError,
    OperationCancelledError,
    RetryExhaustedError,
    TransientError,
)
from guarded_agent.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from guarded_agent.infrastructure.config import Config

logger = get_logger(__name__)

T = TypeVar("T")

# リトライ対象のHTTPステータス
_TRANSIENT_STATUS_CODES = frozenset({408, 409, 425, 429})

DEFAULT_JOIN_TIMEOUT = 10.0


class CancellationToken:
    """協調的キャンセルのためのトークン.

    中断シグナルを受けたら ``cancel()`` を呼び、各待機点で
    ``raise_if_cancelled()`` または ``run_cancellable()`` で観測する.
    """

    def __init__(self) -> None:
        """Initialize CancellationToken."""
        self._event = asyncio.Event()
        self._reason = "Cancelled by user"

    @property
    def cancelled(self) -> bool:
        """キャンセル済みの場合 True."""
        return self._event.is_set()

    @property
    def reason(self) -> str:
        """キャンセル理由."""
        return self._reason

    def cancel(self, reason: str = "Cancelled by user") -> None:
        """キャンセルを通知する（2回目以降は無視）."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        logger.info("Cancellation requested", reason=reason)

    def raise_if_cancelled(self) -> None:
        """
        キャンセル済みなら例外を送出する.

        Raises:
            OperationCancelledError: キャンセル済みの場合
        """
        if self._event.is_set():
            raise OperationCancelledError(self._reason)

    async def wait(self) -> None:
        """キャンセルされるまで待機する."""
        await self._event.wait()


async def run_cancellable(
    awaitable: Awaitable[T],
    token: CancellationToken | None,
    *,
    join_timeout: float = DEFAULT_JOIN_TIMEOUT,
) -> T:
    """
    処理をキャンセルトークンと競合させて実行する.

    トークンが先に発火した場合は処理中のタスクをキャンセルし、
    join_timeout 秒以内に終了するのを待つ.

    Args:
        awaitable: 実行する処理
        token: キャンセルトークン（None の場合はそのまま待機）
        join_timeout: 中断したタスクの終了待ち秒数

    Returns:
        処理の結果

    Raises:
        OperationCancelledError: キャンセルされた場合
        FatalError: 中断したタスクが時間内に終了しなかった場合
    """
    if token is None:
        return await awaitable
    token.raise_if_cancelled()

    work = asyncio.ensure_future(awaitable)
    watcher = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        watcher.cancel()

    if work.done():
        return work.result()

    work.cancel()
    done, _ = await asyncio.wait({work}, timeout=join_timeout)
    if not done:
        logger.error("Background task did not stop in time", timeout=join_timeout)
        msg = f"Background task did not stop within {join_timeout} seconds"
        raise FatalError(msg)
    with suppress(asyncio.CancelledError, Exception):
        work.result()
    raise OperationCancelledError(token.reason)


def _status_code(exc: BaseException) -> int | None:
    for candidate in (
        getattr(exc, "status_code", None),
        getattr(exc, "status", None),
        getattr(getattr(exc, "response", None), "status_code", None),
    ):
        if isinstance(candidate, int):
            return candidate
    return None


def is_transient_error(exc: BaseException) -> bool:
    """
    リトライで回復しうる例外かどうかを判定する.

    タイムアウト、接続エラー、408/409/425/429、5xx を一時的とみなす.
    認証エラーや不正なリクエストは即座に失敗させる.
    """
    if isinstance(exc, TransientError | TimeoutError | ConnectionError):
        return True
    status = _status_code(exc)
    if status is None:
        return False
    return status in _TRANSIENT_STATUS_CODES or 500 <= status <= 599


def retry_after_hint(exc: BaseException) -> float | None:
    """例外に含まれる待機秒数の指示（Retry-After）を返す."""
    value = getattr(exc, "retry_after", None)
    if value is None:
        headers = getattr(getattr(exc, "response", None), "headers", None)
        if headers is not None:
            value = headers.get("Retry-After")
    try:
        seconds = float(value) if value is not None else None
    except (TypeError, ValueError):
        return None
    if seconds is None or seconds <= 0:
        return None
    return seconds


@dataclass(frozen=True)
class RetryPolicy:
    """リトライ方針."""

    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.25
    is_transient: Callable[[BaseException], bool] = is_transient_error

    @classmethod
    def from_config(cls, config: Config) -> RetryPolicy:
        """設定からリトライ方針を作成する."""
        return cls(
            max_attempts=config.retry_max_attempts,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            jitter=config.retry_jitter,
        )

    def compute_delay(
        self,
        attempt: int,
        rng: random.Random | None = None,
        retry_after: float | None = None,
    ) -> float:
        """
        attempt 回目の失敗後の待機秒数を計算する.

        Args:
            attempt: 失敗した試行の番号（1始まり）
            rng: 乱数生成器（テスト用）
            retry_after: サーバーが指示した待機秒数

        Returns:
            0 以上 max_delay 以下の待機秒数
        """
        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        factor = (rng or random).uniform(1 - self.jitter, 1 + self.jitter)
        delay *= factor
        if retry_after is not None:
            delay = max(delay, retry_after)
        return max(0.0, min(self.max_delay, delay))


@dataclass
class RetryState:
    """1回の外部呼び出しに対するリトライ状態."""

    max_attempts: int
    base_delay: float
    jitter: float
    attempt: int = 0
    last_error: BaseException | None = field(default=None, repr=False)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    token: CancellationToken | None = None,
    join_timeout: float = DEFAULT_JOIN_TIMEOUT,
    on_retry: Callable[[RetryState, float], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    外部呼び出しを一時的な失敗に限ってリトライする.

    operation は毎回同じリクエストを再送する引数なしのファクトリであること.

    Args:
        operation: 実行する処理のファクトリ
        policy: リトライ方針
        token: キャンセルトークン（発火したら残り回数に関わらず中止する）
        join_timeout: 中断したタスクの終了待ち秒数
        on_retry: リトライ前に呼ばれるコールバック
        sleep: 待機関数（テスト用）

    Returns:
        処理の結果

    Raises:
        OperationCancelledError: キャンセルされた場合
        RetryExhaustedError: 一時的な失敗が上限回数続いた場合
        Exception: 一時的でない失敗はそのまま送出する
    """
    state = RetryState(
        max_attempts=policy.max_attempts,
        base_delay=policy.base_delay,
        jitter=policy.jitter,
    )
    while True:
        if token is not None:
            token.raise_if_cancelled()
        state.attempt += 1
        try:
            return await run_cancellable(operation(), token, join_timeout=join_timeout)
        except (OperationCancelledError, FatalError):
            raise
        except Exception as e:
            if not policy.is_transient(e):
                logger.warning(
                    "External call failed without retry",
                    attempt=state.attempt,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise
            state.last_error = e
            if state.attempt >= policy.max_attempts:
                logger.error(
                    "Retries exhausted", attempts=state.attempt, error=str(e)
                )
                raise RetryExhaustedError(state.attempt, e) from e

            delay = policy.compute_delay(state.attempt, retry_after=retry_after_hint(e))
            logger.warning(
                "Transient failure, retrying",
                attempt=state.attempt,
                max_attempts=policy.max_attempts,
                delay=round(delay, 3),
                error=str(e),
            )
            if on_retry is not None:
                on_retry(state, delay)
            await run_cancellable(sleep(delay), token, join_timeout=join_timeout)
