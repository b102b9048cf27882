"""Interactive confirmation prompts on the terminal."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Callable
from typing import TextIO

from guarded_agent.application.models import (
    ConfirmationChoice,
    ConfirmationRequest,
    ConfirmationResponse,
)
from guarded_agent.infrastructure.logging import get_logger

logger = get_logger(__name__)

# 表示する対象文字列の最大長
_MAX_SUBJECT_LENGTH = 400

_COMMAND_CHOICES = "[y] allow once  [a] always allow this command  [p] always allow '{pattern}'  [n] deny  [d] always deny"
_DESTRUCTIVE_CHOICES = "[y] delete  [n] cancel"


def build_confirmation_prompt(request: ConfirmationRequest) -> str:
    """確認要求の表示テキストを構築する."""
    subject = request.subject[:_MAX_SUBJECT_LENGTH]
    if len(request.subject) > _MAX_SUBJECT_LENGTH:
        subject += "\n..."

    title = "Confirm deletion" if request.destructive else "Permission required"
    lines = [
        "",
        f"=== {title}: {request.tool_name} ===",
        subject,
        f"Reason: {request.reason}",
    ]
    if request.destructive:
        lines.append(_DESTRUCTIVE_CHOICES)
    elif request.suggested_pattern and request.suggested_pattern != request.subject:
        lines.append(_COMMAND_CHOICES.format(pattern=request.suggested_pattern))
    else:
        lines.append("[y] allow once  [a] always allow  [n] deny  [d] always deny")
    return "\n".join(lines)


def parse_choice(answer: str, request: ConfirmationRequest) -> ConfirmationResponse:
    """
    入力された文字を応答に変換する.

    不明な入力は拒否として扱う.
    削除の確認では「常に許可」「常に拒否」は選べない.
    """
    key = answer.strip().lower()[:1]
    if request.destructive:
        if key == "y":
            return ConfirmationResponse(choice=ConfirmationChoice.ALLOW_ONCE)
        return ConfirmationResponse(choice=ConfirmationChoice.DENY_ONCE)

    if key == "y":
        return ConfirmationResponse(choice=ConfirmationChoice.ALLOW_ONCE)
    if key == "a":
        return ConfirmationResponse(choice=ConfirmationChoice.REMEMBER)
    if key == "p" and request.suggested_pattern:
        return ConfirmationResponse(
            choice=ConfirmationChoice.REMEMBER, remember_pattern=True
        )
    if key == "d":
        return ConfirmationResponse(choice=ConfirmationChoice.DENY_FOREVER)
    return ConfirmationResponse(choice=ConfirmationChoice.DENY_ONCE)


class ConsoleConfirmationProvider:
    """標準エラー出力に確認を表示し、標準入力で回答を受け付ける."""

    def __init__(
        self,
        input_func: Callable[[str], str] = input,
        output: TextIO | None = None,
    ) -> None:
        """
        Initialize ConsoleConfirmationProvider.

        Args:
            input_func: 1行を読み込む関数
            output: 表示先（省略時は標準エラー出力）
        """
        self._input = input_func
        self._output = output
        self._lock = asyncio.Lock()

    async def ask(self, request: ConfirmationRequest) -> ConfirmationResponse:
        """
        確認を表示して回答を待つ.

        入力が閉じられた場合は拒否として扱う.
        """
        # 同時に複数の確認を表示しない
        async with self._lock:
            output = self._output or sys.stderr
            print(build_confirmation_prompt(request), file=output, flush=True)
            try:
                answer = await asyncio.to_thread(self._input, "> ")
            except EOFError:
                answer = ""
            response = parse_choice(answer, request)
            logger.info(
                "Confirmation answered",
                call_id=request.call_id,
                tool=request.tool_name,
                choice=response.choice.value,
                remember_pattern=response.remember_pattern,
            )
            return response
