"""Subprocess execution with an output ceiling, a timeout and cancellation cleanup."""

from __future__ import annotations

import asyncio
import os
import signal
from dataclasses import dataclass
from pathlib import Path

from guarded_agent.infrastructure.logging import get_logger

logger = get_logger(__name__)

_READ_CHUNK = 64 * 1024
_TERMINATE_GRACE = 5.0


def truncation_notice(shown: int, total: int) -> str:
    """出力を切り詰めたことを示す注記を返す."""
    return f"[output truncated: showing first {shown} of {total} bytes]"


class _OutputBudget:
    """stdout と stderr で共有する出力バイト数の上限."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.kept = 0
        self.total = 0

    def take(self, chunk: bytes) -> bytes:
        self.total += len(chunk)
        keep = max(0, min(len(chunk), self.limit - self.kept))
        self.kept += keep
        return chunk[:keep]


@dataclass(frozen=True)
class CommandResult:
    """コマンドの実行結果."""

    command: str
    exit_code: int | None
    stdout: str
    stderr: str
    total_bytes: int
    kept_bytes: int
    timed_out: bool = False
    timeout: float | None = None

    @property
    def truncated(self) -> bool:
        """出力が上限で切り詰められた場合 True."""
        return self.total_bytes > self.kept_bytes

    @property
    def succeeded(self) -> bool:
        """終了コード 0 で完了した場合 True."""
        return not self.timed_out and self.exit_code == 0

    def format(self) -> str:
        """モデルに返す形式に整形する."""
        sections: list[str] = []
        if self.timed_out:
            sections.append(f"Command timed out after {self.timeout} seconds")
        elif self.exit_code is not None and self.exit_code < 0:
            sections.append(f"Command terminated by signal {-self.exit_code}")
        elif self.exit_code != 0:
            sections.append(f"Command failed with exit code {self.exit_code}")

        if self.stdout:
            sections.append(f"STDOUT:\n{self.stdout}")
        if self.stderr:
            sections.append(f"STDERR:\n{self.stderr}")
        if not sections:
            return "Command executed successfully (no output)"
        if self.truncated:
            sections.append(truncation_notice(self.kept_bytes, self.total_bytes))
        return "\n".join(sections)


class ShellRunner:
    """ワークスペースをカレントディレクトリとしてシェルコマンドを実行する."""

    def __init__(
        self,
        cwd: Path,
        max_output_bytes: int,
        timeout: float,
        shell: str = "/bin/sh",
    ) -> None:
        """
        Initialize ShellRunner.

        Args:
            cwd: 実行ディレクトリ
            max_output_bytes: stdout と stderr を合わせた最大保持バイト数
            timeout: タイムアウト秒数
            shell: 使用するシェル
        """
        self._cwd = cwd
        self._max_output_bytes = max_output_bytes
        self._timeout = timeout
        self._shell = shell

    async def run(self, command: str) -> CommandResult:
        """
        コマンドを実行する.

        タスクがキャンセルされた場合はプロセスグループを終了させてから
        CancelledError を再送出する.

        Args:
            command: 実行するコマンド

        Returns:
            実行結果
        """
        process = await asyncio.create_subprocess_exec(
            self._shell,
            "-c",
            command,
            cwd=str(self._cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        logger.info("Command started", command=command, pid=process.pid)

        budget = _OutputBudget(self._max_output_bytes)
        stdout = bytearray()
        stderr = bytearray()
        timed_out = False
        try:
            await asyncio.wait_for(
                asyncio.gather(
                    self._drain(process.stdout, stdout, budget),
                    self._drain(process.stderr, stderr, budget),
                    process.wait(),
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning("Command timed out", command=command, timeout=self._timeout)
            await self._cleanup_process(process)
        except asyncio.CancelledError:
            logger.info("Command cancelled", command=command, pid=process.pid)
            await self._cleanup_process(process)
            raise

        result = CommandResult(
            command=command,
            exit_code=process.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            total_bytes=budget.total,
            kept_bytes=budget.kept,
            timed_out=timed_out,
            timeout=self._timeout,
        )
        logger.info(
            "Command finished",
            command=command,
            exit_code=result.exit_code,
            output_bytes=budget.total,
            truncated=result.truncated,
        )
        return result

    @staticmethod
    async def _drain(
        stream: asyncio.StreamReader | None, sink: bytearray, budget: _OutputBudget
    ) -> None:
        if stream is None:
            return
        while chunk := await stream.read(_READ_CHUNK):
            sink.extend(budget.take(chunk))

    @staticmethod
    async def _cleanup_process(process: asyncio.subprocess.Process) -> None:
        """プロセスグループを終了させる（冪等）."""
        if process.returncode is not None:
            return
        try:
            os.killpg(process.pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=_TERMINATE_GRACE)
        except asyncio.TimeoutError:
            logger.warning("Process did not terminate, killing it", pid=process.pid)
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                return
            await process.wait()
