"""Tests for subprocess execution."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from guarded_agent.infrastructure.shell import CommandResult, ShellRunner


def _runner(cwd: Path, max_output_bytes: int = 1024 * 1024, timeout: float = 10.0) -> ShellRunner:
    return ShellRunner(cwd, max_output_bytes, timeout)


class TestShellRunner:
    """ShellRunner のテスト."""

    @pytest.mark.asyncio
    async def test_stdout(self, tmp_path: Path) -> None:
        """標準出力を取得できることを確認する."""
        result = await _runner(tmp_path).run("echo hello")

        assert result.succeeded
        assert result.stdout == "hello\n"
        assert result.format() == "STDOUT:\nhello\n"

    @pytest.mark.asyncio
    async def test_runs_in_cwd(self, tmp_path: Path) -> None:
        """指定したディレクトリで実行されることを確認する."""
        result = await _runner(tmp_path).run("pwd")
        assert Path(result.stdout.strip()).resolve() == tmp_path.resolve()

    @pytest.mark.asyncio
    async def test_exit_code_and_stderr(self, tmp_path: Path) -> None:
        """失敗時に終了コードと標準エラーを返すことを確認する."""
        result = await _runner(tmp_path).run("echo oops >&2; exit 3")

        assert result.exit_code == 3
        assert not result.succeeded
        text = result.format()
        assert text.startswith("Command failed with exit code 3")
        assert "STDERR:\noops" in text

    @pytest.mark.asyncio
    async def test_no_output(self, tmp_path: Path) -> None:
        """出力がない場合のメッセージを確認する."""
        result = await _runner(tmp_path).run("true")
        assert result.format() == "Command executed successfully (no output)"

    @pytest.mark.asyncio
    async def test_output_truncated(self, tmp_path: Path) -> None:
        """出力が上限で切り詰められることを確認する."""
        result = await _runner(tmp_path, max_output_bytes=100).run(
            "head -c 5000 /dev/zero | tr '\\0' a"
        )

        assert result.truncated
        assert result.stdout == "a" * 100
        assert result.total_bytes == 5000
        assert "[output truncated: showing first 100 of 5000 bytes]" in result.format()

    @pytest.mark.asyncio
    async def test_timeout(self, tmp_path: Path) -> None:
        """タイムアウトするとプロセスを終了させることを確認する."""
        result = await _runner(tmp_path, timeout=0.2).run("sleep 30")

        assert result.timed_out
        assert not result.succeeded
        assert result.format().startswith("Command timed out after 0.2 seconds")

    @pytest.mark.asyncio
    async def test_cancel_terminates_process(self, tmp_path: Path) -> None:
        """キャンセルされるとプロセスを終了させて CancelledError を送出することを確認する."""
        marker = tmp_path / "finished"
        task = asyncio.create_task(_runner(tmp_path).run(f"sleep 2 && touch {marker}"))
        await asyncio.sleep(0.2)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await asyncio.sleep(2.5)
        assert not marker.exists()


def test_signal_exit_format() -> None:
    """シグナルで終了した場合の表示を確認する."""
    result = CommandResult(
        command="x", exit_code=-9, stdout="", stderr="", total_bytes=0, kept_bytes=0
    )
    assert result.format() == "Command terminated by signal 9"
