"""
Tests for the streaming subprocess runner, using real child processes.
"""

import os
import sys
import pytest

from railway_orchestrator.utils.async_subprocess import (
    SubprocessTimeoutError,
    run_async_stream,
)


def python_cmd(code):
    return [sys.executable, "-c", code]


@pytest.mark.integration
class TestRunAsyncStream:

    @pytest.mark.asyncio
    async def test_collects_stdout_and_stderr_lines(self):
        result = await run_async_stream(python_cmd(
            "import sys\n"
            "print('one')\n"
            "print()\n"
            "print('two')\n"
            "print('oops', file=sys.stderr)\n"
        ), timeout=30)

        assert result.success
        assert result.stdout == "one\ntwo"
        assert result.stderr == "oops"
        assert result.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_reports_exit_code(self):
        result = await run_async_stream(python_cmd("import sys; sys.exit(3)"), timeout=30)

        assert result.returncode == 3
        assert not result.success

    @pytest.mark.asyncio
    async def test_callbacks_receive_transformed_lines(self):
        seen = []

        async def on_stdout(line):
            seen.append(("stdout", line))

        result = await run_async_stream(
            python_cmd("print('secret=abc'); print('plain')"),
            timeout=30,
            stdout_callback=on_stdout,
            stderr_callback=lambda line: seen.append(("stderr", line)),
            line_transform=lambda line: line.replace("abc", "***"),
        )

        assert seen == [("stdout", "secret=***"), ("stdout", "plain")]
        assert "abc" not in result.stdout

    @pytest.mark.asyncio
    async def test_env_is_not_inherited(self, monkeypatch):
        monkeypatch.setenv("LEAKY_PARENT_VAR", "should-not-leak")

        result = await run_async_stream(
            python_cmd("import os; print(sorted(os.environ))"),
            timeout=30,
            env={"ONLY_THIS": "1"},
        )

        assert "ONLY_THIS" in result.stdout
        assert "LEAKY_PARENT_VAR" not in result.stdout

    @pytest.mark.asyncio
    async def test_missing_executable_raises_oserror(self):
        with pytest.raises(OSError):
            await run_async_stream(["/nonexistent/railway-binary"], timeout=5)

    @pytest.mark.slow
    @pytest.mark.asyncio
    async def test_timeout_terminates_process(self):
        with pytest.raises(SubprocessTimeoutError) as exc_info:
            await run_async_stream(
                python_cmd("import time; print('started', flush=True); time.sleep(30)"),
                timeout=1,
                kill_grace=1,
            )

        partial = exc_info.value.partial
        assert partial.stdout == "started"
        assert partial.returncode != 0
        assert partial.duration_ms < 10_000

    @pytest.mark.slow
    @pytest.mark.asyncio
    async def test_sigkill_after_grace_when_sigterm_ignored(self):
        code = (
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('ignoring sigterm', flush=True)\n"
            "time.sleep(30)\n"
        )

        with pytest.raises(SubprocessTimeoutError) as exc_info:
            await run_async_stream(python_cmd(code), timeout=1, kill_grace=0.5)

        assert exc_info.value.partial.returncode == -9
        assert exc_info.value.partial.duration_ms < 10_000

    @pytest.mark.asyncio
    async def test_lines_longer_than_the_read_chunk_are_kept_whole(self):
        result = await run_async_stream(
            python_cmd("print('x' * 200000); print('done')"),
            timeout=30,
        )

        lines = result.stdout.split("\n")
        assert len(lines[0]) == 200000
        assert lines[1] == "done"

    @pytest.mark.asyncio
    async def test_failing_callback_terminates_child(self):
        pids = []

        def on_stdout(line):
            pids.append(int(line))
            raise RuntimeError("consumer failed")

        with pytest.raises(RuntimeError, match="consumer failed"):
            await run_async_stream(
                python_cmd("import os, time; print(os.getpid(), flush=True); time.sleep(30)"),
                timeout=30,
                stdout_callback=on_stdout,
                kill_grace=1,
            )

        assert len(pids) == 1
        with pytest.raises(ProcessLookupError):
            os.kill(pids[0], 0)
