"""
Tests for the Railway CLI executor.

The child process is replaced by a fake built on asyncio.StreamReader so the
argument vector, environment and output handling can be inspected.
"""

import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from railway_orchestrator.exceptions import (
    CliExecutionError,
    CliTimeoutError,
    CommandValidationError,
)
from railway_orchestrator.services.command_validator import RailwayCommand
from railway_orchestrator.services.deployment.cli_executor import (
    CliCommandOptions,
    RailwayCliExecutor,
)
from railway_orchestrator.utils.async_subprocess import SubprocessResult, SubprocessTimeoutError

SPAWN = "railway_orchestrator.utils.async_subprocess.asyncio.create_subprocess_exec"


def make_process(stdout=b"", stderr=b"", returncode=0):
    process = MagicMock()
    process.pid = 4242
    process.stdout = asyncio.StreamReader()
    process.stdout.feed_data(stdout)
    process.stdout.feed_eof()
    process.stderr = asyncio.StreamReader()
    process.stderr.feed_data(stderr)
    process.stderr.feed_eof()
    process.returncode = returncode
    process.wait = AsyncMock(return_value=returncode)
    return process


@pytest.fixture
def executor(settings):
    return RailwayCliExecutor(settings=settings)


@pytest.mark.unit
class TestExecute:
    """Process spawning and output handling."""

    @pytest.mark.asyncio
    async def test_builds_argument_vector_in_order(self, executor):
        with patch(SPAWN, new=AsyncMock(return_value=make_process())) as spawn:
            await executor.execute(CliCommandOptions(
                command="up",
                args=["--detach"],
                service="svc-123",
                environment="staging",
                flags=["--json"],
                railway_token="tok",
            ))

        assert spawn.await_args.args == (
            "railway", "up", "--detach", "-s", "svc-123", "-e", "staging", "--json"
        )

    @pytest.mark.asyncio
    async def test_child_environment_is_exactly_the_sandbox(self, executor, settings, monkeypatch):
        monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "host-secret")

        with patch(SPAWN, new=AsyncMock(return_value=make_process())) as spawn:
            await executor.execute(CliCommandOptions(command="whoami", railway_token="tok-1"))

        kwargs = spawn.await_args.kwargs
        assert kwargs["env"] == {
            "RAILWAY_TOKEN": "tok-1",
            "HOME": settings.railway_sandbox_home,
            "PATH": "/usr/local/bin:/usr/bin:/bin",
            "NODE_ENV": "production",
        }
        assert kwargs["cwd"] == settings.railway_sandbox_home
        assert kwargs["stdin"] == asyncio.subprocess.DEVNULL

    @pytest.mark.asyncio
    async def test_output_is_sanitized_and_streamed(self, executor):
        process = make_process(
            stdout=b"Building image\n\nRAILWAY_TOKEN=abc123secret\n",
            stderr=b"warn: Bearer abc.def\n",
        )
        received = []

        async def on_output(line, stream):
            received.append((stream, line))

        with patch(SPAWN, new=AsyncMock(return_value=process)):
            result = await executor.execute(CliCommandOptions(
                command="up", railway_token="tok", on_output=on_output
            ))

        assert result.success
        assert result.stdout == "Building image\nRAILWAY_TOKEN=***"
        assert result.stderr == "warn: Bearer ***"
        assert ("stdout", "Building image") in received
        assert ("stdout", "RAILWAY_TOKEN=***") in received
        assert ("stderr", "warn: Bearer ***") in received
        assert all("abc123secret" not in line for _, line in received)

    @pytest.mark.asyncio
    async def test_sync_output_callback_supported(self, executor):
        received = []

        with patch(SPAWN, new=AsyncMock(return_value=make_process(stdout=b"hello\n"))):
            await executor.execute(CliCommandOptions(
                command="logs",
                railway_token="tok",
                on_output=lambda line, stream: received.append(line),
            ))

        assert received == ["hello"]

    @pytest.mark.asyncio
    async def test_non_zero_exit_is_returned_not_raised(self, executor):
        process = make_process(stderr=b"Build failed\n", returncode=1)

        with patch(SPAWN, new=AsyncMock(return_value=process)):
            result = await executor.execute(CliCommandOptions(command="up", railway_token="tok"))

        assert result.exit_code == 1
        assert not result.success
        assert result.stderr == "Build failed"
        assert result.command == "up"

    @pytest.mark.asyncio
    async def test_signal_exit_maps_to_one(self, executor):
        with patch(SPAWN, new=AsyncMock(return_value=make_process(returncode=-9))):
            result = await executor.execute(CliCommandOptions(command="up", railway_token="tok"))

        assert result.exit_code == 1

    @pytest.mark.asyncio
    async def test_spawn_failure_raises_execution_error(self, executor):
        with patch(SPAWN, new=AsyncMock(side_effect=FileNotFoundError("railway"))):
            with pytest.raises(CliExecutionError, match="Failed to start Railway CLI"):
                await executor.execute(CliCommandOptions(command="whoami", railway_token="tok"))

    @pytest.mark.asyncio
    async def test_long_output_line_is_delivered_whole(self, executor):
        process = make_process(stdout=b"a" * 100_000 + b"\nDeployed\n")
        received = []

        with patch(SPAWN, new=AsyncMock(return_value=process)):
            result = await executor.execute(CliCommandOptions(
                command="up",
                railway_token="tok",
                on_output=lambda line, stream: received.append(line),
            ))

        assert result.success
        assert [len(line) for line in received] == [100_000, len("Deployed")]

    @pytest.mark.asyncio
    async def test_streaming_failure_raises_execution_error(self, executor):
        stream = AsyncMock(side_effect=ValueError("Separator is not found, and chunk exceed the limit"))

        with patch("railway_orchestrator.services.deployment.cli_executor.run_async_stream", new=stream):
            with pytest.raises(CliExecutionError, match="failed while streaming output") as exc_info:
                await executor.execute(CliCommandOptions(command="up", railway_token="tok"))

        assert isinstance(exc_info.value.__cause__, ValueError)

    @pytest.mark.asyncio
    async def test_timeout_raises_cli_timeout_error(self, executor):
        partial = SubprocessResult(
            returncode=-15,
            stdout="Uploading RAILWAY_TOKEN=***",
            stderr="",
            args=["railway", "up"],
            duration_ms=600_004,
        )
        stream = AsyncMock(side_effect=SubprocessTimeoutError(["railway", "up"], 600.0, partial))

        with patch("railway_orchestrator.services.deployment.cli_executor.run_async_stream", new=stream):
            with pytest.raises(CliTimeoutError) as exc_info:
                await executor.execute(CliCommandOptions(command="up", railway_token="tok"))

        error = exc_info.value
        assert error.command == "up"
        assert error.timeout_ms == 600_000
        assert error.duration_ms == 600_004
        assert error.stdout == "Uploading RAILWAY_TOKEN=***"
        assert stream.await_args.kwargs["timeout"] == 600.0
        assert stream.await_args.kwargs["kill_grace"] == 5.0


@pytest.mark.unit
class TestValidationBeforeSpawn:
    """Nothing is spawned for rejected invocations."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("command", ["login", "ssh", "delete", "run"])
    async def test_denied_command_never_spawns(self, executor, command):
        with patch(SPAWN, new=AsyncMock()) as spawn:
            with pytest.raises(CommandValidationError, match="explicitly denied"):
                await executor.execute(CliCommandOptions(command=command, railway_token="tok"))

        spawn.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_token_rejected(self, executor):
        with patch(SPAWN, new=AsyncMock()) as spawn:
            with pytest.raises(CommandValidationError, match="token is required"):
                await executor.execute(CliCommandOptions(command="whoami", railway_token=""))

        spawn.assert_not_called()

    @pytest.mark.asyncio
    async def test_nul_byte_argument_rejected(self, executor):
        with patch(SPAWN, new=AsyncMock()) as spawn:
            with pytest.raises(CommandValidationError):
                await executor.execute(CliCommandOptions(
                    command="variable", args=["set", "A=\x00"], railway_token="tok"
                ))

        spawn.assert_not_called()


@pytest.mark.unit
class TestTimeouts:

    def test_deploy_commands_default_to_ten_minutes(self, executor):
        assert executor.resolve_timeout_ms(RailwayCommand.UP) == 600_000
        assert executor.resolve_timeout_ms(RailwayCommand.REDEPLOY) == 600_000

    def test_other_commands_default_to_two_minutes(self, executor):
        assert executor.resolve_timeout_ms(RailwayCommand.STATUS) == 120_000
        assert executor.resolve_timeout_ms(RailwayCommand.VARIABLE) == 120_000

    def test_requested_timeout_is_clamped(self, executor):
        assert executor.resolve_timeout_ms(RailwayCommand.STATUS, 100) == 5_000
        assert executor.resolve_timeout_ms(RailwayCommand.STATUS, 30_000) == 30_000
        assert executor.resolve_timeout_ms(RailwayCommand.UP, 10_000_000) == 600_000
