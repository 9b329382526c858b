"""
Railway CLI executor.

Runs one validated Railway CLI command in a sandboxed child process:
- the command must be a member of the closed RailwayCommand set
- the child sees only RAILWAY_TOKEN, HOME, PATH and NODE_ENV
- no shell is involved; arguments go straight to exec
- every output line is sanitized before it is stored or delivered
- a timed-out process is terminated (SIGTERM, then SIGKILL)
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from ...config import get_settings
from ...exceptions import CliExecutionError, CliTimeoutError, CommandValidationError, DeploymentError
from ...utils.async_subprocess import SubprocessTimeoutError, run_async_stream
from ...utils.log_sanitizer import sanitize
from ..command_validator import CommandValidator, RailwayCommand, get_command_validator

logger = logging.getLogger(__name__)

# on_output(line, stream) where stream is "stdout" or "stderr"; may be a coroutine function
OutputCallback = Callable[[str, str], Any]


@dataclass
class CliCommandOptions:
    """One Railway CLI invocation."""
    command: Union[str, RailwayCommand]
    railway_token: str
    args: List[str] = field(default_factory=list)
    service: Optional[str] = None
    environment: Optional[str] = None
    flags: List[str] = field(default_factory=list)
    cwd: Optional[str] = None
    timeout_ms: Optional[int] = None
    on_output: Optional[OutputCallback] = None


@dataclass
class CliResult:
    """Outcome of a CLI invocation that ran to completion. Output is already sanitized."""
    command: str
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class RailwayCliExecutor:
    """Executes Railway CLI commands with validation, sandboxing and timeouts."""

    def __init__(self, settings=None, validator: Optional[CommandValidator] = None):
        self.settings = settings or get_settings()
        self.validator = validator or get_command_validator()

    def resolve_timeout_ms(self, command: RailwayCommand, timeout_ms: Optional[int] = None) -> int:
        """Default by command class, clamped to the accepted range."""
        if timeout_ms is None:
            if self.validator.is_deploy_command(command):
                timeout_ms = self.settings.railway_deploy_timeout_ms
            else:
                timeout_ms = self.settings.railway_command_timeout_ms

        return max(
            self.settings.railway_min_timeout_ms,
            min(int(timeout_ms), self.settings.railway_max_timeout_ms)
        )

    def build_sandbox_env(self, railway_token: str) -> Dict[str, str]:
        """The complete environment of the child process. Nothing is inherited."""
        return {
            "RAILWAY_TOKEN": railway_token,
            "HOME": self.settings.railway_sandbox_home,
            "PATH": self.settings.railway_cli_path_env,
            "NODE_ENV": "production",
        }

    def build_args(self, command: RailwayCommand, options: CliCommandOptions) -> List[str]:
        """
        Assemble the argument vector after the executable.

        Order: command, positional args, -s <service>, -e <environment>, flags.
        """
        args = [command.value, *options.args]
        if options.service:
            args.extend(["-s", options.service])
        if options.environment:
            args.extend(["-e", options.environment])
        args.extend(options.flags)
        return self.validator.validate_args(args)

    async def execute(self, options: CliCommandOptions) -> CliResult:
        """
        Run a Railway CLI command to completion.

        A non-zero exit is reported through CliResult.exit_code, not raised.

        Raises:
            CommandValidationError: Command not allowed, arguments malformed or token missing
            CliTimeoutError: The process exceeded its timeout and was terminated
            CliExecutionError: The process could not be started or output streaming failed
        """
        command = self.validator.validate_command(options.command)
        if not options.railway_token:
            raise CommandValidationError("Railway token is required")

        argv = [self.settings.railway_cli_path, *self.build_args(command, options)]
        timeout_ms = self.resolve_timeout_ms(command, options.timeout_ms)
        cwd = options.cwd or self.settings.railway_sandbox_home

        stdout_callback = None
        stderr_callback = None
        if options.on_output is not None:
            on_output = options.on_output

            def stdout_callback(line: str):
                return on_output(line, "stdout")

            def stderr_callback(line: str):
                return on_output(line, "stderr")

        try:
            os.makedirs(cwd, exist_ok=True)
        except OSError as e:
            raise CliExecutionError(f"Cannot prepare sandbox directory {cwd}: {e}") from e

        logger.info(f"Executing Railway CLI command '{command.value}' (timeout {timeout_ms}ms)")

        try:
            result = await run_async_stream(
                argv,
                timeout=timeout_ms / 1000,
                cwd=cwd,
                env=self.build_sandbox_env(options.railway_token),
                stdout_callback=stdout_callback,
                stderr_callback=stderr_callback,
                line_transform=sanitize,
                kill_grace=self.settings.railway_kill_grace_ms / 1000,
            )
        except SubprocessTimeoutError as e:
            logger.warning(
                f"Railway CLI command '{command.value}' timed out after {timeout_ms}ms and was terminated"
            )
            raise CliTimeoutError(
                command=command.value,
                timeout_ms=timeout_ms,
                duration_ms=e.partial.duration_ms,
                stdout=e.partial.stdout,
                stderr=e.partial.stderr,
            ) from e
        except OSError as e:
            logger.error(f"Failed to start Railway CLI for command '{command.value}': {e}")
            raise CliExecutionError(
                f"Failed to start Railway CLI ({self.settings.railway_cli_path}): {sanitize(str(e))}"
            ) from e
        except DeploymentError:
            raise
        except Exception as e:
            logger.error(f"Railway CLI command '{command.value}' failed while streaming output: {sanitize(str(e))}")
            raise CliExecutionError(
                f"Railway CLI command '{command.value}' failed while streaming output: {sanitize(str(e))}"
            ) from e

        # Killed by a signal
        exit_code = result.returncode if result.returncode >= 0 else 1

        log = logger.info if exit_code == 0 else logger.warning
        log(f"Railway CLI command '{command.value}' exited with code {exit_code} in {result.duration_ms}ms")

        return CliResult(
            command=command.value,
            exit_code=exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            duration_ms=result.duration_ms,
        )
