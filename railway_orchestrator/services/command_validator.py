"""
Command validation for Railway CLI execution.

Only a fixed, auditable set of Railway CLI operations may ever run. Commands are
represented as a closed enumeration and validated at the boundary before any
subprocess is spawned.
"""

import re
from typing import List, Optional, Union
from enum import Enum
import logging

from ..exceptions import CommandValidationError

logger = logging.getLogger(__name__)


class RailwayCommand(str, Enum):
    """Railway CLI commands permitted for execution."""
    WHOAMI = "whoami"
    STATUS = "status"
    LIST = "list"
    INIT = "init"
    LINK = "link"
    UP = "up"
    ADD = "add"
    REDEPLOY = "redeploy"
    RESTART = "restart"
    DOWN = "down"
    DOMAIN = "domain"
    LOGS = "logs"
    VARIABLE = "variable"
    ENVIRONMENT = "environment"
    SERVICE = "service"
    CONNECT = "connect"


class CommandValidator:
    """
    Validates Railway CLI invocations before execution.

    Security layers:
    1. Shell metacharacter rejection in the command name
    2. Explicit denylist for destructive or interactive commands
    3. Closed allowlist (RailwayCommand)
    4. Argument count, length and NUL byte checks
    """

    # Commands that should be blocked entirely (interactive or destructive)
    BLOCKED_COMMANDS = {
        "login", "logout", "open", "delete", "ssh", "shell", "run",
    }

    # Commands that build or redeploy an artifact get the extended timeout
    DEPLOY_COMMANDS = {RailwayCommand.UP, RailwayCommand.REDEPLOY}

    SHELL_INJECTION_PATTERN = re.compile(r"[;&|`$(){}<>\\\n]")

    MAX_ARGS = 50
    MAX_ARG_LENGTH = 32_768

    def validate_command(self, command: Union[str, RailwayCommand]) -> RailwayCommand:
        """
        Resolve a command name to its RailwayCommand member.

        Args:
            command: Command name or enum member

        Returns:
            The validated RailwayCommand

        Raises:
            CommandValidationError: If the command is empty, malformed, denied or unknown
        """
        if isinstance(command, RailwayCommand):
            return command

        if command is None or not str(command).strip():
            raise CommandValidationError("Railway CLI command is required")

        command = str(command)
        if self.SHELL_INJECTION_PATTERN.search(command):
            raise CommandValidationError(
                f"Railway CLI command contains forbidden characters: {command!r}"
            )

        parts = command.strip().split()
        if len(parts) > 1:
            raise CommandValidationError(
                f"Railway CLI command must be a single word, got: {command!r}"
            )
        base_cmd = parts[0]

        if base_cmd in self.BLOCKED_COMMANDS:
            logger.warning(f"Rejected denied Railway CLI command '{base_cmd}'")
            raise CommandValidationError(
                f"Railway CLI command '{base_cmd}' is explicitly denied for security reasons"
            )

        try:
            return RailwayCommand(base_cmd)
        except ValueError:
            allowed = ", ".join(c.value for c in RailwayCommand)
            logger.warning(f"Rejected unknown Railway CLI command '{base_cmd}'")
            raise CommandValidationError(
                f"Railway CLI command '{base_cmd}' is not in the allowlist. Allowed commands: {allowed}"
            ) from None

    def validate_args(self, args: Optional[List[str]]) -> List[str]:
        """
        Check the argument vector handed to the CLI.

        Arguments are passed to exec directly (no shell), so only size and
        NUL bytes are policed here.
        """
        args = list(args or [])
        if len(args) > self.MAX_ARGS:
            raise CommandValidationError(
                f"Railway CLI invocation has too many arguments (max {self.MAX_ARGS})"
            )

        for arg in args:
            if not isinstance(arg, str):
                raise CommandValidationError(f"Railway CLI arguments must be strings, got {type(arg).__name__}")
            if "\x00" in arg:
                raise CommandValidationError("Railway CLI arguments must not contain NUL bytes")
            if len(arg) > self.MAX_ARG_LENGTH:
                raise CommandValidationError(
                    f"Railway CLI argument exceeds maximum length of {self.MAX_ARG_LENGTH} characters"
                )
        return args

    def is_deploy_command(self, command: RailwayCommand) -> bool:
        return command in self.DEPLOY_COMMANDS


# Global validator instance
_validator_instance: Optional[CommandValidator] = None


def get_command_validator() -> CommandValidator:
    """Get or create the global command validator instance."""
    global _validator_instance
    if _validator_instance is None:
        _validator_instance = CommandValidator()
    return _validator_instance
