"""
Async subprocess utilities
Streams child process output line by line and guarantees termination on timeout.
"""
import asyncio
import inspect
import logging
import time
from typing import Optional, List, Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

# Bytes requested per read; lines are reassembled from chunks
READ_CHUNK_SIZE = 65536


@dataclass
class SubprocessResult:
    """Result from subprocess execution (mirrors subprocess.CompletedProcess)"""
    returncode: int
    stdout: str
    stderr: str
    args: List[str]
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.returncode == 0


@dataclass
class _StreamCapture:
    stdout: List[str] = field(default_factory=list)
    stderr: List[str] = field(default_factory=list)


class SubprocessTimeoutError(Exception):
    """Raised after a timed-out child process has been terminated."""

    def __init__(self, args: List[str], timeout: float, partial: SubprocessResult):
        super().__init__(f"Command {args[0] if args else ''} timed out after {timeout}s")
        self.cmd = args
        self.timeout = timeout
        self.partial = partial


async def terminate_process(process: asyncio.subprocess.Process, grace: float = 5.0) -> None:
    """
    Stop a child process: SIGTERM first, SIGKILL if it is still alive after `grace` seconds.

    Returns once the process has actually exited.
    """
    if process.returncode is not None:
        return

    try:
        process.terminate()
    except ProcessLookupError:
        return

    try:
        await asyncio.wait_for(process.wait(), timeout=grace)
    except asyncio.TimeoutError:
        logger.warning(f"Process {process.pid} did not exit after SIGTERM, sending SIGKILL")
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()


async def run_async_stream(
    cmd: List[str],
    timeout: Optional[float] = None,
    cwd: Optional[str] = None,
    env: Optional[dict] = None,
    stdout_callback: Optional[Callable] = None,
    stderr_callback: Optional[Callable] = None,
    line_transform: Optional[Callable[[str], str]] = None,
    kill_grace: float = 5.0,
) -> SubprocessResult:
    """
    Run subprocess with real-time output streaming

    Args:
        cmd: Command and arguments
        timeout: Optional timeout in seconds
        cwd: Working directory
        env: Environment variables (passed as-is, nothing is inherited when given)
        stdout_callback: Function to call with each stdout line (sync or async)
        stderr_callback: Function to call with each stderr line (sync or async)
        line_transform: Applied to every line before it is collected or delivered
        kill_grace: Seconds between SIGTERM and SIGKILL once the timeout elapses

    Returns:
        SubprocessResult

    Raises:
        OSError: If the process cannot be started
        SubprocessTimeoutError: If the timeout elapsed (process already terminated)

    Any other failure while streaming (a raising callback, cancellation) also
    terminates the child before the exception propagates.
    """
    started = time.monotonic()
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        env=env
    )

    capture = _StreamCapture()

    async def emit(raw: bytes, callback, lines_list):
        line_text = raw.decode('utf-8', errors='replace').rstrip('\r\n')
        if not line_text:
            return
        if line_transform:
            line_text = line_transform(line_text)
        lines_list.append(line_text)
        if callback:
            result = callback(line_text)
            if inspect.isawaitable(result):
                await result

    async def read_stream(stream, callback, lines_list):
        """Read stream in chunks and emit complete lines; line length is unbounded"""
        buffer = bytearray()
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            buffer.extend(chunk)
            newline = buffer.find(b"\n")
            while newline >= 0:
                raw = bytes(buffer[:newline])
                del buffer[:newline + 1]
                await emit(raw, callback, lines_list)
                newline = buffer.find(b"\n")
        if buffer:
            await emit(bytes(buffer), callback, lines_list)

    def snapshot() -> SubprocessResult:
        return SubprocessResult(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout='\n'.join(capture.stdout),
            stderr='\n'.join(capture.stderr),
            args=cmd,
            duration_ms=int((time.monotonic() - started) * 1000)
        )

    # Read both streams concurrently
    try:
        await asyncio.wait_for(
            asyncio.gather(
                read_stream(process.stdout, stdout_callback, capture.stdout),
                read_stream(process.stderr, stderr_callback, capture.stderr),
                process.wait()
            ),
            timeout=timeout
        )
    except asyncio.TimeoutError:
        await terminate_process(process, grace=kill_grace)
        raise SubprocessTimeoutError(cmd, timeout, snapshot())
    except BaseException:
        # Callback failure or cancellation: never leave the child running
        await asyncio.shield(terminate_process(process, grace=kill_grace))
        raise

    return snapshot()
