"""
Bounded command execution.

Every call into an external CLI (the container runtime, the infrastructure
harness) goes through execute_with_timeout so a wedged process cannot stall a
scenario. Output is captured as text and truncated with a visible marker.

Exit code conventions follow the shell:
- 124: the command timed out and its process group was killed
- 126: permission denied
- 127: command not found
"""

import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

EXIT_TIMEOUT = 124
EXIT_PERMISSION_DENIED = 126
EXIT_NOT_FOUND = 127


@dataclass
class ExecutionResult:
    """Outcome of one external command."""

    command: List[str]
    success: bool
    exit_code: int
    stdout: str
    stderr: str
    elapsed_ms: int
    timed_out: bool
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    # True when the binary could not be started at all
    launch_failed: bool = False

    def describe(self) -> str:
        if self.timed_out:
            return f"'{' '.join(self.command)}' timed out after {self.elapsed_ms}ms"
        detail = self.stderr.strip() or self.stdout.strip() or "no output"
        return f"'{' '.join(self.command)}' exited {self.exit_code}: {detail}"


def execute_with_timeout(
    command: List[str],
    timeout_seconds: float = 30,
    max_output_size: int = 1024 * 1024,
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> ExecutionResult:
    """
    Execute a command with a timeout and output size limit.

    Args:
        command: Command and arguments to execute
        timeout_seconds: Maximum execution time in seconds
        max_output_size: Maximum size for stdout/stderr in characters
        cwd: Working directory for command execution
        env: Environment variables for the command

    Returns:
        ExecutionResult: exit status, captured output and timing

    Raises:
        ValueError: If command or limits are invalid
    """
    if not command:
        raise ValueError("Command cannot be empty")

    if timeout_seconds <= 0:
        raise ValueError("Timeout must be positive")

    if max_output_size <= 0:
        raise ValueError("Max output size must be positive")

    logger.debug(f"Executing command with timeout {timeout_seconds}s: {' '.join(command)}")

    start_time = time.time()

    try:
        process = subprocess.Popen(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            cwd=cwd,
            env=env,
            start_new_session=os.name != "nt",
        )
    except FileNotFoundError:
        logger.debug(f"Command not found: {command[0]}")
        return _failed_launch(command, EXIT_NOT_FOUND, f"Command not found: {command[0]}", start_time)
    except PermissionError:
        logger.debug(f"Permission denied executing command: {command[0]}")
        return _failed_launch(
            command, EXIT_PERMISSION_DENIED, f"Permission denied: {command[0]}", start_time
        )

    try:
        stdout, stderr = process.communicate(timeout=timeout_seconds)
        timed_out = False
    except subprocess.TimeoutExpired:
        _kill_process_group(process)
        try:
            stdout, stderr = process.communicate(timeout=1)
        except subprocess.TimeoutExpired:
            stdout, stderr = "", ""
        timed_out = True

    elapsed_ms = int((time.time() - start_time) * 1000)
    exit_code = EXIT_TIMEOUT if timed_out else process.returncode

    stdout = stdout or ""
    stderr = stderr or ""
    stdout_truncated = len(stdout) > max_output_size
    stderr_truncated = len(stderr) > max_output_size
    if stdout_truncated:
        stdout = truncate_output(stdout, max_output_size, "stdout")
    if stderr_truncated:
        stderr = truncate_output(stderr, max_output_size, "stderr")

    logger.debug(f"Command completed: exit_code={exit_code}, elapsed={elapsed_ms}ms")

    return ExecutionResult(
        command=list(command),
        success=not timed_out and exit_code == 0,
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
        elapsed_ms=elapsed_ms,
        timed_out=timed_out,
        stdout_truncated=stdout_truncated,
        stderr_truncated=stderr_truncated,
    )


def _kill_process_group(process: subprocess.Popen) -> None:
    if os.name == "nt":
        process.kill()
        return
    try:
        os.killpg(os.getpgid(process.pid), signal.SIGTERM)
        time.sleep(0.1)
        os.killpg(os.getpgid(process.pid), signal.SIGKILL)
    except ProcessLookupError:
        pass  # already gone


def _failed_launch(command: List[str], exit_code: int, message: str, start_time: float) -> ExecutionResult:
    return ExecutionResult(
        command=list(command),
        success=False,
        exit_code=exit_code,
        stdout="",
        stderr=message,
        elapsed_ms=int((time.time() - start_time) * 1000),
        timed_out=False,
        launch_failed=True,
    )


def truncate_output(output: str, max_size: int, stream_name: str = "output") -> str:
    """
    Truncate output, keeping its beginning and end around a marker.

    Args:
        output: The output string to truncate
        max_size: Maximum allowed size in characters
        stream_name: Name of the stream for the truncation message

    Returns:
        str: Truncated output with truncation indicator
    """
    if len(output) <= max_size:
        return output

    truncation_msg = f"\n[TRUNCATED: {stream_name} too long, showing first and last portions]\n"
    available_size = max_size - len(truncation_msg)

    if available_size <= 100:
        return output[: max(max_size - 50, 0)] + f"\n[TRUNCATED: {stream_name} too long]"

    # 60% head, 40% tail
    head_size = int(available_size * 0.6)
    tail_size = available_size - head_size

    return output[:head_size] + truncation_msg + output[-tail_size:]
