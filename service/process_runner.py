"""External process execution with deadlines for avmux."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
import os
import shlex
import subprocess
import time
from typing import Mapping, Sequence, Tuple

from domain.media_mux import (
    INVALID_COMMAND_CODE,
    PROCESS_FAILED_CODE,
    PROCESS_NOT_FOUND_CODE,
    PROCESS_TIMEOUT_CODE,
    ExecutionError,
    ProcessTimeoutError,
)

LOGGER = logging.getLogger("avmux.process")
TERMINATE_GRACE_SECONDS = 3.0


class ProcessOutcome(str, Enum):
    """How an external invocation ended."""

    SUCCESS = "success"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class ProcessResult:
    """Observable result of one external invocation."""

    command: Tuple[str, ...]
    outcome: ProcessOutcome
    return_code: int | None
    elapsed_seconds: float
    stdout: str | None = None
    stderr: str | None = None


def validate_command(command: Sequence[str]) -> Tuple[str, ...]:
    """Ensure every token is a plain string safe for exec."""
    if not command:
        raise ExecutionError(INVALID_COMMAND_CODE, "command is empty")
    tokens = tuple(command)
    for token in tokens:
        if not isinstance(token, str):
            raise ExecutionError(
                INVALID_COMMAND_CODE, f"command token is not a string: {token!r}"
            )
        if "\x00" in token:
            raise ExecutionError(
                INVALID_COMMAND_CODE, "command token contains a NUL character"
            )
    if not tokens[0].strip():
        raise ExecutionError(INVALID_COMMAND_CODE, "executable is empty")
    return tokens


def stop_process(process: subprocess.Popen[str]) -> None:
    """Terminate a subprocess and wait so it is always reaped."""
    process.terminate()
    try:
        process.communicate(timeout=TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        process.kill()
        process.communicate()


def run_process(
    command: Sequence[str],
    cwd: str | None = None,
    env_overrides: Mapping[str, str] | None = None,
    timeout_seconds: float = 0.0,
    capture_output: bool = False,
) -> ProcessResult:
    """Run a command to completion.

    Output is streamed to this process's stdout/stderr unless
    ``capture_output`` is set. A ``timeout_seconds`` of zero means no
    deadline. Non-zero exits and timeouts are reported through the
    result's outcome, never raised.
    """
    tokens = validate_command(command)
    env = None
    if env_overrides:
        env = dict(os.environ)
        env.update(env_overrides)
    log_level = logging.DEBUG if capture_output else logging.INFO
    LOGGER.log(log_level, "running: %s", shlex.join(tokens))

    pipe = subprocess.PIPE if capture_output else None
    started = time.monotonic()
    try:
        process = subprocess.Popen(
            tokens,
            cwd=cwd,
            env=env,
            stdout=pipe,
            stderr=pipe,
            text=True,
        )
    except (FileNotFoundError, PermissionError, NotADirectoryError) as exc:
        raise ExecutionError(
            PROCESS_NOT_FOUND_CODE, f"{tokens[0]} could not be started: {exc}"
        ) from exc

    deadline = timeout_seconds if timeout_seconds > 0 else None
    try:
        stdout, stderr = process.communicate(timeout=deadline)
    except subprocess.TimeoutExpired:
        stop_process(process)
        return ProcessResult(
            command=tokens,
            outcome=ProcessOutcome.TIMED_OUT,
            return_code=process.returncode,
            elapsed_seconds=time.monotonic() - started,
        )
    finally:
        if process.poll() is None:
            stop_process(process)

    outcome = ProcessOutcome.SUCCESS
    if process.returncode != 0:
        outcome = ProcessOutcome.FAILED
    return ProcessResult(
        command=tokens,
        outcome=outcome,
        return_code=process.returncode,
        elapsed_seconds=time.monotonic() - started,
        stdout=stdout,
        stderr=stderr,
    )


def raise_for_outcome(
    result: ProcessResult, tool_name: str, timeout_seconds: float = 0.0
) -> None:
    """Map a failed or timed-out result to the matching exception."""
    if result.outcome == ProcessOutcome.TIMED_OUT:
        raise ProcessTimeoutError(
            PROCESS_TIMEOUT_CODE,
            f"{tool_name} timed out after {format_seconds(timeout_seconds)}",
        )
    if result.outcome == ProcessOutcome.FAILED:
        raise ExecutionError(
            PROCESS_FAILED_CODE,
            f"{tool_name} exited with status {result.return_code}",
        )


def format_seconds(seconds: float) -> str:
    """Format a duration for messages."""
    return f"{seconds:g}s"
