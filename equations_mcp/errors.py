"""Failures raised by the secure executor, and the error tools report to clients.

Exactly one of these is raised per failed ``SecureExecutor.safe_exec`` call.
None of them are retried by the executor; that decision belongs to the caller.
"""

import errno

from fastmcp.exceptions import ToolError


class ExecutionFailure(Exception):
    """Base class for every way a sandboxed command can fail."""

    def __init__(self, command: str, message: str):
        super().__init__(message)
        self.command = command


class CommandNotAllowedError(ExecutionFailure):
    """The command is not on the executor allowlist. Nothing was spawned."""

    def __init__(self, command: str):
        super().__init__(command, f"Command '{command}' is not allowed")


class SpawnError(ExecutionFailure):
    """The OS could not create the process (missing binary, bad cwd, ...)."""

    def __init__(self, command: str, cause: OSError):
        code = errno.errorcode.get(cause.errno, "EUNKNOWN") if cause.errno else "EUNKNOWN"
        super().__init__(command, f"Failed to start '{command}' ({code}): {cause}")
        self.cause = cause


class NonZeroExitError(ExecutionFailure):
    """The command ran and reported failure; stderr carries the tool's diagnostic."""

    # Keep messages readable when pdflatex dumps a full log
    MAX_STDERR_IN_MESSAGE = 1000

    def __init__(self, command: str, exit_code: int, stderr: str):
        excerpt = stderr.strip()[: self.MAX_STDERR_IN_MESSAGE]
        super().__init__(command, f"Command '{command}' failed with exit code {exit_code}: {excerpt}")
        self.exit_code = exit_code
        self.stderr = stderr


class SignalTerminatedError(ExecutionFailure):
    """The command crashed or was killed by a signal."""

    def __init__(self, command: str, signal_name: str):
        super().__init__(command, f"Command '{command}' was terminated by signal {signal_name}")
        self.signal = signal_name


class ExecutionTimeoutError(ExecutionFailure):
    """The command exceeded its wall-clock budget and was killed."""

    def __init__(self, command: str, timeout: float):
        super().__init__(command, f"Command '{command}' timed out after {timeout}s")
        self.timeout = timeout


class OutputBufferExceededError(ExecutionFailure):
    """The command produced more output than allowed and was killed."""

    def __init__(self, command: str, stream: str, limit: int):
        super().__init__(command, f"Command '{command}' {stream} exceeded maximum size ({limit} bytes)")
        self.stream = stream
        self.limit = limit


class EquationToolError(ToolError):
    """ToolError that also carries an MCP error code for logs and tests."""

    def __init__(self, message: str, code: int):
        super().__init__(message)
        self.code = code
