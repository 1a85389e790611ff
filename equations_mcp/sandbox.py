"""
Command-injection-safe process execution for the equation renderer.

pdflatex and ImageMagick are started straight from an argument vector, never
through a shell, with a rebuilt environment, capped output and a hard
wall-clock limit. Every call owns its own process, buffers and timeout scope.
"""

import contextlib
import os
import re
import shutil
import signal
import stat
import subprocess
import tempfile
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence

import anyio
from anyio.abc import ByteReceiveStream, Process
from fastmcp.utilities.logging import get_logger

from .errors import (
    CommandNotAllowedError,
    ExecutionFailure,
    ExecutionTimeoutError,
    NonZeroExitError,
    OutputBufferExceededError,
    SignalTerminatedError,
    SpawnError,
)
from .models import (
    DEFAULT_CONVERSION_TIMEOUT,
    DEFAULT_EXEC_TIMEOUT,
    DEFAULT_MAX_OUTPUT_BYTES,
    ExecutionResult,
)

logger = get_logger("equations-mcp.sandbox")

# SECURITY: Only these binaries may ever be started
ALLOWED_COMMANDS: FrozenSet[str] = frozenset({"pdflatex", "convert", "magick"})

# SECURITY: Child PATH is fixed, loader hooks are never forwarded
RESTRICTED_PATH = "/usr/local/bin:/usr/bin:/bin"
STRIPPED_ENV_VARS = ("LD_PRELOAD", "LD_LIBRARY_PATH")

PDFLATEX_FLAGS = [
    "-no-shell-escape",  # SECURITY: \write18 disabled inside the engine too
    "-halt-on-error",
    "-interaction=nonstopmode",
    "-file-line-error",
    "-output-directory=.",
]

CONVERT_FLAGS = [
    "-resize", "4000x4000>",
    "-quality", "95",
    "-colorspace", "sRGB",
    "-depth", "8",
    "-define", "png:compression-level=6",
    "-define", "png:color-type=2",
]

# Density used when rasterizing the freshly compiled PDF
PDF_RASTER_DENSITY = "300"

IMAGEMAGICK_LIMITS = {
    "MAGICK_MEMORY_LIMIT": "2GB",
    "MAGICK_MAP_LIMIT": "4GB",
    "MAGICK_DISK_LIMIT": "8GB",
    "MAGICK_TIME_LIMIT": "120",
}

# ============================================================================
# ARGUMENT SANITIZATION
# ============================================================================

# Shell variable expansion is removed as a whole (test${IFS}whoami -> testwhoami)
_SHELL_VARIABLE = re.compile(r"\$\{[^}]*\}")

# Shell metacharacters, ImageMagick coder/indirection markers (: and @) and
# control characters. Tab and form feed are left alone.
_DANGEROUS_CHARS = re.compile(r"[;|&$`(){}<>:@\x00-\x08\x0a\x0b\x0d-\x1f\x7f]")

_PATH_SEPARATORS = re.compile(r"[\\/]")

# Fixed pipeline flag values that contain ":" or ">" and must reach ImageMagick
# as written. Only these exact strings are exempt.
_PIPELINE_FLAG_VALUES: FrozenSet[str] = frozenset(
    value for value in CONVERT_FLAGS if _DANGEROUS_CHARS.search(value)
)


def has_path_component(arg: str) -> bool:
    """Whether the argument looks like a path (separator or '..')."""
    return bool(_PATH_SEPARATORS.search(arg)) or ".." in arg


def has_dangerous_chars(arg: str) -> bool:
    """Whether the argument holds shell metacharacters or control characters."""
    return bool(_SHELL_VARIABLE.search(arg) or _DANGEROUS_CHARS.search(arg))


def basename(arg: str) -> str:
    """Final path segment, treating both '/' and '\\' as separators."""
    name = _PATH_SEPARATORS.split(arg)[-1]
    # A bare ".." or "." is a directory reference, not a file name
    return "" if name in (".", "..") else name


def strip_dangerous_chars(arg: str) -> str:
    """Remove shell variable expansions first, then single dangerous characters."""
    return _DANGEROUS_CHARS.sub("", _SHELL_VARIABLE.sub("", arg))


def sanitize_argument(arg: str) -> str:
    """
    Turn one untrusted argument into a token that is safe to hand to exec.

    Decision table:
        path + dangerous chars  -> basename, then dangerous chars stripped
        path only               -> basename, otherwise untouched
        dangerous chars only    -> dangerous chars stripped
        neither                 -> unchanged (Unicode look-alikes included)

    The fixed CONVERT_FLAGS values (e.g. "4000x4000>") are passed through
    untouched; the same text anywhere else is sanitized like any argument.

    Unicode homoglyphs of shell metacharacters are left alone on purpose: the
    argument never reaches a shell, so they carry no meaning. The result may be
    an empty string, which is still passed to the process.

    Args:
        arg: Untrusted argument

    Returns:
        Sanitized argument, never longer than the input

    Example:
        >>> sanitize_argument("../../etc/passwd;whoami")
        'passwdwhoami'
    """
    if not arg or arg in _PIPELINE_FLAG_VALUES:
        return arg

    path_like = has_path_component(arg)
    dangerous = has_dangerous_chars(arg)

    if path_like:
        arg = basename(arg)
    if dangerous:
        arg = strip_dangerous_chars(arg)
    return arg


def build_child_env(extra_env: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """
    Build the environment for a child process.

    Starts from a copy of the current environment, layers the caller's entries
    on top, then drops LD_PRELOAD/LD_LIBRARY_PATH and pins PATH. Caller values
    for those three keys are therefore always discarded. os.environ itself is
    never modified.
    """
    env = dict(os.environ)
    if extra_env:
        env.update(extra_env)
    for key in STRIPPED_ENV_VARS:
        env.pop(key, None)
    env["PATH"] = RESTRICTED_PATH
    return env


def _current_uid() -> Optional[int]:
    getuid = getattr(os, "getuid", None)
    return getuid() if getuid else None


def _current_gid() -> Optional[int]:
    getgid = getattr(os, "getgid", None)
    return getgid() if getgid else None


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"signal {signum}"


# ============================================================================
# BOUNDED PROCESS RUNNER
# ============================================================================

SpawnFunc = Callable[..., Awaitable[Process]]


class _OutputCapture:
    """
    Per-call stdout/stderr buffers with at-most-once settlement.

    Whichever terminal condition settles first (overflow, timeout, exit) is the
    outcome of the call. Everything after that, including late output, is
    ignored.
    """

    def __init__(self, command: str, max_bytes: int):
        self.command = command
        self.max_bytes = max_bytes
        self.buffers = {"stdout": bytearray(), "stderr": bytearray()}
        self.settled = False
        self.failure: Optional[ExecutionFailure] = None

    def settle(self, failure: Optional[ExecutionFailure] = None) -> bool:
        """Record the outcome. Returns False if one was already recorded."""
        if self.settled:
            return False
        self.settled = True
        self.failure = failure
        if failure is not None:
            # Fail closed: partial output is never handed back
            for buffer in self.buffers.values():
                buffer.clear()
        return True

    def append(self, stream: str, chunk: bytes) -> bool:
        """Buffer a chunk. Returns False once the capture window is closed."""
        if self.settled:
            return False
        buffer = self.buffers[stream]
        if len(buffer) + len(chunk) > self.max_bytes:
            self.settle(OutputBufferExceededError(self.command, stream, self.max_bytes))
            return False
        buffer.extend(chunk)
        return True

    def text(self, stream: str) -> str:
        return self.buffers[stream].decode("utf-8", errors="replace")


class SecureExecutor:
    """
    Runs allowlisted external commands without a shell.

    One instance can serve any number of sequential or concurrent calls; no
    state is shared between calls.

    Args:
        allowed_commands: Command names that may be executed
        default_timeout: Wall-clock limit in seconds when a call sets none
        max_output_bytes: Cap applied to stdout and stderr independently
        latex_timeout: Limit for pdflatex in compile_pdflatex
        image_timeout: Limit for ImageMagick steps
        spawn: Process-creation primitive (anyio.open_process by default)
    """

    def __init__(
        self,
        allowed_commands: Optional[FrozenSet[str]] = None,
        default_timeout: float = DEFAULT_EXEC_TIMEOUT,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        latex_timeout: float = DEFAULT_EXEC_TIMEOUT,
        image_timeout: float = DEFAULT_CONVERSION_TIMEOUT,
        spawn: Optional[SpawnFunc] = None,
    ):
        self.allowed_commands = frozenset(allowed_commands if allowed_commands is not None else ALLOWED_COMMANDS)
        self.default_timeout = default_timeout
        self.max_output_bytes = max_output_bytes
        self.latex_timeout = latex_timeout
        self.image_timeout = image_timeout
        self._spawn: SpawnFunc = spawn or anyio.open_process

    async def safe_exec(
        self,
        command: str,
        args: Sequence[str],
        *,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> ExecutionResult:
        """
        Execute an allowlisted command and capture its output.

        Args:
            command: Binary name, must be in the allowlist
            args: Untrusted arguments, sanitized before use
            cwd: Working directory for the child
            env: Extra environment entries (PATH and LD_* are ignored)
            timeout: Wall-clock limit in seconds

        Returns:
            ExecutionResult with exit code 0 (stderr may still hold warnings)

        Raises:
            CommandNotAllowedError: command not in the allowlist (nothing spawned)
            SpawnError: the OS could not start the process
            OutputBufferExceededError: stdout or stderr went over the cap
            ExecutionTimeoutError: the process outlived its timeout
            SignalTerminatedError: the process died from a signal
            NonZeroExitError: the process exited with a non-zero code
        """
        # SECURITY: Allowlist check happens before anything else
        if command not in self.allowed_commands:
            logger.warning(f"Rejected command '{command}': not in allowlist")
            raise CommandNotAllowedError(command)

        sanitized_args = [sanitize_argument(arg) for arg in args]
        if timeout is None:
            timeout = self.default_timeout

        logger.debug(f"Executing {command} {sanitized_args} (cwd={cwd}, timeout={timeout}s)")

        try:
            # SECURITY: Sequence form means exec, never a shell
            process = await self._spawn(
                [command, *sanitized_args],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=cwd,
                env=build_child_env(env),
                start_new_session=False,
                user=_current_uid(),
                group=_current_gid(),
            )
        except OSError as e:
            logger.error(f"Failed to start {command}: {e}")
            raise SpawnError(command, e) from e

        capture = _OutputCapture(command, self.max_output_bytes)
        returncode: Optional[int] = None

        async with process:
            try:
                with anyio.fail_after(timeout):
                    async with anyio.create_task_group() as tg:
                        tg.start_soon(self._drain, process, process.stdout, "stdout", capture)
                        tg.start_soon(self._drain, process, process.stderr, "stderr", capture)
                    returncode = await process.wait()
            except TimeoutError:
                if capture.settle(ExecutionTimeoutError(command, timeout)):
                    logger.error(f"{command} timed out after {timeout}s, killing process")
                self._kill(process)

        if capture.failure is not None:
            raise capture.failure

        # Capture window closes at process exit
        capture.settle()
        return self._result(command, sanitized_args, returncode, capture)

    async def _drain(
        self,
        process: Process,
        stream: Optional[ByteReceiveStream],
        name: str,
        capture: _OutputCapture,
    ) -> None:
        if stream is None:
            return
        async for chunk in stream:
            if capture.settled:
                break
            if not capture.append(name, chunk):
                logger.error(f"{capture.command} {name} exceeded {capture.max_bytes} bytes, killing process")
                self._kill(process)
                break

    @staticmethod
    def _kill(process: Process) -> None:
        """SIGKILL the child; it may already be gone."""
        with contextlib.suppress(ProcessLookupError):
            process.kill()

    def _result(
        self,
        command: str,
        args: List[str],
        returncode: Optional[int],
        capture: _OutputCapture,
    ) -> ExecutionResult:
        stdout = capture.text("stdout")
        stderr = capture.text("stderr")

        if returncode == 0:
            logger.debug(f"{command} exited cleanly")
            return ExecutionResult(stdout=stdout, stderr=stderr, exit_code=0)

        if returncode is not None and returncode < 0:
            signal_name = _signal_name(-returncode)
            logger.error(f"{command} terminated by {signal_name}")
            raise SignalTerminatedError(command, signal_name)

        logger.error(f"{command} {args} failed with exit code {returncode}: {stderr[:500]}")
        raise NonZeroExitError(command, returncode if returncode is not None else -1, stderr)

    # ========================================================================
    # PIPELINES
    # ========================================================================

    async def compile_pdflatex(self, tex_filename: str, work_dir: str) -> ExecutionResult:
        """
        Typeset a .tex file with pdflatex, then rasterize it to PNG.

        The PNG step is best-effort: if ImageMagick fails or times out the
        error is logged and the pdflatex result is still returned. Callers
        should check that the PNG exists.

        Args:
            tex_filename: Name of the .tex file inside work_dir (reduced to its basename)
            work_dir: Job directory, used as cwd and TEXMFOUTPUT

        Returns:
            ExecutionResult of the pdflatex run

        Raises:
            ExecutionFailure: If pdflatex itself fails
        """
        filename = basename(tex_filename)
        stem = os.path.splitext(filename)[0]

        result = await self.safe_exec(
            "pdflatex",
            [*PDFLATEX_FLAGS, filename],
            cwd=work_dir,
            timeout=self.latex_timeout,
            env={
                "TEXMFOUTPUT": work_dir,  # SECURITY: Restrict output location
                "openout_any": "r",  # SECURITY: Restricted file output mode
                "openin_any": "a",
            },
        )

        try:
            await self.safe_exec(
                "convert",
                ["-density", PDF_RASTER_DENSITY, f"{stem}.pdf", *CONVERT_FLAGS, f"{stem}.png"],
                cwd=work_dir,
                timeout=self.image_timeout,
                env=IMAGEMAGICK_LIMITS,
            )
        except ExecutionFailure as e:
            logger.error(f"PDF to PNG conversion failed: {e}")

        return result

    async def convert_image(self, input_path: str, output_path: str, work_dir: str) -> ExecutionResult:
        """
        Post-process an image with ImageMagick.

        Args:
            input_path: Source image (reduced to its basename)
            output_path: Destination image (reduced to its basename)
            work_dir: Directory holding both images

        Returns:
            ExecutionResult of the convert run

        Raises:
            ExecutionFailure: If the conversion fails
        """
        return await self.safe_exec(
            "convert",
            [basename(input_path), *CONVERT_FLAGS, basename(output_path)],
            cwd=work_dir,
            timeout=self.image_timeout,
            env=IMAGEMAGICK_LIMITS,
        )


# =============================================================================
# JOB FILES
# =============================================================================


def secure_write_file(path: str, content: bytes, mode: int = 0o600) -> None:
    """
    Write a job file atomically with the given permissions.

    The temp file sits next to the target and gets its mode before any byte
    is written, then replaces the target in one rename. The final path never
    holds partial content or looser permissions.

    Raises:
        RuntimeError: If the write or the rename fails
    """
    target = Path(path).absolute()
    target.parent.mkdir(parents=True, exist_ok=True)

    fd, temp_path = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.", suffix=".part")
    try:
        with os.fdopen(fd, "wb") as handle:
            if hasattr(os, "fchmod"):
                os.fchmod(handle.fileno(), mode)
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, target)
    except OSError as e:
        with contextlib.suppress(OSError):
            os.unlink(temp_path)
        raise RuntimeError(f"Failed to write {target.name}: {e}") from e

    if hasattr(os, "fchmod"):
        actual_mode = stat.S_IMODE(target.stat().st_mode)
        if actual_mode != mode:
            logger.warning(f"{target.name} has mode {oct(actual_mode)}, expected {oct(mode)}")
            target.chmod(mode)


def check_dependencies(commands: Sequence[str] = ("pdflatex", "convert")) -> List[str]:
    """Return the required external tools missing from the restricted PATH."""
    return [command for command in commands if shutil.which(command, path=RESTRICTED_PATH) is None]


def describe_sandbox(executor: SecureExecutor) -> Dict[str, Any]:
    """Summarize the executor's policy for health output."""
    return {
        "allowed_commands": sorted(executor.allowed_commands),
        "restricted_path": RESTRICTED_PATH,
        "default_timeout_seconds": executor.default_timeout,
        "max_output_bytes": executor.max_output_bytes,
    }
