import errno
import os
import shutil
import subprocess
import sys

import anyio
import pytest

from equations_mcp.errors import (
    CommandNotAllowedError,
    ExecutionTimeoutError,
    NonZeroExitError,
    OutputBufferExceededError,
    SignalTerminatedError,
    SpawnError,
)
from equations_mcp.sandbox import RESTRICTED_PATH, SecureExecutor

from conftest import FakeProcess


class TestAllowlist:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("command", ["bash", "sh", "/usr/bin/pdflatex", "PDFLATEX", "pdflatex ", ""])
    async def test_rejected_before_spawn(self, executor, spawn, command):
        with pytest.raises(CommandNotAllowedError) as exc_info:
            await executor.safe_exec(command, ["-c", "id"])
        assert "is not allowed" in str(exc_info.value)
        assert spawn.calls == []

    @pytest.mark.asyncio
    async def test_custom_allowlist(self, spawn):
        executor = SecureExecutor(allowed_commands=frozenset({"convert"}), spawn=spawn)
        with pytest.raises(CommandNotAllowedError):
            await executor.safe_exec("pdflatex", ["x.tex"])
        await executor.safe_exec("convert", ["a.png", "b.png"])
        assert spawn.argvs == [["convert", "a.png", "b.png"]]


class TestSpawnContract:
    @pytest.mark.asyncio
    async def test_spawn_arguments(self, executor, spawn, tmp_path):
        await executor.safe_exec("pdflatex", ["equation.tex"], cwd=str(tmp_path), env={"openout_any": "r"})

        (argv, kwargs), = spawn.calls
        assert argv == ["pdflatex", "equation.tex"]
        assert kwargs["stdin"] == subprocess.DEVNULL
        assert kwargs["stdout"] == subprocess.PIPE
        assert kwargs["stderr"] == subprocess.PIPE
        assert kwargs["start_new_session"] is False
        assert kwargs["cwd"] == str(tmp_path)
        assert kwargs["env"]["PATH"] == RESTRICTED_PATH
        assert kwargs["env"]["openout_any"] == "r"
        assert "shell" not in kwargs
        if hasattr(os, "getuid"):
            assert kwargs["user"] == os.getuid()
            assert kwargs["group"] == os.getgid()

    @pytest.mark.asyncio
    async def test_arguments_are_sanitized(self, executor, spawn):
        await executor.safe_exec("pdflatex", ["../../etc/passwd;whoami", "test${IFS}x"])
        assert spawn.argvs == [["pdflatex", "passwdwhoami", "testx"]]

    @pytest.mark.asyncio
    async def test_caller_flag_lookalikes_are_sanitized(self, executor, spawn):
        await executor.safe_exec("convert", ["msl:evil.msl", "png:x=y", "4000x4000>"])
        assert spawn.argvs == [["convert", "mslevil.msl", "pngx=y", "4000x4000>"]]

    @pytest.mark.asyncio
    async def test_protected_env_keys_cannot_be_overridden(self, executor, spawn):
        await executor.safe_exec(
            "pdflatex",
            [],
            env={"PATH": "/tmp/evil", "LD_PRELOAD": "/tmp/evil.so", "LD_LIBRARY_PATH": "/tmp/lib"},
        )
        env = spawn.calls[0][1]["env"]
        assert env["PATH"] == RESTRICTED_PATH
        assert "LD_PRELOAD" not in env
        assert "LD_LIBRARY_PATH" not in env

    @pytest.mark.asyncio
    async def test_spawn_error_keeps_os_message(self, executor, spawn):
        spawn.error = FileNotFoundError(errno.ENOENT, "No such file or directory", "pdflatex")
        with pytest.raises(SpawnError) as exc_info:
            await executor.safe_exec("pdflatex", ["x.tex"])
        assert "ENOENT" in str(exc_info.value)
        assert "No such file or directory" in str(exc_info.value)
        assert exc_info.value.cause is spawn.error


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_success_captures_output(self, executor, spawn):
        spawn.queue(FakeProcess(stdout=[b"hello ", b"world"], stderr=[b"warning"]))
        result = await executor.safe_exec("pdflatex", ["x.tex"])
        assert result.stdout == "hello world"
        assert result.stderr == "warning"
        assert result.exit_code == 0

    @pytest.mark.asyncio
    async def test_non_zero_exit_embeds_stderr(self, executor, spawn):
        spawn.queue(FakeProcess(stderr=[b"! Undefined control sequence.\n"], returncode=1))
        with pytest.raises(NonZeroExitError) as exc_info:
            await executor.safe_exec("pdflatex", ["x.tex"])
        assert exc_info.value.exit_code == 1
        assert "Undefined control sequence" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_signal_termination(self, executor, spawn):
        spawn.queue(FakeProcess(returncode=-11))
        with pytest.raises(SignalTerminatedError) as exc_info:
            await executor.safe_exec("convert", ["a.png", "b.png"])
        assert exc_info.value.signal == "SIGSEGV"

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, spawn):
        executor = SecureExecutor(spawn=spawn)
        process = FakeProcess(stdout=[b"partial"], hang=True)
        spawn.queue(process)

        with pytest.raises(ExecutionTimeoutError) as exc_info:
            await executor.safe_exec("pdflatex", ["x.tex"], timeout=0.05)

        assert process.killed
        assert process.closed
        assert exc_info.value.timeout == 0.05
        assert "timed out after 0.05s" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_default_timeout_applies(self, spawn):
        executor = SecureExecutor(default_timeout=0.05, spawn=spawn)
        spawn.queue(FakeProcess(hang=True))
        with pytest.raises(ExecutionTimeoutError):
            await executor.safe_exec("pdflatex", ["x.tex"])

    @pytest.mark.asyncio
    async def test_stdout_overflow_kills_process(self, spawn):
        executor = SecureExecutor(max_output_bytes=10, spawn=spawn)
        process = FakeProcess(stdout=[b"x" * 6, b"y" * 6, b"z" * 6])
        spawn.queue(process)

        with pytest.raises(OutputBufferExceededError) as exc_info:
            await executor.safe_exec("pdflatex", ["x.tex"])

        assert process.killed
        assert exc_info.value.stream == "stdout"
        assert exc_info.value.limit == 10

    @pytest.mark.asyncio
    async def test_stderr_overflow_is_independent_of_stdout(self, spawn):
        executor = SecureExecutor(max_output_bytes=10, spawn=spawn)
        spawn.queue(FakeProcess(stdout=[b"a" * 8], stderr=[b"b" * 11]))
        with pytest.raises(OutputBufferExceededError) as exc_info:
            await executor.safe_exec("pdflatex", ["x.tex"])
        assert exc_info.value.stream == "stderr"

    @pytest.mark.asyncio
    async def test_output_at_limit_is_accepted(self, spawn):
        executor = SecureExecutor(max_output_bytes=10, spawn=spawn)
        spawn.queue(FakeProcess(stdout=[b"a" * 10], stderr=[b"b" * 10]))
        result = await executor.safe_exec("pdflatex", ["x.tex"])
        assert result.stdout == "a" * 10

    @pytest.mark.asyncio
    async def test_concurrent_calls_do_not_share_state(self, executor, spawn):
        spawn.queue(
            FakeProcess(stdout=[b"first"]),
            FakeProcess(stderr=[b"boom"], returncode=2),
            FakeProcess(stdout=[b"third"]),
        )
        results = {}

        async def run(name):
            try:
                results[name] = (await executor.safe_exec("convert", [name])).stdout
            except NonZeroExitError as e:
                results[name] = e.exit_code

        async with anyio.create_task_group() as tg:
            for name in ("one", "two", "three"):
                tg.start_soon(run, name)

        assert sorted(results.values(), key=str) == sorted(["first", 2, "third"], key=str)


real_processes = pytest.mark.skipif(
    sys.platform == "win32" or shutil.which("echo", path=RESTRICTED_PATH) is None,
    reason="needs POSIX echo/sleep on the restricted PATH",
)


@real_processes
class TestRealProcesses:
    @pytest.mark.asyncio
    async def test_no_shell_is_involved(self):
        executor = SecureExecutor(allowed_commands=frozenset({"echo"}))
        result = await executor.safe_exec("echo", ["hello;", "$(whoami)"])
        assert result.stdout == "hello whoami\n"

    @pytest.mark.asyncio
    async def test_real_timeout(self):
        executor = SecureExecutor(allowed_commands=frozenset({"sleep"}))
        with anyio.fail_after(5):
            with pytest.raises(ExecutionTimeoutError):
                await executor.safe_exec("sleep", ["10"], timeout=0.2)

    @pytest.mark.asyncio
    async def test_missing_binary(self):
        executor = SecureExecutor(allowed_commands=frozenset({"definitely-not-a-real-binary"}))
        with pytest.raises(SpawnError) as exc_info:
            await executor.safe_exec("definitely-not-a-real-binary", [])
        assert "ENOENT" in str(exc_info.value)
