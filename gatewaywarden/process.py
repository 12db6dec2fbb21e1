"""Process execution adapter for bridge commands.

Spawns one external command, captures stdout/stderr line by line and supports
cooperative cancellation that terminates the complete process tree.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import subprocess
from dataclasses import dataclass
from typing import Callable

from .cancellation import CancellationToken
from .commands import format_command_for_log, normalize_bridge_args
from .errors import SpawnFailure

LOG = logging.getLogger(__name__)

CANCELED_EXIT_CODE = -1
DEFAULT_STREAM_LIMIT = 1024 * 1024
TERMINATE_GRACE_SECONDS = 2.0

LineCallback = Callable[[str], None]


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one finished (or cancelled) command execution."""

    exit_code: int
    stdout: str
    stderr: str
    canceled: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.canceled and self.exit_code == 0


def clean_output_line(raw: bytes) -> str | None:
    """Decode one captured line; NUL bytes are removed and blank lines dropped."""
    line = raw.decode("utf-8", errors="replace").replace("\0", "").rstrip("\r\n")
    if not line.strip():
        return None
    return line


def _joined(lines: list[str]) -> str:
    return "".join(f"{line}\n" for line in lines)


async def _terminate_process_tree(proc: asyncio.subprocess.Process) -> None:
    """Terminate process and its descendants."""
    if proc.returncode is not None:
        return
    try:
        if os.name == "nt":
            killer = await asyncio.create_subprocess_exec(
                "taskkill",
                "/T",
                "/F",
                "/PID",
                str(proc.pid),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await killer.wait()
        else:
            # Child runs in a dedicated session; signal the complete process group.
            os.killpg(proc.pid, signal.SIGTERM)
        await asyncio.wait_for(proc.wait(), timeout=TERMINATE_GRACE_SECONDS)
        return
    except Exception as exc:
        LOG.debug("graceful terminate failed pid=%s error=%s", proc.pid, exc)

    if proc.returncode is not None:
        return
    try:
        if os.name == "nt":
            proc.kill()
        else:
            os.killpg(proc.pid, signal.SIGKILL)
        await asyncio.wait_for(proc.wait(), timeout=TERMINATE_GRACE_SECONDS)
    except Exception:
        LOG.warning("failed to kill process tree pid=%s", proc.pid)


async def _already_cancelled() -> CommandResult:
    return CommandResult(CANCELED_EXIT_CODE, "", "", canceled=True)


class ProcessRunner:
    """Run bridge commands with line capture and tree-wide cancellation."""

    def __init__(self, *, stream_limit: int = DEFAULT_STREAM_LIMIT) -> None:
        self._stream_limit = stream_limit

    async def run(
        self,
        command: str,
        args: list[str],
        cancel: CancellationToken | None = None,
    ) -> CommandResult:
        """Run a command to completion and return its buffered result."""
        task = await self.spawn_captured(command, args, cancel=cancel)
        return await task

    async def spawn_captured(
        self,
        command: str,
        args: list[str],
        on_stdout_line: LineCallback | None = None,
        on_stderr_line: LineCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> asyncio.Task[CommandResult]:
        """Spawn a command and return the pending result task.

        The callbacks receive every non-empty line as soon as it is read.
        Raises `SpawnFailure` when the process cannot be created.
        """
        token = cancel or CancellationToken()
        if token.is_cancelled:
            return asyncio.create_task(_already_cancelled())

        argv = normalize_bridge_args(list(args))
        LOG.debug("spawning command=%s", format_command_for_log(command, list(args)))
        try:
            proc = await asyncio.create_subprocess_exec(
                command,
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self._stream_limit,
                start_new_session=(os.name != "nt"),
                creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0),
            )
        except (OSError, ValueError) as exc:
            raise SpawnFailure(command, str(exc)) from exc

        return asyncio.create_task(self._collect(proc, on_stdout_line, on_stderr_line, token))

    async def _pump(
        self,
        stream: asyncio.StreamReader | None,
        sink: list[str],
        callback: LineCallback | None,
    ) -> None:
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Overlong line without separator; the reader already discarded it.
                continue
            if not raw:
                return
            line = clean_output_line(raw)
            if line is None:
                continue
            sink.append(line)
            if callback is None:
                continue
            try:
                callback(line)
            except Exception:
                LOG.exception("output line callback failed")

    async def _collect(
        self,
        proc: asyncio.subprocess.Process,
        on_stdout_line: LineCallback | None,
        on_stderr_line: LineCallback | None,
        token: CancellationToken,
    ) -> CommandResult:
        stdout_lines: list[str] = []
        stderr_lines: list[str] = []
        canceled = False
        kill_task: asyncio.Task[None] | None = None

        def _on_cancel() -> None:
            nonlocal canceled, kill_task
            if proc.returncode is not None:
                return
            canceled = True
            kill_task = asyncio.ensure_future(_terminate_process_tree(proc))

        registration = token.register(_on_cancel)
        try:
            await asyncio.gather(
                self._pump(proc.stdout, stdout_lines, on_stdout_line),
                self._pump(proc.stderr, stderr_lines, on_stderr_line),
            )
            exit_code = await proc.wait()
            if kill_task is not None:
                with contextlib.suppress(Exception):
                    await kill_task
        finally:
            registration.dispose()
            if proc.returncode is None:
                await _terminate_process_tree(proc)

        if canceled:
            return CommandResult(CANCELED_EXIT_CODE, _joined(stdout_lines), _joined(stderr_lines), canceled=True)
        return CommandResult(int(exit_code), _joined(stdout_lines), _joined(stderr_lines))
