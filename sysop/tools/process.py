"""
sysop.tools.process — Child-process runner with bounded capture and cancellation.

Every shell or code execution goes through ``run_process``:

- the child starts in its own session (process group) so the whole tree
  can be signalled at once;
- stdout and stderr are read incrementally into one ``OutputCapture``
  that enforces a combined byte ceiling and line ceiling;
- setting the ``cancel`` event terminates the group (SIGTERM, then SIGKILL
  after ``grace`` seconds) and yields a ``CANCELLED`` result;
- exceeding ``timeout`` does the same and yields ``TIMED_OUT``.
"""

from __future__ import annotations

import asyncio
import os
import signal
import subprocess
import sys
import time
from collections.abc import Sequence

from sysop.errors import ToolExecutionError
from sysop.log import get_logger
from sysop.tools.types import ExecutionResult, ExecutionStatus, OutputLimits

log = get_logger(__name__)

_READ_CHUNK = 4096


class OutputCapture:
    """Accumulates stdout/stderr bytes under shared byte and line ceilings.

    Once either ceiling is reached the remaining input is discarded (the
    pipes keep being drained so the child never blocks on a full pipe)
    and ``truncated`` is set.  ``freeze()`` stops accepting input
    altogether; it is called as soon as a cancellation is observed.
    """

    def __init__(self, limits: OutputLimits) -> None:
        self.limits = limits
        self.truncated = False
        self.frozen = False
        self._buffers: dict[str, bytearray] = {"stdout": bytearray(), "stderr": bytearray()}
        self._bytes = 0
        self._lines = 0

    @property
    def byte_count(self) -> int:
        return self._bytes

    @property
    def line_count(self) -> int:
        return self._lines

    def feed(self, stream: str, data: bytes) -> None:
        """Append *data* read from *stream* (``"stdout"`` or ``"stderr"``)."""
        if self.frozen or not data:
            return
        if self.truncated:
            return

        cut = min(len(data), self.limits.max_bytes - self._bytes)
        remaining_lines = self.limits.max_lines - self._lines
        if remaining_lines <= 0:
            cut = 0
        elif data.count(b"\n", 0, cut) >= remaining_lines:
            idx = -1
            for _ in range(remaining_lines):
                idx = data.find(b"\n", idx + 1)
            cut = idx + 1

        kept = data[:cut]
        self._buffers[stream] += kept
        self._bytes += len(kept)
        self._lines += kept.count(b"\n")
        if cut < len(data):
            self.truncated = True

    def freeze(self) -> None:
        self.frozen = True

    def raw(self, stream: str) -> bytes:
        return bytes(self._buffers[stream])

    def text(self, stream: str) -> str:
        # A cut can split a multi-byte character; drop the fragment rather
        # than grow the text past the ceiling with a replacement character
        errors = "ignore" if self.truncated else "replace"
        return self._buffers[stream].decode("utf-8", errors=errors)


async def _pump(reader: asyncio.StreamReader, stream: str, capture: OutputCapture) -> None:
    while True:
        chunk = await reader.read(_READ_CHUNK)
        if not chunk:
            return
        capture.feed(stream, chunk)


def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    try:
        if sys.platform == "win32":
            if sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        else:
            os.killpg(proc.pid, sig)
    except (ProcessLookupError, PermissionError):
        pass


async def _terminate(proc: asyncio.subprocess.Process, grace: float) -> None:
    """SIGTERM the process group, escalate to SIGKILL after *grace* seconds."""
    _signal_group(proc, signal.SIGTERM)
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace)
    except asyncio.TimeoutError:
        log.warning("process_kill_escalated", pid=proc.pid, grace=grace)
        _signal_group(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
        await proc.wait()


async def run_process(
    argv: Sequence[str],
    *,
    limits: OutputLimits,
    cancel: asyncio.Event | None = None,
    timeout: float | None = None,
    grace: float = 2.0,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
) -> ExecutionResult:
    """Run *argv* to completion, cancellation or timeout.

    Raises
    ------
    ToolExecutionError
        The process could not be started (missing binary, bad cwd, no
        permission).  A nonzero exit status is returned, not raised.
    """
    start = time.monotonic()
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
            start_new_session=sys.platform != "win32",
        )
    except (OSError, ValueError) as exc:
        reason = exc.strerror if isinstance(exc, OSError) and exc.strerror else exc
        raise ToolExecutionError(f"Cannot start {argv[0]!r}: {reason}") from exc

    log.debug("process_started", pid=proc.pid, argv0=argv[0])
    capture = OutputCapture(limits)
    assert proc.stdout is not None and proc.stderr is not None
    finished = asyncio.gather(
        _pump(proc.stdout, "stdout", capture),
        _pump(proc.stderr, "stderr", capture),
        proc.wait(),
    )
    waiters: set[asyncio.Future] = {finished}
    cancel_waiter: asyncio.Task | None = None
    if cancel is not None:
        cancel_waiter = asyncio.ensure_future(cancel.wait())
        waiters.add(cancel_waiter)

    status = ExecutionStatus.COMPLETED
    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        if finished not in done:
            capture.freeze()
            status = (
                ExecutionStatus.CANCELLED
                if cancel_waiter is not None and cancel_waiter in done
                else ExecutionStatus.TIMED_OUT
            )
            await _terminate(proc, grace)
    finally:
        if proc.returncode is None:
            _signal_group(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
        if cancel_waiter is not None:
            cancel_waiter.cancel()
        if not finished.done():
            finished.cancel()
        await asyncio.gather(finished, return_exceptions=True)

    duration = time.monotonic() - start
    log.info(
        "process_finished",
        pid=proc.pid,
        status=status.value,
        exit_code=proc.returncode,
        duration=round(duration, 3),
        truncated=capture.truncated,
    )
    return ExecutionResult(
        status=status,
        exit_code=proc.returncode if status == ExecutionStatus.COMPLETED else None,
        stdout=capture.text("stdout"),
        stderr=capture.text("stderr"),
        truncated=capture.truncated,
        duration=duration,
    )
