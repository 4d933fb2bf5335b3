"""Local subprocess execution with streamed output."""

from __future__ import annotations

import asyncio
import io
import logging
import shlex
from typing import Any

from .errors import CommandFailedError, CommandTimeoutError, TransportError
from .writers import DISCARD, Sink, flush_sink

logger = logging.getLogger(__name__)

CHUNK_SIZE = 4096


async def copy_stream(reader: Any, sink: Sink) -> None:
    """Copy a byte stream into a sink until EOF."""
    while True:
        chunk = await reader.read(CHUNK_SIZE)
        if not chunk:
            break
        sink.write(chunk)
        flush_sink(sink)


async def run_process(
    *argv: str,
    stdout: Sink | None = None,
    stderr: Sink | None = None,
    timeout: float | None = None,
) -> None:
    """Run a local program, streaming its output into the given sinks.

    Raises CommandFailedError on a non-zero exit, TransportError if the
    program could not be started and CommandTimeoutError when ``timeout``
    elapses. Cancelling the caller kills the process.
    """
    display = shlex.join(argv)
    logger.debug("exec: %s", display)
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise TransportError(f"Failed to start {argv[0]}: {e}") from e

    async def communicate() -> int:
        await asyncio.gather(
            copy_stream(proc.stdout, stdout if stdout is not None else DISCARD),
            copy_stream(proc.stderr, stderr if stderr is not None else DISCARD),
        )
        return await proc.wait()

    try:
        returncode = await asyncio.wait_for(communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await _stop(proc, terminate=True)
        raise CommandTimeoutError(display, timeout or 0) from None
    except asyncio.CancelledError:
        await _stop(proc, terminate=False)
        raise

    if returncode != 0:
        raise CommandFailedError(display, returncode)


async def capture_output(*argv: str, timeout: float | None = None) -> bytes:
    """Run a local program and return its stdout."""
    out = io.BytesIO()
    err = io.BytesIO()
    try:
        await run_process(*argv, stdout=out, stderr=err, timeout=timeout)
    except CommandFailedError as e:
        raise CommandFailedError(
            e.command, e.exit_status, err.getvalue().decode(errors="replace").strip()
        ) from None
    return out.getvalue()


async def _stop(proc: asyncio.subprocess.Process, terminate: bool) -> None:
    if proc.returncode is not None:
        return
    try:
        if terminate:
            proc.terminate()
        else:
            proc.kill()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=5)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
