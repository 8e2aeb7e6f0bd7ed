"""Subprocess wrapper speaking the pi RPC line protocol over stdio."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
import os
from collections.abc import Awaitable, Callable, Mapping, Sequence
from pathlib import Path
from typing import Any

from pi_acp.acp_runtime import DEFAULT_REQUEST_TIMEOUT_MS, DEFAULT_STDIO_BUFFER_LIMIT_BYTES
from pi_acp.errors import PiError, PiProcessExited, PiProtocolError, PiRequestTimeout, PiResponseError
from pi_acp.log_utils import log_event
from pi_acp.pi.messages import PiEvent, PiResponse, decode_line

logger = logging.getLogger(__name__)

LineListener = Callable[[PiResponse | PiEvent], Awaitable[None]]
ErrorListener = Callable[[Exception], Awaitable[None] | None]

#: Seconds to wait for the process to exit after stdin is closed.
_SHUTDOWN_WAIT = 2.0

#: Seconds to wait after SIGTERM before SIGKILL.
_SIGTERM_WAIT = 2.0


class PiProcess:
    """One pi subprocess.

    A single reader task consumes stdout, so listeners see lines strictly in
    the order the process wrote them. Requests are correlated by `id`; any
    number may be in flight at once.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        name: str = "pi",
        request_timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS,
    ) -> None:
        self._process = process
        self._name = name
        self._request_timeout_ms = request_timeout_ms
        self._listeners: list[LineListener] = []
        self._error_listeners: list[ErrorListener] = []
        self._pending: dict[str, asyncio.Future[PiResponse]] = {}
        self._ids = itertools.count(1)
        self._exited = False
        self._read_task = asyncio.create_task(self._read_loop())
        self._stderr_task = asyncio.create_task(self._stderr_loop())

    @classmethod
    async def spawn(
        cls,
        cwd: str | Path,
        *,
        argv: Sequence[str] = ("pi", "--mode", "rpc"),
        env: Mapping[str, str] | None = None,
        limit: int = DEFAULT_STDIO_BUFFER_LIMIT_BYTES,
        request_timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS,
    ) -> PiProcess:
        """Start the subprocess in `cwd` and begin reading its output."""
        merged_env = {**os.environ, **(env or {})}
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                env=merged_env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=limit,
            )
        except OSError as exc:
            log_event(logger, "pi.spawn.failed", level=logging.ERROR, argv=list(argv), error=str(exc))
            raise PiError(f"failed to start {argv[0]}: {exc}") from exc
        log_event(logger, "pi.spawn", argv=list(argv), cwd=str(cwd), pid=process.pid)
        return cls(process, name=Path(argv[0]).name, request_timeout_ms=request_timeout_ms)

    @property
    def pid(self) -> int | None:
        return self._process.pid

    @property
    def exited(self) -> bool:
        return self._exited

    @property
    def pending_request_count(self) -> int:
        return len(self._pending)

    def on_line(self, listener: LineListener) -> None:
        self._listeners.append(listener)

    def on_error(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    async def send(self, command: Mapping[str, Any]) -> None:
        """Write one command line; no acknowledgement is awaited."""
        stdin = self._process.stdin
        if self._exited or stdin is None or stdin.is_closing():
            raise PiProcessExited(self._process.returncode)
        stdin.write((json.dumps(command) + "\n").encode("utf-8"))
        try:
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise PiProcessExited(self._process.returncode) from exc

    async def request(self, command: Mapping[str, Any], timeout_ms: int | None = None) -> PiResponse:
        """Send a command with a fresh correlation id and await its response.

        Raises PiResponseError when the response reports failure,
        PiRequestTimeout when nothing arrives in time, and PiProcessExited if
        the process is (or becomes) gone.
        """
        if timeout_ms is None:
            timeout_ms = self._request_timeout_ms
        if self._exited:
            raise PiProcessExited(self._process.returncode)
        request_id = f"req_{next(self._ids)}"
        command_type = str(command.get("type", ""))
        future: asyncio.Future[PiResponse] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self.send({**command, "id": request_id})
            response = await asyncio.wait_for(future, timeout=timeout_ms / 1000)
        except TimeoutError:
            log_event(logger, "pi.request.timeout", level=logging.WARNING, command=command_type, timeout_ms=timeout_ms)
            raise PiRequestTimeout(command_type, timeout_ms) from None
        finally:
            self._pending.pop(request_id, None)
        if not response.success:
            raise PiResponseError(command_type, response.error)
        return response

    async def stop(self) -> None:
        """Close stdin, then escalate to SIGTERM and SIGKILL if needed."""
        proc = self._process
        if proc.returncode is None:
            if proc.stdin is not None:
                with contextlib.suppress(BrokenPipeError, ConnectionResetError, OSError):
                    proc.stdin.close()
            try:
                await asyncio.wait_for(proc.wait(), timeout=_SHUTDOWN_WAIT)
            except TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    proc.terminate()
                try:
                    await asyncio.wait_for(proc.wait(), timeout=_SIGTERM_WAIT)
                except TimeoutError:
                    with contextlib.suppress(ProcessLookupError):
                        proc.kill()
                    await proc.wait()
        for task in (self._read_task, self._stderr_task):
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    async def _read_loop(self) -> None:
        stdout = self._process.stdout
        assert stdout is not None
        while True:
            try:
                raw = await stdout.readline()
            except ValueError as exc:
                # Line longer than the stream limit; the reader resynchronises itself.
                log_event(logger, "pi.line.too_long", level=logging.WARNING, error=str(exc))
                continue
            if not raw:
                break
            text = raw.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            try:
                line = decode_line(text)
            except PiProtocolError as exc:
                log_event(logger, "pi.line.dropped", level=logging.WARNING, error=str(exc), preview=text[:200])
                continue
            if isinstance(line, PiResponse) and line.id:
                future = self._pending.get(line.id)
                if future is not None and not future.done():
                    future.set_result(line)
            for listener in list(self._listeners):
                try:
                    await listener(line)
                except Exception:  # noqa: BLE001
                    logger.exception("pi line listener failed for %s", line.type)
        await self._handle_exit()

    async def _stderr_loop(self) -> None:
        stderr = self._process.stderr
        if stderr is None:
            return
        while True:
            try:
                raw = await stderr.readline()
            except ValueError:
                continue
            if not raw:
                return
            text = raw.decode("utf-8", errors="replace").strip()
            if text:
                log_event(logger, "pi.stderr", process=self._name, line=text)

    async def _handle_exit(self) -> None:
        returncode = await self._process.wait()
        self._exited = True
        log_event(logger, "pi.exit", process=self._name, returncode=returncode, pending=len(self._pending))
        error = PiProcessExited(returncode)
        for request_id, future in list(self._pending.items()):
            if not future.done():
                future.set_exception(error)
            self._pending.pop(request_id, None)
        for listener in list(self._error_listeners):
            try:
                result = listener(error)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:  # noqa: BLE001
                logger.exception("pi error listener failed")
