"""Container process handles: streamed output events and a final exit event."""

from __future__ import annotations

import asyncio
import codecs
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Union

from codeforge.core.exceptions import ProcessTimeout

log = logging.getLogger(__name__)

#: Bytes read from a pipe per chunk.
READ_CHUNK_SIZE = 4096


@dataclass(frozen=True)
class RunOptions:
    """Options for starting a container."""

    interactive: bool = False
    tty: bool = False
    remove: bool = True
    working_dir: str | None = None
    extra_args: list[str] = field(default_factory=list)
    name: str | None = None
    labels: dict[str, str] = field(default_factory=dict)
    inherit_stdio: bool = False


@dataclass(frozen=True)
class OutputChunk:
    """A piece of output read from ``stream`` ("stdout" or "stderr")."""

    stream: str
    text: str


@dataclass(frozen=True)
class ProcessExit:
    """Final event of every process stream."""

    exit_code: int


ProcessEvent = Union[OutputChunk, ProcessExit]
ExitCallback = Callable[[int], None]


@dataclass
class ProcessOutput:
    """Collected output of a finished process."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class SubprocessContainerProcess:
    """Wrap an :mod:`asyncio` subprocess as a stream of :class:`ProcessEvent`.

    Two reader tasks push chunks into a queue; once both pipes are drained
    and the process has exited a :class:`ProcessExit` is queued. Must be
    created from inside a running event loop.
    """

    def __init__(self, process: asyncio.subprocess.Process, name: str | None = None) -> None:
        self.name = name
        self._process = process
        self._queue: asyncio.Queue[ProcessEvent] = asyncio.Queue()
        self._callbacks: list[ExitCallback] = []
        self._exit_code: int | None = None
        self._pump = asyncio.ensure_future(self._run())

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    async def _read(self, stream: asyncio.StreamReader | None, label: str) -> None:
        if stream is None:
            return
        # Multi-byte characters may straddle two reads.
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(READ_CHUNK_SIZE)
            text = decoder.decode(data, final=not data)
            if text:
                await self._queue.put(OutputChunk(label, text))
            if not data:
                break

    async def _run(self) -> None:
        try:
            await asyncio.gather(
                self._read(self._process.stdout, "stdout"),
                self._read(self._process.stderr, "stderr"),
            )
        finally:
            code = await self._process.wait()
            self._exit_code = code
            await self._queue.put(ProcessExit(code))
            for callback in self._callbacks:
                try:
                    callback(code)
                except Exception:
                    log.exception("Exit callback for %s failed", self.name or self.pid)

    async def events(self) -> AsyncIterator[ProcessEvent]:
        """Yield output chunks, ending with a single :class:`ProcessExit`."""
        while True:
            event = await self._queue.get()
            yield event
            if isinstance(event, ProcessExit):
                return

    async def wait(self) -> int:
        await asyncio.shield(self._pump)
        return self._exit_code if self._exit_code is not None else self._process.returncode or 0

    def kill(self) -> None:
        if self._process.returncode is None:
            try:
                self._process.kill()
            except ProcessLookupError:
                pass

    def add_exit_callback(self, callback: ExitCallback) -> None:
        """Call ``callback(exit_code)`` once the process exits (immediately if it already has)."""
        if self._exit_code is not None:
            callback(self._exit_code)
        else:
            self._callbacks.append(callback)


async def collect_output(
    process: object,
    *,
    timeout: float | None = None,
    on_chunk: Callable[[OutputChunk], None] | None = None,
) -> ProcessOutput:
    """Drain ``process.events()`` into a :class:`ProcessOutput`.

    Raises:
        ProcessTimeout: the process did not exit within ``timeout``; it has been killed.
    """
    stdout: list[str] = []
    stderr: list[str] = []

    async def _drain() -> int:
        async for event in process.events():  # type: ignore[attr-defined]
            if isinstance(event, ProcessExit):
                return event.exit_code
            (stdout if event.stream == "stdout" else stderr).append(event.text)
            if on_chunk is not None:
                on_chunk(event)
        return await process.wait()  # type: ignore[attr-defined]

    if timeout is None:
        code = await _drain()
    else:
        try:
            code = await asyncio.wait_for(_drain(), timeout)
        except asyncio.TimeoutError:
            process.kill()  # type: ignore[attr-defined]
            raise ProcessTimeout(timeout, getattr(process, "name", None)) from None
    return ProcessOutput(exit_code=code, stdout="".join(stdout), stderr="".join(stderr))


def tail(text: str, limit: int = 4000) -> str:
    """Last ``limit`` characters of ``text``."""
    return text if len(text) <= limit else text[-limit:]
