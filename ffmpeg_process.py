"""FFmpeg process spawning, supervision and output fan-out."""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import asyncio
import contextlib
import logging
import re
import signal

from errors import SpawnFailed


log = logging.getLogger(__name__)

# ffmpeg prints this when it shuts down cleanly on SIGINT
INTERRUPT_EXIT_MARKER = "Exiting normally, received signal 2"

_READ_CHUNK_BYTES = 64 * 1024
_STDERR_READ_BYTES = 4096
_STDERR_LINE_RE = re.compile(rb"\r\n|\r|\n")
_CONSUMER_QUEUE_CHUNKS = 256  # ~16MB worst case per consumer
_STDERR_KEEP_CHARS = 8_000
STDERR_TAIL_CHARS = 1_000

_background_tasks: set[asyncio.Task[Any]] = set()


def spawn_background_task(coro: Awaitable[Any]) -> asyncio.Task[Any]:
    """Run coro in the background, keeping a strong reference until done."""
    task = asyncio.ensure_future(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


@dataclass(slots=True)
class ProcessExited:
    """Single exit notification for a supervised process."""

    code: int | None
    signal: int | None
    stderr_tail: str
    interrupted: bool = False  # stderr carried the clean-SIGINT marker


# ===========================================================================
# Output Fan-out
# ===========================================================================


class OutputConsumer:
    """One subscriber's view of a process's stdout."""

    def __init__(self, fanout: OutputFanout, maxsize: int):
        self._fanout = fanout
        self.queue: asyncio.Queue[bytes | None] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def offer(self, chunk: bytes | None) -> None:
        """Enqueue without blocking; drop oldest chunk when full."""
        while True:
            try:
                self.queue.put_nowait(chunk)
                return
            except asyncio.QueueFull:
                with contextlib.suppress(asyncio.QueueEmpty):
                    self.queue.get_nowait()
                    self.dropped += 1

    def close(self) -> None:
        self._fanout.remove(self)

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self.queue.get()
            if chunk is None:
                return
            yield chunk


class OutputFanout:
    """Copies one reader to any number of consumers.

    Each consumer has its own bounded queue, so a slow client loses its own
    oldest data instead of stalling the process or the other clients.
    """

    def __init__(self, maxsize: int = _CONSUMER_QUEUE_CHUNKS):
        self._maxsize = maxsize
        self._consumers: list[OutputConsumer] = []
        self.closed = False

    @property
    def consumer_count(self) -> int:
        return len(self._consumers)

    def add(self) -> OutputConsumer:
        consumer = OutputConsumer(self, self._maxsize)
        if self.closed:
            consumer.offer(None)
        else:
            self._consumers.append(consumer)
        return consumer

    def remove(self, consumer: OutputConsumer) -> None:
        with contextlib.suppress(ValueError):
            self._consumers.remove(consumer)

    def publish(self, chunk: bytes) -> None:
        for consumer in list(self._consumers):
            consumer.offer(chunk)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for consumer in self._consumers:
            consumer.offer(None)
        self._consumers.clear()

    async def pump(self, reader: asyncio.StreamReader) -> None:
        """Read until EOF, publishing every chunk."""
        try:
            while True:
                chunk = await reader.read(_READ_CHUNK_BYTES)
                if not chunk:
                    break
                self.publish(chunk)
        finally:
            self.close()


# ===========================================================================
# Running Process
# ===========================================================================


class RunningProcess:
    """Handle on a spawned ffmpeg process owned by exactly one manager."""

    def __init__(self, process: Any, label: str, fanout: OutputFanout | None):
        self.process = process
        self.label = label
        self.fanout = fanout
        self._stderr = ""
        self._interrupted = False
        self._exited: asyncio.Future[ProcessExited] = asyncio.get_running_loop().create_future()

    @property
    def pid(self) -> int | None:
        return getattr(self.process, "pid", None)

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def is_alive(self) -> bool:
        return self.process.returncode is None and not self._exited.done()

    def stderr_tail(self, limit: int = STDERR_TAIL_CHARS) -> str:
        return self._stderr[-limit:]

    def _append_stderr(self, text: str) -> None:
        if INTERRUPT_EXIT_MARKER in text:
            self._interrupted = True
        self._stderr = (self._stderr + text + "\n")[-_STDERR_KEEP_CHARS:]

    def _send(self, sig: int) -> bool:
        try:
            self.process.send_signal(sig)
            return True
        except (ProcessLookupError, OSError):
            return False

    def interrupt(self) -> bool:
        """Ask ffmpeg to finish cleanly (SIGINT). Returns False if already gone."""
        return self._send(signal.SIGINT)

    def kill(self) -> bool:
        """Force kill (SIGKILL). Returns False if already gone."""
        try:
            self.process.kill()
            return True
        except (ProcessLookupError, OSError):
            return False

    def add_consumer(self) -> OutputConsumer:
        if self.fanout is None:
            raise RuntimeError(f"{self.label}: stdout is not captured")
        return self.fanout.add()

    async def wait(self) -> ProcessExited:
        """Wait for the exit notification."""
        return await asyncio.shield(self._exited)

    def add_exit_callback(self, callback: Callable[[ProcessExited], Any]) -> None:
        """Call callback(exit) once the process has exited."""

        def _done(fut: asyncio.Future[ProcessExited]) -> None:
            if fut.cancelled():
                return
            try:
                callback(fut.result())
            except Exception:
                log.exception("Exit callback failed for %s", self.label)

        self._exited.add_done_callback(_done)

    def _stderr_line(self, raw: bytes) -> None:
        text = raw.decode(errors="replace").rstrip()
        if not text:
            return
        self._append_stderr(text)
        is_fatal = "fatal" in text.lower() or "aborting" in text.lower()
        level = logging.WARNING if is_fatal else logging.DEBUG
        log.log(level, "ffmpeg:%s %s", self.label, text)

    async def _monitor_stderr(self) -> None:
        stderr = self.process.stderr
        if stderr is None:
            return
        # Progress lines end in a bare \r, so readline() would never see a separator
        pending = b""
        while True:
            chunk = await stderr.read(_STDERR_READ_BYTES)
            if not chunk:
                break
            *lines, pending = _STDERR_LINE_RE.split(pending + chunk)
            for line in lines:
                self._stderr_line(line)
            if len(pending) > _STDERR_KEEP_CHARS:
                self._stderr_line(pending)
                pending = b""
        self._stderr_line(pending)

    async def _supervise(self) -> None:
        readers = [self._monitor_stderr()]
        if self.fanout is not None and self.process.stdout is not None:
            readers.append(self.fanout.pump(self.process.stdout))
        try:
            await asyncio.gather(*readers)
        except Exception as e:
            log.warning("Output monitoring of %s failed: %s", self.label, e)
        try:
            # Exit is only reported once the process has really gone
            code = await self.process.wait()
        finally:
            if self.fanout is not None:
                self.fanout.close()
        exit_ = ProcessExited(
            code=code,
            signal=-code if code is not None and code < 0 else None,
            stderr_tail=self.stderr_tail(),
            interrupted=self._interrupted,
        )
        log.info("ffmpeg:%s exited with code %s", self.label, code)
        if not self._exited.done():
            self._exited.set_result(exit_)


# ===========================================================================
# Runner
# ===========================================================================


CreateSubprocess = Callable[..., Awaitable[Any]]


class ProcessRunner:
    """Spawns supervised ffmpeg processes."""

    def __init__(self, create_subprocess: CreateSubprocess | None = None):
        self._create_subprocess = create_subprocess or asyncio.create_subprocess_exec

    async def spawn(self, cmd: list[str], label: str, capture_stdout: bool = False) -> RunningProcess:
        """Start cmd. Raises SpawnFailed if the binary cannot be executed."""
        log.info("Starting ffmpeg %s: %s", label, " ".join(cmd))
        try:
            process = await self._create_subprocess(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE if capture_stdout else asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            log.error("Failed to start ffmpeg %s: %s", label, e)
            raise SpawnFailed(str(e)) from e

        running = RunningProcess(process, label, OutputFanout() if capture_stdout else None)
        spawn_background_task(running._supervise())
        log.info("Started ffmpeg pid=%s for %s", running.pid, label)
        return running
