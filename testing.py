"""Test utilities."""

from collections.abc import Callable

import asyncio
import signal
import sys


def run_tests(test_file: str) -> None:
    """Run pytest on a test file with standard flags.

    Usage:
        if __name__ == "__main__":
            from testing import run_tests
            run_tests(__file__)
    """
    import pytest

    sys.exit(
        pytest.main(
            [
                test_file,
                "-v",
                "-s",
                "-W",
                "ignore::pytest.PytestAssertRewriteWarning",
                *sys.argv[1:],
            ]
        )
    )


async def settle(rounds: int = 20) -> None:
    """Let pending callbacks and background tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeAsyncProcess:
    """Stand-in for asyncio.subprocess.Process. Must be created inside a loop."""

    def __init__(self, pid: int, capture_stdout: bool = True):
        self.pid = pid
        self.returncode: int | None = None
        self.stdout = asyncio.StreamReader() if capture_stdout else None
        self.stderr = asyncio.StreamReader()
        self.signals: list[int] = []
        self.killed = False
        self.interrupt_exit_code: int | None = 255  # None = ignore SIGINT
        self.on_interrupt: Callable[[], None] | None = None
        self._done = asyncio.Event()

    def write_stdout(self, data: bytes) -> None:
        assert self.stdout is not None
        self.stdout.feed_data(data)

    def write_stderr(self, text: str) -> None:
        self.stderr.feed_data(text.encode() + b"\n")

    def exit(self, code: int, stderr: str = "") -> None:
        if stderr:
            self.write_stderr(stderr)
        self.returncode = code
        if self.stdout is not None:
            self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._done.set()

    async def wait(self) -> int:
        await self._done.wait()
        assert self.returncode is not None
        return self.returncode

    def send_signal(self, sig: int) -> None:
        if self.returncode is not None:
            raise ProcessLookupError("No such process")
        self.signals.append(sig)
        if sig == signal.SIGINT and self.interrupt_exit_code is not None:
            if self.on_interrupt:
                self.on_interrupt()
            self.exit(self.interrupt_exit_code)

    def kill(self) -> None:
        if self.returncode is not None:
            raise ProcessLookupError("No such process")
        self.killed = True
        self.exit(-9)


class FakeSpawner:
    """Replaces asyncio.create_subprocess_exec, recording every spawn."""

    def __init__(self, fail: Exception | None = None):
        self.fail = fail
        self.calls: list[list[str]] = []
        self.processes: list[FakeAsyncProcess] = []

    async def __call__(self, *cmd: str, stdin=None, stdout=None, stderr=None) -> FakeAsyncProcess:
        self.calls.append(list(cmd))
        if self.fail is not None:
            raise self.fail
        # Yield once so concurrent spawns can interleave
        await asyncio.sleep(0)
        proc = FakeAsyncProcess(
            pid=1000 + len(self.processes),
            capture_stdout=stdout == asyncio.subprocess.PIPE,
        )
        self.processes.append(proc)
        return proc

    @property
    def last(self) -> FakeAsyncProcess:
        return self.processes[-1]
