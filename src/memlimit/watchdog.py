"""Watchdog loop enforcing a memory limit on a child process."""

import signal
import threading
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Protocol

import click
import psutil
import structlog

from memlimit.hierarchy import expand_hierarchy, sum_memory
from memlimit.models import WatchdogConfig, WatchdogState
from memlimit.monitor import SnapshotSource

logger = structlog.get_logger()


class WatchedProcess(Protocol):
    """Handle on the watched child."""

    @property
    def pid(self) -> int: ...

    def terminate(self) -> bool: ...

    def wait(self) -> int: ...


class ChildProcess:
    """A spawned child process that can be killed and waited for."""

    def __init__(self, popen: psutil.Popen) -> None:
        self._popen = popen

    @property
    def pid(self) -> int:
        return self._popen.pid

    def terminate(self) -> bool:
        """
        Forcibly kill the child.

        Returns:
            False if the process was already gone, which is not an error.
        """
        try:
            self._popen.kill()
        except psutil.NoSuchProcess:
            logger.debug("kill_target_already_gone", pid=self.pid)
            return False
        return True

    def wait(self) -> int:
        """Wait for the child and return its raw returncode."""
        return self._popen.wait()


def spawn_child(command: str, args: Sequence[str] = ()) -> ChildProcess:
    """Start ``command`` with ``args``, inheriting stdio."""
    popen = psutil.Popen([command, *args])
    logger.debug("child_spawned", pid=popen.pid, command=command)
    return ChildProcess(popen)


def exit_status(returncode: int) -> int:
    """
    Map a child returncode to the watchdog's own exit code.

    Negative returncodes (terminated by signal N) become ``128 + N``, the
    shell convention; anything else is relayed as is.
    """
    if returncode < 0:
        return 128 - returncode
    return returncode


@dataclass(slots=True, frozen=True)
class WatchdogOutcome:
    """Result of a finished watchdog run."""

    state: WatchdogState
    exit_code: int
    memory: int | None  # Last observed total, None if never measured


class Watchdog:
    """
    Repeatedly measure the child's memory and kill it once over the limit.

    Each cycle takes a fresh snapshot, rebuilds the watched hierarchy from
    scratch, sums the configured metric and compares it to the limit. Nothing
    but the child handle and the config survives from one cycle to the next.
    """

    def __init__(
        self,
        child: WatchedProcess,
        source: SnapshotSource,
        config: WatchdogConfig,
        echo: Callable[[str], None] = click.echo,
    ) -> None:
        self._child = child
        self._source = source
        self._config = config
        self._echo = echo
        self._state = WatchdogState.RUNNING
        self._memory: int | None = None
        self._stop_event = threading.Event()
        self._logger = logger.bind(component="watchdog", pid=child.pid)

    @property
    def state(self) -> WatchdogState:
        return self._state

    @property
    def memory(self) -> int | None:
        """Total observed on the most recent cycle."""
        return self._memory

    def cancel(self) -> None:
        """Request the loop to stop; the child is then killed and waited for."""
        self._stop_event.set()

    def step(self) -> WatchdogState:
        """Run a single poll cycle and return the resulting state."""
        if self._state.is_terminal:
            return self._state

        snapshot = self._source.refresh()
        root = self._child.pid
        if root not in snapshot:
            self._logger.debug("child_gone")
            self._state = WatchdogState.CHILD_GONE
            return self._state

        hierarchy = expand_hierarchy(root, snapshot, self._config.include_children)
        memory = sum_memory(snapshot, hierarchy, self._config.metric)
        self._memory = memory
        self._logger.debug("memory_sampled", memory=memory, processes=len(hierarchy))

        if memory > self._config.limit:
            self._child.terminate()
            self._echo(f"memory usage = {memory} bytes, higher than limit of {self._config.limit}, killed.")
            self._logger.info("limit_exceeded", memory=memory, limit=self._config.limit)
            self._state = WatchdogState.EXCEEDED
        return self._state

    def run(self) -> WatchdogOutcome:
        """Poll until the limit is exceeded, the child exits, or cancel() is called."""
        self._logger.debug(
            "watchdog_started",
            limit=self._config.limit,
            metric=self._config.metric.value,
            include_children=self._config.include_children,
        )
        try:
            while self.step() is WatchdogState.RUNNING:
                # Wait for interval seconds or until cancel is requested
                if self._stop_event.wait(timeout=self._config.interval):
                    self._logger.info("watchdog_cancelled")
                    self._child.terminate()
                    self._state = WatchdogState.CANCELLED
        except BaseException:
            # Don't orphan the child if polling itself breaks
            self._logger.warning("watchdog_aborted", state=self._state.value)
            try:
                self._child.terminate()
            finally:
                self._child.wait()
            raise

        exit_code = exit_status(self._child.wait())
        self._logger.debug("watchdog_finished", state=self._state.value, exit_code=exit_code)
        return WatchdogOutcome(state=self._state, exit_code=exit_code, memory=self._memory)


@contextmanager
def cancel_on_signals(watchdog: Watchdog, signums: Sequence[int] = (signal.SIGINT, signal.SIGTERM)) -> Iterator[None]:
    """Route ``signums`` to ``watchdog.cancel()`` for the duration of the block."""

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("received_shutdown_signal", signal=signum)
        watchdog.cancel()

    previous = {signum: signal.signal(signum, _handle_signal) for signum in signums}
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
