"""Common utilities: subprocess helpers, cancellation, and task fan-out."""

import copy
import logging
import subprocess
import threading
import time
import weakref
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from errors import CancelledError, FleetError, TimedOutError

logger = logging.getLogger(__name__)


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 600,
    capture: bool = True,
    env: Optional[dict] = None,
    input: Optional[str] = None,
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr)."""
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            input=input,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return -1, '', str(e)


def _pump(stream, write: Callable[[bytes], Any]) -> None:
    """Copy a pipe into a writer until EOF."""
    try:
        for chunk in iter(lambda: stream.read1(65536), b''):
            write(chunk)
    finally:
        stream.close()


def stream_command(
    cmd: list[str],
    sink: Callable[[bytes], Any],
    deadline: 'Deadline',
    input: Optional[bytes] = None,
    poll_interval: float = 0.5,
) -> tuple[int, str]:
    """Run a command, feeding stdout to sink as it arrives.

    The process is terminated if the deadline expires before it exits,
    unless input is given: a write runs to completion so the remote side is
    never left with a partial file, and the caller checks the deadline
    before the next attempt.

    Returns:
        (returncode, stderr) tuple

    Raises:
        TimedOutError/CancelledError: If the deadline fired first
    """
    logger.debug(f"Streaming: {' '.join(cmd)}")
    proc = subprocess.Popen(
        cmd,
        stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )
    stderr_chunks: list[bytes] = []
    pumps = [
        threading.Thread(target=_pump, args=(proc.stdout, sink), daemon=True),
        threading.Thread(target=_pump, args=(proc.stderr, stderr_chunks.append), daemon=True),
    ]
    for pump in pumps:
        pump.start()

    if input is not None:
        try:
            proc.stdin.write(input)
        except BrokenPipeError:
            # Process exited early; its return code reports why
            logger.debug("stdin closed early by %s", cmd[0])
        finally:
            proc.stdin.close()

    interruptible = input is None
    terminated = False
    while True:
        try:
            proc.wait(timeout=poll_interval)
            break
        except subprocess.TimeoutExpired:
            if interruptible and deadline.expired():
                proc.terminate()
                try:
                    proc.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    proc.wait()
                terminated = True
                break

    for pump in pumps:
        pump.join()

    if terminated:
        raise deadline.error(cmd[0])

    return proc.returncode, b''.join(stderr_chunks).decode('utf-8', errors='replace')


class Deadline:
    """Timeout plus cancellation signal.

    Children share the clock, never outlive their parent's timeout, and are
    cancelled when the parent is. Sleeping through a Deadline wakes early
    on cancellation.
    """

    def __init__(self, timeout: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._expires: Optional[float] = clock() + timeout if timeout is not None else None
        self._event = threading.Event()
        self._children: weakref.WeakSet = weakref.WeakSet()

    def child(self, timeout: Optional[float] = None) -> 'Deadline':
        """Derive a deadline bounded by this one, optionally shorter."""
        child = copy.copy(self)
        child._event = threading.Event()
        child._children = weakref.WeakSet()
        if timeout is not None:
            expires = self._clock() + timeout
            child._expires = expires if self._expires is None else min(expires, self._expires)
        self._children.add(child)
        if self.cancelled:
            child._event.set()
        return child

    def cancel(self) -> None:
        self._event.set()
        for child in list(self._children):
            child.cancel()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def expired(self) -> bool:
        """True once cancelled or past the timeout."""
        if self.cancelled:
            return True
        return self._expires is not None and self._clock() >= self._expires

    def remaining(self) -> Optional[float]:
        """Seconds left, or None when unbounded."""
        if self._expires is None:
            return None
        return max(0.0, self._expires - self._clock())

    def sleep(self, seconds: float) -> bool:
        """Sleep up to seconds. Returns False if the deadline fired."""
        if self.expired():
            return False
        wait = seconds
        remaining = self.remaining()
        if remaining is not None:
            wait = min(wait, remaining)
        if wait > 0:
            self._wait(wait)
        return not self.expired()

    def _wait(self, seconds: float) -> None:
        self._event.wait(seconds)

    def error(self, what: str) -> FleetError:
        """Exception describing why this deadline fired."""
        if self.cancelled:
            return CancelledError(f"{what}: cancelled")
        return TimedOutError(f"{what}: deadline exceeded")


@dataclass
class TaskOutcome:
    """Result of one fanned-out task: a value or an error, never both."""
    item: Any
    value: Any = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def fan_out(fn: Callable[[Any], Any], items: Iterable[Any], name: str = 'task') -> list[TaskOutcome]:
    """Run fn once per item concurrently and wait for all of them.

    Each task yields exactly one outcome; an exception in one task never
    affects its siblings. Outcomes are returned in item order.
    """
    items = list(items)
    if not items:
        return []

    outcomes: list[Optional[TaskOutcome]] = [None] * len(items)
    with ThreadPoolExecutor(max_workers=len(items), thread_name_prefix=name) as pool:
        futures = {pool.submit(fn, item): index for index, item in enumerate(items)}
        for future in as_completed(futures):
            index = futures[future]
            try:
                outcomes[index] = TaskOutcome(items[index], value=future.result())
            except Exception as e:
                logger.debug("[%s] task for %s failed: %s", name, items[index], e)
                outcomes[index] = TaskOutcome(items[index], error=e)

    return [outcome for outcome in outcomes if outcome is not None]
