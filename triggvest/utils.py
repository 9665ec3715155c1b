"""Bunch of random utilities."""

import datetime
import logging
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path

from filelock import FileLock

logger = logging.getLogger(__name__)


class Clock:
    """Time source for polling loops.

    All waiting in :py:mod:`triggvest.cctp` goes through a clock,
    so tests can swap in a fake clock and run 20 minute attestation
    budgets instantly.

    - :py:meth:`time` must be monotonic
    - :py:meth:`sleep` may return early when ``cancel_event`` is set
    """

    def time(self) -> float:
        raise NotImplementedError()

    def sleep(self, seconds: float, cancel_event: threading.Event | None = None) -> bool:
        """Wait for the given number of seconds.

        :return:
            ``True`` if the wait was interrupted by ``cancel_event``.
        """
        raise NotImplementedError()


class SystemClock(Clock):
    """Wall clock backed by :py:func:`time.monotonic`."""

    def time(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float, cancel_event: threading.Event | None = None) -> bool:
        if seconds <= 0:
            return cancel_event is not None and cancel_event.is_set()

        if cancel_event is None:
            time.sleep(seconds)
            return False

        # Event.wait() returns True when the flag was set
        return cancel_event.wait(seconds)


#: Shared default clock
SYSTEM_CLOCK = SystemClock()


def utc_now() -> datetime.datetime:
    """Current time as naive UTC datetime, second precision."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None, microsecond=0)


def shorten_hex(value: str | None, keep: int = 8) -> str:
    """Shorten a transaction hash or id for log and table output."""
    if not value:
        return "-"
    if len(value) <= keep * 2 + 3:
        return value
    return f"{value[:keep]}...{value[-keep:]}"


class ThreadColourFormatter(logging.Formatter):
    """Log formatter that assigns a unique ANSI colour to each thread name.

    Parallel transfers each run in their own thread
    (``transfer-<correlation id>``), so colouring the thread name
    makes interleaved stage logs easy to follow.

    Wraps an existing formatter (e.g. the one installed by ``coloredlogs``)
    and replaces the plain thread name in the formatted output with a
    colour-coded version. When no *inner* formatter is given, falls back to standard
    :class:`logging.Formatter` behaviour.
    """

    _PALETTE = [
        "\033[1;36m",  # bold cyan
        "\033[1;33m",  # bold yellow
        "\033[1;35m",  # bold magenta
        "\033[1;32m",  # bold green
        "\033[1;34m",  # bold blue
        "\033[1;91m",  # bold bright red
    ]
    _RESET = "\033[0m"

    def __init__(self, inner: logging.Formatter | None = None, fmt=None, datefmt=None):
        super().__init__(fmt, datefmt)
        self._inner = inner
        self._thread_colours: dict[str, str] = {}
        self._next_idx = 0

    def _colour_for(self, thread_name: str) -> str:
        if thread_name not in self._thread_colours:
            self._thread_colours[thread_name] = self._PALETTE[self._next_idx % len(self._PALETTE)]
            self._next_idx += 1
        return self._thread_colours[thread_name]

    def format(self, record: logging.LogRecord) -> str:
        original_name = record.threadName
        coloured_name = f"{self._colour_for(original_name)}{original_name}{self._RESET}"

        if self._inner is not None:
            result = self._inner.format(record)
            return result.replace(original_name, coloured_name, 1)

        record.threadName = coloured_name
        result = super().format(record)
        record.threadName = original_name
        return result


def setup_console_logging(
    default_log_level="warning",
    simplified_logging=False,
    log_file: Path | None = None,
    coloured_threads=False,
) -> logging.Logger:
    """Set up coloured log output for scripts.

    - Log level is read from ``LOG_LEVEL`` environment variable
    - Tune down some noisy dependency library logging

    :param log_file:
        Output both console and this log file.

    :param coloured_threads:
        Give each thread name a unique ANSI colour, useful when
        running many transfers in parallel.

    :return:
        Root logger
    """

    level = os.environ.get("LOG_LEVEL", default_log_level).upper()
    numeric_level = getattr(logging, level, None)
    assert numeric_level, f"No level: {level}"

    if simplified_logging:
        fmt = "%(message)s"
        date_fmt = "%H:%M:%S"
    else:
        fmt = "%(asctime)s %(name)-36s [%(threadName)s] %(message)s"
        date_fmt = "%Y-%m-%d %H:%M:%S"

    try:
        # Optional dependency
        import coloredlogs

        coloredlogs.install(level=numeric_level, fmt=fmt, date_fmt=date_fmt)
    except ImportError:
        # non-ANSI e.g. Docker
        logging.basicConfig(level=numeric_level, format=fmt, datefmt=date_fmt)

    root = logging.getLogger()

    if coloured_threads and not simplified_logging:
        for handler in root.handlers:
            if isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler):
                handler.setFormatter(ThreadColourFormatter(inner=handler.formatter))

    if log_file:
        assert isinstance(log_file, Path), "log_file must be a Path"
        log_file.parent.mkdir(parents=True, exist_ok=True)

        # The file always gets INFO, env var controls only terminal output
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(min(logging.INFO, numeric_level))
        file_handler.setFormatter(logging.Formatter(fmt, date_fmt))
        root.setLevel(min(logging.INFO, numeric_level))
        root.addHandler(file_handler)

    # Mute noise
    logging.getLogger("web3.providers.HTTPProvider").setLevel(logging.WARNING)
    logging.getLogger("web3.RequestManager").setLevel(logging.WARNING)
    logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
    return root


@contextmanager
def wait_other_writers(path: Path | str, timeout: int = 120):
    """Wait other potential writers writing the same file.

    - Used by the JSON transfer state file, which can be shared by
      several orchestrator processes resuming transfers

    :param path:
        File that is being written

    :param timeout:
        How many seconds wait to acquire the lock file.

    :raise filelock.Timeout:
        If the file writer is stuck with the lock.
    """

    if isinstance(path, str):
        path = Path(path)

    assert isinstance(path, Path), f"Not Path object: {path}"

    assert path.is_absolute(), f"Did not get an absolute path: {path}\nPlease use absolute paths for lock files to prevent polluting the local working directory."

    os.makedirs(path.parent, exist_ok=True)

    lock_file = path.parent / (path.name + ".lock")

    lock = FileLock(lock_file, timeout=timeout)

    if lock.is_locked:
        logger.info(
            "State file %s locked for writing, waiting %f seconds",
            path,
            timeout,
        )

    with lock:
        yield
