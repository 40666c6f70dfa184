"""Convert termination signals into SystemExit so cleanup code runs."""
import signal
import threading
from contextlib import contextmanager
from typing import Iterable, Iterator

from appupgrade.core.logger import get_logger

logger = get_logger(__name__)

TERMINATION_SIGNALS = (signal.SIGTERM, signal.SIGHUP)


def _exit_on_signal(signum, frame):
    logger.warning(f"Received {signal.Signals(signum).name}, cleaning up")
    raise SystemExit(128 + signum)


@contextmanager
def exit_on_signals(signals: Iterable[int] = TERMINATION_SIGNALS) -> Iterator[None]:
    """Raise SystemExit(128 + signum) on SIGTERM/SIGHUP while the block runs.

    The exception unwinds through enclosing ``finally`` blocks and context
    managers, so mounts and containers they own are released. Previous
    handlers are restored on exit.

    Note:
        Python only delivers signals to the main thread; elsewhere this is a no-op.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    previous = {}
    for signum in signals:
        previous[signum] = signal.signal(signum, _exit_on_signal)
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
