import asyncio
import signal
import sys
from typing import Callable, Dict, List

from .errors import warn

SIGNAL_NAMES: Dict[int, str] = {
    getattr(signal, name): name
    for name in ("SIGINT", "SIGTERM", "SIGHUP", "SIGUSR1", "SIGUSR2")
    if hasattr(signal, name)
}
TERMINATING_SIGNALS = tuple(SIGNAL_NAMES)


def ignore_sigpipe() -> bool:
    """Keep a peer closing its read side mid-write from killing the process."""
    try:
        signal.signal(signal.SIGPIPE, signal.SIG_IGN)
    except (AttributeError, OSError, ValueError):
        warn("unable to override SIGPIPE, may terminate on interrupted connections.")
        return False
    return True


class ShutdownController:
    """
    Terminating-signal watchers bound to an explicit loop and stop callback.

    The first watched signal calls `request_stop`; later ones are only logged.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, request_stop: Callable[[], None],
                 signals=TERMINATING_SIGNALS) -> None:
        self.loop = loop
        self.signals = tuple(signals)
        self._request_stop = request_stop
        self._installed: List[int] = []
        self._requested = False

    def __enter__(self) -> "ShutdownController":
        self.install()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def installed(self) -> List[int]:
        return list(self._installed)

    @property
    def stop_requested(self) -> bool:
        return self._requested

    def install(self) -> None:
        for signum in self.signals:
            try:
                self.loop.add_signal_handler(signum, self._on_signal, signum)
            except (NotImplementedError, RuntimeError, ValueError, OSError) as e:
                warn(f"unable to watch {SIGNAL_NAMES.get(signum, signum)}: {e}")
                continue
            self._installed.append(signum)

        ignore_sigpipe()

    def close(self) -> None:
        while self._installed:
            signum = self._installed.pop()
            try:
                self.loop.remove_signal_handler(signum)
            except (RuntimeError, ValueError, OSError) as e:
                warn(f"unable to remove {SIGNAL_NAMES.get(signum, signum)} watcher: {e}")

    def _on_signal(self, signum: int) -> None:
        print(f"Terminating due to signal {SIGNAL_NAMES.get(signum, 'unknown')}.", file=sys.stderr)
        if self._requested:
            return
        self._requested = True
        self._request_stop()
