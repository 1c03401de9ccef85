"""Bridge OS signals to a shutdown flag the main loop can observe."""

import signal
import threading
from collections.abc import Iterable
from types import FrameType, TracebackType
from typing import Any, Literal

from .config import SignalSettings
from .logging import get_logger

logger = get_logger(__name__)


def _resolve_signal(value: int | str) -> int:
    if isinstance(value, str):
        try:
            return int(getattr(signal, value.upper()))
        except AttributeError as e:
            raise ValueError(f"Unknown signal: {value}") from e
    return int(value)


class ShutdownSignal:
    """Records interrupt/terminate signals instead of exiting from the handler.

    The handler only sets a flag; the owner checks ``requested`` (or blocks
    in ``wait()``) and then performs its own teardown, e.g. ``session.stop()``.

    Example:
        >>> with ShutdownSignal() as shutdown:
        ...     session = orchestrator.start()
        ...     shutdown.wait()
        ...     session.stop()
    """

    def __init__(self, signals: Iterable[int | str] = (signal.SIGINT, signal.SIGTERM)):
        self.signals = [_resolve_signal(sig) for sig in signals]
        self._event = threading.Event()
        self._received: int | None = None
        self._previous: dict[int, Any] = {}

    @classmethod
    def from_settings(cls, settings: SignalSettings) -> "ShutdownSignal":
        return cls(settings.handlers if settings.enabled else ())

    @property
    def requested(self) -> bool:
        return self._event.is_set()

    @property
    def received(self) -> int | None:
        """Number of the first signal that requested shutdown."""
        return self._received

    def _handle(self, signum: int, frame: FrameType | None) -> None:
        if self._received is None:
            self._received = signum
        self._event.set()

    def trigger(self, signum: int = signal.SIGTERM) -> None:
        """Request shutdown without an OS signal."""
        self._handle(signum, None)

    def install(self) -> "ShutdownSignal":
        """Install handlers; must be called from the main thread."""
        for sig in self.signals:
            self._previous[sig] = signal.signal(sig, self._handle)
        logger.debug("Shutdown signal handlers installed", signals=self.signals)
        return self

    def restore(self) -> None:
        """Put back the handlers that were active before install()."""
        for sig, handler in self._previous.items():
            signal.signal(sig, handler)
        self._previous.clear()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until shutdown is requested or the timeout passes."""
        return self._event.wait(timeout)

    def __enter__(self) -> "ShutdownSignal":
        return self.install()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> Literal[False]:
        self.restore()
        return False
