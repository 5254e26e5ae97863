"""Background thread that enforces round deadlines between client polls."""

from __future__ import annotations

import logging
import threading
from typing import Callable

from engine.errors import EngineError
from engine.service import GameService

logger = logging.getLogger(__name__)


class DeadlineTicker(threading.Thread):
    """Calls ``GameService.tick`` every ``interval_sec`` until stopped.

    Typed engine rejections are logged and retried on the next tick. Anything
    else is an infrastructure fault: ``on_fatal`` is told and the error propagates.
    """

    def __init__(
        self,
        service: GameService,
        interval_sec: float = 1.0,
        *,
        on_fatal: Callable[[BaseException], None] | None = None,
    ):
        super().__init__(name="deadline-ticker", daemon=True)
        self.service = service
        self.interval_sec = max(0.05, float(interval_sec))
        self.on_fatal = on_fatal
        self.failure: BaseException | None = None
        self._stopped = threading.Event()

    def run(self) -> None:
        logger.info("Deadline ticker started (every %.2fs)", self.interval_sec)
        while not self._stopped.wait(self.interval_sec):
            try:
                self.service.tick()
            except EngineError as exc:
                logger.warning("Deadline tick rejected: %s; retrying in %.2fs", exc, self.interval_sec)
            except Exception as exc:
                self.failure = exc
                logger.critical("Deadline ticker stopped by an unexpected error", exc_info=exc)
                if self.on_fatal is not None:
                    self.on_fatal(exc)
                raise

    def stop(self, timeout_sec: float = 5.0) -> None:
        self._stopped.set()
        if self.is_alive():
            self.join(timeout=timeout_sec)
