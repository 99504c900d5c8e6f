from __future__ import annotations

import threading
from typing import Any, Callable, Dict, Optional

from privguard.core.logger import get_logger
from privguard.core.retention.ledger import RetentionLedger


class RetentionScheduler:
    """
    Background sweeper. Runs `ledger.sweep()` every `interval_seconds` on a
    daemon thread until `stop()`.
    """

    def __init__(
        self,
        *,
        ledger: RetentionLedger,
        interval_seconds: float = 86400.0,
        on_report: Optional[Callable[[Dict[str, Any]], None]] = None,
        logger: Any = None,
    ):
        self.ledger = ledger
        self.interval_seconds = max(0.05, float(interval_seconds))
        self.on_report = on_report
        self.logger = get_logger("retention.scheduler", logger)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_report: Optional[Dict[str, Any]] = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="retention-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._thread = None

    def run_once(self) -> Dict[str, Any]:
        report = self.ledger.sweep()
        self.last_report = report
        self.runs += 1
        if self.on_report is not None:
            try:
                self.on_report(report)
            except Exception as e:  # noqa: BLE001
                self.logger.warning(f"Retention report callback failed: {e}")
        return report

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception as e:  # noqa: BLE001
                self.logger.error(f"Retention sweep failed: {e}")
