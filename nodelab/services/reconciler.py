import logging
import threading
from typing import Callable, ContextManager, Optional

from nodelab.services.lifecycle_service import LifecycleService

logger = logging.getLogger(__name__)


class ReconciliationWorker:
    """
    주기적으로 LifecycleService.reconcile()을 호출하는 백그라운드 스레드.

    service_factory는 호출마다 새 DB 세션에 묶인 LifecycleService를 내주는
    컨텍스트 매니저를 반환해야 합니다.
    """

    def __init__(self, service_factory: Callable[[], ContextManager[LifecycleService]], interval_seconds: int = 30):
        self.service_factory = service_factory
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="node-reconciler", daemon=True)
        self._thread.start()
        logger.info("Reconciliation worker started (interval %ss)", self.interval_seconds)

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
        logger.info("Reconciliation worker stopped")

    def run_once(self) -> Optional[dict]:
        try:
            with self.service_factory() as service:
                result = service.reconcile()
        except Exception:
            logger.exception("Reconciliation pass failed")
            return None

        if result["corrected"] or result["orphans"]:
            logger.info(
                "Reconciliation corrected %d node(s), stopped %d orphan domain(s)",
                len(result["corrected"]), len(result["orphans"]),
            )
        return result

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            self.run_once()
