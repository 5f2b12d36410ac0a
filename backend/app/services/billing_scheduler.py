from __future__ import annotations

import threading
from typing import Callable

from sqlmodel import Session

from app.core.config import settings
from app.core.logging_setup import get_logger
from app.services.reconciler import ChargeSource, ReconcilerService, ReconcileSummary

logger = get_logger("reconciler.scheduler")


class ReconciliationScheduler:
    """Roda a reconciliação de pagamentos em intervalo fixo numa thread própria.

    Recebe a fábrica de sessões e o cliente da Vindi na construção; cada rodada
    abre e fecha a própria sessão.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateway: ChargeSource | None = None,
        *,
        interval_seconds: float | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.interval_seconds = float(
            interval_seconds if interval_seconds is not None else settings.reconcile_interval_seconds
        )
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> ReconcileSummary:
        with self.session_factory() as session:
            service = ReconcilerService(session, self.gateway)
            summary = service.reconcile_all()
            if self.gateway is None:
                # Reaproveita o cliente criado pelo serviço nas próximas rodadas.
                self.gateway = service.gateway
            return summary

    def _loop(self) -> None:
        logger.info("[reconciler] agendador iniciado (intervalo %.0fs)", self.interval_seconds)
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("[reconciler] rodada de reconciliação falhou")
            self._stop.wait(self.interval_seconds)
        logger.info("[reconciler] agendador parado")

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="payment-reconciler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
