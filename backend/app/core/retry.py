from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Sequence, Tuple, Type, TypeVar

from app.core.errors import GatewayTransientError
from app.core.logging_setup import get_logger

T = TypeVar("T")

logger = get_logger("retry")


@dataclass
class RetryPolicy:
    """Política de tentativas limitada com atraso configurável.

    ``delays`` fixa explicitamente a espera após cada tentativa (ex.: 3s, 6s, 9s);
    sem ela o atraso é exponencial: ``base_delay * multiplier ** (tentativa - 1)``.
    ``sleep`` é injetável para que os testes não durmam de verdade.
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    multiplier: float = 2.0
    delays: Sequence[float] | None = None
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    @classmethod
    def linear(cls, attempts: int, step: float, sleep: Callable[[float], None] | None = None) -> "RetryPolicy":
        """attempts=3, step=3 -> esperas de 3s, 6s e 9s."""
        schedule = [step * (index + 1) for index in range(max(attempts, 0))]
        return cls(max_attempts=attempts, delays=schedule, sleep=sleep or time.sleep)

    def delay_for(self, attempt: int) -> float:
        """Atraso após a tentativa ``attempt`` (1-based)."""
        if self.delays:
            index = min(max(attempt - 1, 0), len(self.delays) - 1)
            return float(self.delays[index])
        return float(self.base_delay * (self.multiplier ** max(attempt - 1, 0)))

    def call(
        self,
        func: Callable[[], T],
        *,
        retry_on: Tuple[Type[BaseException], ...] = (GatewayTransientError,),
        label: str = "operation",
    ) -> T:
        """Executa ``func`` re-tentando apenas as exceções de ``retry_on``."""
        attempts = max(self.max_attempts, 1)
        for attempt in range(1, attempts + 1):
            try:
                return func()
            except retry_on as exc:
                if attempt >= attempts:
                    logger.warning("[retry] %s falhou após %s tentativas: %s", label, attempt, exc)
                    raise
                delay = self.delay_for(attempt)
                logger.info("[retry] %s tentativa %s/%s falhou (%s); nova tentativa em %.1fs", label, attempt, attempts, exc, delay)
                self.sleep(delay)
        raise AssertionError("unreachable")  # pragma: no cover

    def poll(self, func: Callable[[], T], *, until: Callable[[T], bool], label: str = "poll") -> Tuple[T | None, bool]:
        """Espera e chama ``func`` até ``until(resultado)`` ser verdadeiro.

        Retorna ``(último resultado, satisfeito)``. Cada chamada é precedida pela
        espera correspondente, pois o chamador já tem o resultado inicial.
        """
        result: T | None = None
        for attempt in range(1, max(self.max_attempts, 0) + 1):
            self.sleep(self.delay_for(attempt))
            result = func()
            if until(result):
                return result, True
            logger.info("[retry] %s ainda incompleto (tentativa %s/%s)", label, attempt, self.max_attempts)
        return result, False
