from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator
from uuid import UUID


class BeneficiaryLockRegistry:
    """Exclusão mútua por beneficiário dentro do processo.

    Os locks são reentrantes: o handler de assinatura segura o lock e chama a
    ativação da cobrança, que pede o mesmo lock. Beneficiários diferentes não
    disputam entre si. Para vários processos o store complementa com
    ``SELECT ... FOR UPDATE`` na linha do beneficiário.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def _lock_for(self, beneficiary_id: UUID | str) -> threading.RLock:
        key = str(beneficiary_id)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, beneficiary_id: UUID | str) -> Iterator[None]:
        lock = self._lock_for(beneficiary_id)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


beneficiary_locks = BeneficiaryLockRegistry()
