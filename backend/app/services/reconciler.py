from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Protocol, Tuple

from sqlmodel import Session

from app.core.config import settings
from app.core.errors import EnrollmentError, NotFoundError
from app.core.locks import BeneficiaryLockRegistry, beneficiary_locks
from app.core.logging_setup import get_logger
from app.models.base import utcnow
from app.models.beneficiary import Beneficiary, BeneficiaryStatus, PaymentStatus
from app.models.billing import Charge, ChargeStatus, Subscription, SubscriptionStatus
from app.services.events import PaymentEvent, UnknownPaymentEvent, map_provider_status
from app.services.gateways.vindi import get_vindi_client
from app.services.store import EnrollmentStore

logger = get_logger("reconciler")

_REGRESSIBLE_TO_FAILED = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)
_SETTLED_CHARGE_STATUSES = (ChargeStatus.PAID, ChargeStatus.FAILED)


class ChargeSource(Protocol):
    def get_charge(self, charge_id: int | str, *, timeout: float | None = None, retry: bool = True) -> Dict[str, Any]:
        ...


def advance_payment_status(beneficiary: Beneficiary, target: PaymentStatus) -> bool:
    """Move o status de pagamento do beneficiário respeitando a monotonicidade.

    ``paid`` nunca é revertido; ``failed`` só é aceito a partir de
    ``pending``/``processing``.
    """
    current = beneficiary.payment_status
    if current == target or current == PaymentStatus.PAID:
        return False
    if target == PaymentStatus.FAILED and current not in _REGRESSIBLE_TO_FAILED:
        return False
    beneficiary.payment_status = target
    if target == PaymentStatus.PAID and beneficiary.status == BeneficiaryStatus.PENDING_PAYMENT:
        beneficiary.status = BeneficiaryStatus.PAYMENT_CONFIRMED
    return True


@dataclass
class ReconcileSummary:
    examined: int = 0
    updated: int = 0
    failed: int = 0
    skipped: int = 0
    updates: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "examined": self.examined,
            "updated": self.updated,
            "failed": self.failed,
            "skipped": self.skipped,
            "updates": list(self.updates),
            "errors": list(self.errors),
        }


class ReconcilerService:
    """Aplica o status remoto das cobranças ao estado local.

    O webhook (caminho rápido) e o polling passam pelo mesmo ``apply_status``,
    de modo que os dois caminhos convergem para o mesmo resultado.
    """

    map_provider_status = staticmethod(map_provider_status)

    def __init__(
        self,
        session: Session,
        gateway: ChargeSource | None = None,
        *,
        locks: BeneficiaryLockRegistry | None = None,
        budget_seconds: float | None = None,
        charge_timeout_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session = session
        self.store = EnrollmentStore(session)
        self._gateway = gateway
        self.locks = locks or beneficiary_locks
        self.budget_seconds = budget_seconds if budget_seconds is not None else settings.reconcile_budget_seconds
        self.charge_timeout_seconds = (
            charge_timeout_seconds
            if charge_timeout_seconds is not None
            else settings.reconcile_charge_timeout_seconds
        )
        self._clock = clock

    @property
    def gateway(self) -> ChargeSource:
        if self._gateway is None:
            self._gateway = get_vindi_client()
        return self._gateway

    def apply_status(self, charge: Charge, provider_status: str | None, source: str) -> bool:
        """Aplica ``provider_status`` à cobrança e ao beneficiário. Retorna se algo mudou.

        Deve ser chamado com o lock do beneficiário já adquirido.
        """
        mapped = map_provider_status(provider_status)
        if mapped is None:
            logger.warning("[reconciler] status desconhecido %r para cobrança %s; ignorado", provider_status, charge.charge_id)
            return False
        charge_status, _ = mapped
        beneficiary = self.store.get_beneficiary(charge.beneficiary_id)
        changed = False

        if charge.status in _SETTLED_CHARGE_STATUSES:
            # Cobrança liquidada não muda; um novo ciclo cria outra linha.
            if charge_status != charge.status:
                logger.warning(
                    "[reconciler] cobrança %s já %s; status remoto %s ignorado",
                    charge.charge_id,
                    charge.status.value,
                    provider_status,
                )
        elif charge.status != charge_status:
            charge.status = charge_status
            charge.last_status_source = source
            changed = True
            if charge_status == ChargeStatus.PAID:
                charge.paid_at = utcnow()

        # O beneficiário espelha a cobrança, inclusive quando só ele diverge.
        if advance_payment_status(beneficiary, PaymentStatus(charge.status.value)):
            changed = True

        rows: List[object] = [charge, beneficiary]
        if charge.status == ChargeStatus.PAID:
            subscription = self.session.get(Subscription, charge.subscription_id)
            if subscription is not None and subscription.status == SubscriptionStatus.PENDING_PAYMENT:
                subscription.status = SubscriptionStatus.ACTIVE
                rows.append(subscription)

        charge.last_synced_at = utcnow()
        if changed:
            charge.last_error = None
        self.store.save(*rows)
        if changed:
            logger.info(
                "[reconciler] cobrança %s -> %s (beneficiário %s -> %s, via %s)",
                charge.charge_id,
                charge.status.value,
                beneficiary.id,
                beneficiary.payment_status.value,
                source,
            )
        return changed

    def on_payment_event(self, event: PaymentEvent) -> Charge | None:
        """Caminho rápido do webhook. ``NotFoundError`` quando a cobrança é desconhecida."""
        if isinstance(event, UnknownPaymentEvent):
            logger.info("[vindi-webhook] evento %s sem efeito local", event.event_type)
            return None

        charge = self.store.find_charge(event.charge_id) if event.charge_id else None
        if charge is None and event.bill_id:
            charge = self.store.find_charge_by_bill(event.bill_id)
        if charge is None:
            raise NotFoundError(
                "Cobrança não encontrada",
                details={"charge_id": event.charge_id, "bill_id": event.bill_id},
            )

        with self.locks.hold(charge.beneficiary_id):
            self.store.get_beneficiary(charge.beneficiary_id, for_update=True)
            self.session.refresh(charge)
            self.apply_status(charge, event.provider_status, source="webhook")
        return charge

    def _snapshot(self, charge: Charge) -> Tuple[str, str]:
        beneficiary = self.store.get_beneficiary(charge.beneficiary_id)
        return charge.status.value, beneficiary.payment_status.value

    def _reconcile_one(self, charge: Charge) -> Dict[str, Any] | None:
        remote = self.gateway.get_charge(charge.charge_id, timeout=self.charge_timeout_seconds, retry=False)
        with self.locks.hold(charge.beneficiary_id):
            self.store.get_beneficiary(charge.beneficiary_id, for_update=True)
            self.session.refresh(charge)
            old_status, old_payment = self._snapshot(charge)
            if not self.apply_status(charge, remote.get("status"), source="poll"):
                return None
            new_status, new_payment = self._snapshot(charge)
        return {
            "charge_id": charge.charge_id,
            "beneficiary_id": str(charge.beneficiary_id),
            "old_status": old_status,
            "new_status": new_status,
            "old_payment_status": old_payment,
            "new_payment_status": new_payment,
            "source": "poll",
        }

    def _record_lookup_error(self, charge: Charge, message: str) -> None:
        with self.locks.hold(charge.beneficiary_id):
            self.store.get_beneficiary(charge.beneficiary_id, for_update=True)
            self.session.refresh(charge)
            charge.last_error = message
            self.store.save(charge)

    def reconcile_all(self) -> ReconcileSummary:
        summary = ReconcileSummary()
        started = self._clock()
        charges = self.store.reconcilable_charges()
        logger.info("[reconciler] %s cobranças para conferir", len(charges))

        for index, charge in enumerate(charges):
            if self._clock() - started >= self.budget_seconds:
                summary.skipped = len(charges) - index
                logger.warning(
                    "[reconciler] orçamento de %.0fs esgotado; %s cobranças ficam para a próxima rodada",
                    self.budget_seconds,
                    summary.skipped,
                )
                break
            summary.examined += 1
            charge_id = charge.charge_id
            try:
                update = self._reconcile_one(charge)
            except EnrollmentError as exc:
                summary.failed += 1
                summary.errors.append({"charge_id": charge_id, "error": str(exc)})
                logger.warning("[reconciler] falha ao conferir cobrança %s: %s", charge_id, exc)
                self._record_lookup_error(charge, str(exc))
                continue
            except Exception as exc:
                self.session.rollback()
                summary.failed += 1
                summary.errors.append({"charge_id": charge_id, "error": str(exc)})
                logger.exception("[reconciler] erro inesperado na cobrança %s", charge_id)
                continue
            if update:
                summary.updated += 1
                summary.updates.append(update)

        logger.info(
            "[reconciler] examinadas=%s atualizadas=%s falhas=%s puladas=%s",
            summary.examined,
            summary.updated,
            summary.failed,
            summary.skipped,
        )
        return summary

    def refresh_payment_statuses(self) -> ReconcileSummary:
        return self.reconcile_all()
