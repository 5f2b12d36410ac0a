from __future__ import annotations

from typing import Iterable
from uuid import UUID

from sqlmodel import Session, or_, select

from app.core.errors import NotFoundError
from app.models.base import utcnow
from app.models.beneficiary import Beneficiary, PaymentStatus
from app.models.billing import OPEN_CHARGE_STATUSES, Charge, ChargeStatus, Plan, Subscription, SubscriptionStatus
from app.models.contract import Contract
from app.models.webhook import WebhookEvent, WebhookEventStatus


class EnrollmentStore:
    """Acesso às tabelas do ciclo de adesão. Única fonte do estado local."""

    def __init__(self, session: Session) -> None:
        self.session = session

    @property
    def _supports_row_locks(self) -> bool:
        bind = self.session.get_bind()
        return bind.dialect.name == "postgresql"

    # Beneficiários -------------------------------------------------------
    def get_beneficiary(self, beneficiary_id: UUID | str, *, for_update: bool = False) -> Beneficiary:
        statement = select(Beneficiary).where(Beneficiary.id == UUID(str(beneficiary_id)))
        if for_update:
            # Sob o lock, a linha relida substitui a cópia do identity map.
            statement = statement.execution_options(populate_existing=True)
            if self._supports_row_locks:
                statement = statement.with_for_update()
        beneficiary = self.session.exec(statement).first()
        if not beneficiary:
            raise NotFoundError("Beneficiário não encontrado", details={"beneficiary_id": str(beneficiary_id)})
        return beneficiary

    def get_plan(self, plan_id: UUID | None) -> Plan | None:
        if plan_id is None:
            return None
        return self.session.get(Plan, plan_id)

    # Contratos -----------------------------------------------------------
    def get_contract(self, beneficiary_id: UUID) -> Contract | None:
        statement = select(Contract).where(Contract.beneficiary_id == beneficiary_id)
        return self.session.exec(statement).first()

    def get_or_create_contract(self, beneficiary_id: UUID) -> Contract:
        contract = self.get_contract(beneficiary_id)
        if contract is None:
            contract = Contract(beneficiary_id=beneficiary_id)
            self.session.add(contract)
            self.session.flush()
        return contract

    def find_contract_by_document_id(self, document_id: str) -> Contract | None:
        statement = select(Contract).where(Contract.document_id == document_id)
        return self.session.exec(statement).first()

    # Assinaturas e cobranças ---------------------------------------------
    def get_open_subscription(self, beneficiary_id: UUID) -> Subscription | None:
        """Assinatura em andamento (a ser reaproveitada por um retry de ativação)."""
        statement = (
            select(Subscription)
            .where(Subscription.beneficiary_id == beneficiary_id)
            .where(Subscription.status.in_([SubscriptionStatus.PENDING_PAYMENT, SubscriptionStatus.ACTIVE]))
            .order_by(Subscription.created_at.desc())
        )
        return self.session.exec(statement).first()

    def list_charges(self, beneficiary_id: UUID) -> list[Charge]:
        statement = (
            select(Charge)
            .where(Charge.beneficiary_id == beneficiary_id)
            .order_by(Charge.created_at.desc())
        )
        return list(self.session.exec(statement).all())

    def charges_for_subscription(self, subscription_id: UUID) -> list[Charge]:
        statement = select(Charge).where(Charge.subscription_id == subscription_id)
        return list(self.session.exec(statement).all())

    def active_charge(self, beneficiary_id: UUID) -> Charge | None:
        """Cobrança ainda válida (pendente, em processamento ou paga)."""
        statement = (
            select(Charge)
            .where(Charge.beneficiary_id == beneficiary_id)
            .where(Charge.status != ChargeStatus.FAILED)
            .order_by(Charge.created_at.desc())
        )
        return self.session.exec(statement).first()

    def find_charge(self, charge_id: str) -> Charge | None:
        statement = select(Charge).where(Charge.charge_id == str(charge_id))
        return self.session.exec(statement).first()

    def find_charge_by_bill(self, bill_id: str) -> Charge | None:
        statement = select(Charge).where(Charge.bill_id == str(bill_id)).order_by(Charge.created_at.desc())
        return self.session.exec(statement).first()

    def reconcilable_charges(self) -> list[Charge]:
        """Cobranças não terminais e cobranças pagas cujo beneficiário diverge."""
        statement = (
            select(Charge)
            .join(Beneficiary, Beneficiary.id == Charge.beneficiary_id)
            .where(
                or_(
                    Charge.status.in_(OPEN_CHARGE_STATUSES),
                    (Charge.status == ChargeStatus.PAID) & (Beneficiary.payment_status != PaymentStatus.PAID),
                )
            )
            .order_by(Charge.created_at)
        )
        return list(self.session.exec(statement).all())

    # Webhooks --------------------------------------------------------------
    def record_webhook(self, event: WebhookEvent) -> WebhookEvent:
        self.session.add(event)
        self.session.commit()
        self.session.refresh(event)
        return event

    def finish_webhook(self, event: WebhookEvent, status: WebhookEventStatus, *, error: str | None = None) -> None:
        event.status = status
        event.error = error
        event.attempts = int(event.attempts or 0) + 1
        event.processed_at = utcnow()
        event.touch()
        self.session.add(event)
        self.session.commit()

    def reprocessable_webhooks(self, limit: int = 50) -> list[WebhookEvent]:
        statement = (
            select(WebhookEvent)
            .where(WebhookEvent.status.in_([WebhookEventStatus.FAILED, WebhookEventStatus.NOT_FOUND]))
            .order_by(WebhookEvent.created_at)
            .limit(limit)
        )
        return list(self.session.exec(statement).all())

    # Persistência ----------------------------------------------------------
    def save(self, *rows: object) -> None:
        for row in rows:
            touch = getattr(row, "touch", None)
            if callable(touch):
                touch()
            self.session.add(row)
        self.session.commit()
        for row in rows:
            self.session.refresh(row)

    def save_all(self, rows: Iterable[object]) -> None:
        self.save(*list(rows))
