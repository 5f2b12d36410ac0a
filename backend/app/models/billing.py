from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON
from sqlmodel import Field

from app.models.base import TimestampedModel, UUIDModel


class PaymentMethod(str, Enum):
    PIX = "pix"
    BANK_SLIP = "bank_slip"
    CREDIT_CARD = "credit_card"


class SubscriptionStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    ACTIVE = "active"
    CANCELED = "canceled"
    FAILED = "failed"


class ChargeStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"


OPEN_CHARGE_STATUSES = (ChargeStatus.PENDING, ChargeStatus.PROCESSING)


class Plan(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "plans"

    name: str = Field(index=True)
    price_cents: int
    # Sem vindi_plan_id o plano não pode ser cobrado (erro de configuração).
    vindi_plan_id: int | None = Field(default=None)
    vindi_product_id: int | None = Field(default=None)
    is_active: bool = Field(default=True)


class Subscription(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "subscriptions"

    beneficiary_id: UUID = Field(foreign_key="beneficiaries.id", index=True)
    plan_id: UUID | None = Field(default=None, foreign_key="plans.id")
    payment_method: PaymentMethod = Field(default=PaymentMethod.PIX)
    status: SubscriptionStatus = Field(default=SubscriptionStatus.PENDING_PAYMENT)
    # Progresso parcial da ativação: um retry reaproveita o que já existe.
    vindi_customer_id: int | None = Field(default=None)
    vindi_subscription_id: int | None = Field(default=None, unique=True, index=True)
    canceled_at: datetime | None = Field(default=None)
    last_error: str | None = Field(default=None)


class Charge(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "charges"

    subscription_id: UUID = Field(foreign_key="subscriptions.id", index=True)
    beneficiary_id: UUID = Field(foreign_key="beneficiaries.id", index=True)
    charge_id: str = Field(unique=True, index=True, max_length=64)
    bill_id: str | None = Field(default=None, max_length=64)
    status: ChargeStatus = Field(default=ChargeStatus.PENDING, index=True)
    payment_method: PaymentMethod = Field(default=PaymentMethod.PIX)
    due_at: datetime | None = Field(default=None)
    paid_at: datetime | None = Field(default=None)

    # Artefato de pagamento conforme o meio escolhido
    print_url: str | None = Field(default=None, max_length=512)
    pix_code: str | None = Field(default=None)
    pix_qr_code_url: str | None = Field(default=None, max_length=512)
    pix_pending: bool = Field(default=False)
    boleto_url: str | None = Field(default=None, max_length=512)
    boleto_barcode: str | None = Field(default=None, max_length=128)
    card_status: str | None = Field(default=None, max_length=64)

    last_synced_at: datetime | None = Field(default=None)
    last_status_source: str | None = Field(default=None, max_length=32)
    last_error: str | None = Field(default=None)
    provider_payload: dict | None = Field(default=None, sa_type=JSON)
