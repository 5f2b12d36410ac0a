from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from uuid import UUID

from sqlmodel import Field

from app.models.base import TimestampedModel, UUIDModel


class BeneficiaryStatus(str, Enum):
    ACTIVE = "ativo"
    INACTIVE = "inativo"
    PENDING = "pendente"
    PENDING_PAYMENT = "pending_payment"
    PAYMENT_CONFIRMED = "payment_confirmed"


class PaymentStatus(str, Enum):
    NOT_REQUESTED = "not_requested"
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"


class Beneficiary(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "beneficiaries"

    full_name: str = Field(index=True)
    cpf: str = Field(index=True, max_length=14)
    email: str | None = Field(default=None, index=True)
    phone: str | None = Field(default=None, max_length=32)
    birth_date: date | None = Field(default=None)

    address: str | None = Field(default=None)
    address_number: str | None = Field(default=None, max_length=16)
    neighborhood: str | None = Field(default=None)
    city: str | None = Field(default=None)
    state: str | None = Field(default=None, max_length=2)
    zipcode: str | None = Field(default=None, max_length=9)

    plan_id: UUID | None = Field(default=None, foreign_key="plans.id")
    status: BeneficiaryStatus = Field(default=BeneficiaryStatus.ACTIVE)
    payment_status: PaymentStatus = Field(default=PaymentStatus.NOT_REQUESTED)
    checkout_link: str | None = Field(default=None, max_length=512)

    # Exclusão lógica: contrato e cobranças permanecem como registro de auditoria.
    deleted_at: datetime | None = Field(default=None)

    @property
    def cpf_digits(self) -> str:
        return "".join(filter(str.isdigit, self.cpf or ""))
