from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List
from uuid import UUID

from pydantic import BaseModel, Field

from app.models.beneficiary import BeneficiaryStatus, PaymentStatus
from app.models.billing import ChargeStatus, PaymentMethod, SubscriptionStatus
from app.models.contract import ContractStatus
from app.schemas.common import IDModel, Timestamped


class CustomerDataOverride(BaseModel):
    full_name: str | None = None
    cpf: str | None = None
    email: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zipcode: str | None = None


class PlanDataOverride(BaseModel):
    name: str | None = None
    price_cents: int | None = Field(default=None, gt=0)


class ContractGenerateRequest(BaseModel):
    customer_data: CustomerDataOverride | None = None
    plan_data: PlanDataOverride | None = None


class ContractGenerateResponse(BaseModel):
    beneficiary_id: UUID
    document_id: str
    signature_link: str
    contract_status: ContractStatus


class PaymentLinkRequest(BaseModel):
    payment_method: PaymentMethod | None = None


class PaymentLinkResponse(BaseModel):
    beneficiary_id: UUID
    subscription_id: UUID
    vindi_subscription_id: int | None
    charge_id: str
    bill_id: str | None
    payment_method: PaymentMethod
    status: ChargeStatus
    payment_status: PaymentStatus
    payment_url: str | None
    pix_code: str | None = None
    pix_qr_code_url: str | None = None
    pix_pending: bool = False
    boleto_url: str | None = None
    boleto_barcode: str | None = None
    card_status: str | None = None


class ContractRead(IDModel, Timestamped):
    document_id: str | None
    signature_link: str | None
    contract_status: ContractStatus
    signed_at: datetime | None
    last_error: str | None


class SubscriptionRead(IDModel, Timestamped):
    plan_id: UUID | None
    payment_method: PaymentMethod
    status: SubscriptionStatus
    vindi_customer_id: int | None
    vindi_subscription_id: int | None
    canceled_at: datetime | None
    last_error: str | None


class ChargeRead(IDModel, Timestamped):
    charge_id: str
    bill_id: str | None
    status: ChargeStatus
    payment_method: PaymentMethod
    due_at: datetime | None
    paid_at: datetime | None
    print_url: str | None
    pix_code: str | None
    pix_qr_code_url: str | None
    pix_pending: bool
    boleto_url: str | None
    boleto_barcode: str | None
    last_synced_at: datetime | None
    last_status_source: str | None
    last_error: str | None


class EnrollmentRead(BaseModel):
    beneficiary_id: UUID
    full_name: str
    status: BeneficiaryStatus
    payment_status: PaymentStatus
    checkout_link: str | None
    contract: ContractRead | None
    subscription: SubscriptionRead | None
    charges: List[ChargeRead]


class ReconcileSummaryRead(BaseModel):
    examined: int
    updated: int
    failed: int
    skipped: int
    updates: List[Dict[str, Any]]
    errors: List[Dict[str, Any]]


class ReprocessResult(BaseModel):
    event_id: UUID
    provider: str
    external_id: str | None
    previous_status: str
    status: str
    http_status: int


class ReprocessResponse(BaseModel):
    processed: int
    results: List[ReprocessResult]
