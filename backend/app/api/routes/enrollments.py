from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from app.api.deps import (
    get_billing_service,
    get_contract_service,
    get_db,
    get_reconciler_service,
    get_webhook_service,
    require_admin_token,
)
from app.schemas.enrollment import (
    ChargeRead,
    ContractGenerateRequest,
    ContractGenerateResponse,
    ContractRead,
    EnrollmentRead,
    PaymentLinkRequest,
    PaymentLinkResponse,
    ReconcileSummaryRead,
    ReprocessResponse,
    SubscriptionRead,
)
from app.services.billing import BillingService, PaymentLinkResult
from app.services.contract import ContractResult, ContractService
from app.services.reconciler import ReconcilerService
from app.services.store import EnrollmentStore
from app.services.webhooks import WebhookService

router = APIRouter(prefix="/enrollments", tags=["enrollments"], dependencies=[Depends(require_admin_token)])


def _contract_response(result: ContractResult) -> ContractGenerateResponse:
    return ContractGenerateResponse(
        beneficiary_id=result.beneficiary_id,
        document_id=result.document_id,
        signature_link=result.signature_link,
        contract_status=result.contract_status,
    )


def _payment_response(result: PaymentLinkResult) -> PaymentLinkResponse:
    artifact = result.artifact
    return PaymentLinkResponse(
        beneficiary_id=result.beneficiary_id,
        subscription_id=result.subscription_id,
        vindi_subscription_id=result.vindi_subscription_id,
        charge_id=result.charge_id,
        bill_id=result.bill_id,
        payment_method=result.payment_method,
        status=result.status,
        payment_status=result.payment_status,
        payment_url=result.payment_url,
        pix_code=artifact.pix_code,
        pix_qr_code_url=artifact.pix_qr_code_url,
        pix_pending=result.pix_pending,
        boleto_url=artifact.boleto_url,
        boleto_barcode=artifact.boleto_barcode,
        card_status=artifact.card_status,
    )


@router.post("/payments/refresh", response_model=ReconcileSummaryRead)
def refresh_payment_statuses(
    reconciler: Annotated[ReconcilerService, Depends(get_reconciler_service)],
) -> ReconcileSummaryRead:
    summary = reconciler.refresh_payment_statuses()
    return ReconcileSummaryRead(**summary.as_dict())


@router.post("/webhooks/reprocess", response_model=ReprocessResponse)
def reprocess_webhook_events(
    service: Annotated[WebhookService, Depends(get_webhook_service)],
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
) -> ReprocessResponse:
    results = service.reprocess_failed_events(limit)
    return ReprocessResponse(processed=len(results), results=results)


@router.get("/{beneficiary_id}", response_model=EnrollmentRead)
def get_enrollment(beneficiary_id: UUID, session: Annotated[Session, Depends(get_db)]) -> EnrollmentRead:
    store = EnrollmentStore(session)
    beneficiary = store.get_beneficiary(beneficiary_id)
    contract = store.get_contract(beneficiary.id)
    subscription = store.get_open_subscription(beneficiary.id)
    return EnrollmentRead(
        beneficiary_id=beneficiary.id,
        full_name=beneficiary.full_name,
        status=beneficiary.status,
        payment_status=beneficiary.payment_status,
        checkout_link=beneficiary.checkout_link,
        contract=ContractRead.model_validate(contract) if contract else None,
        subscription=SubscriptionRead.model_validate(subscription) if subscription else None,
        charges=[ChargeRead.model_validate(charge) for charge in store.list_charges(beneficiary.id)],
    )


@router.post("/{beneficiary_id}/contract", response_model=ContractGenerateResponse)
def generate_contract(
    beneficiary_id: UUID,
    service: Annotated[ContractService, Depends(get_contract_service)],
    payload: ContractGenerateRequest | None = None,
) -> ContractGenerateResponse:
    customer_data = payload.customer_data.model_dump(exclude_none=True) if payload and payload.customer_data else None
    plan_data = payload.plan_data.model_dump(exclude_none=True) if payload and payload.plan_data else None
    result = service.generate_contract(beneficiary_id, customer_data, plan_data)
    return _contract_response(result)


@router.post("/{beneficiary_id}/contract/resend", response_model=ContractGenerateResponse)
def resend_contract(
    beneficiary_id: UUID,
    service: Annotated[ContractService, Depends(get_contract_service)],
) -> ContractGenerateResponse:
    return _contract_response(service.resend_contract(beneficiary_id))


@router.post("/{beneficiary_id}/payment-link", response_model=PaymentLinkResponse)
def generate_payment_link(
    beneficiary_id: UUID,
    service: Annotated[BillingService, Depends(get_billing_service)],
    payload: PaymentLinkRequest | None = None,
) -> PaymentLinkResponse:
    method = payload.payment_method if payload else None
    return _payment_response(service.generate_payment_link(beneficiary_id, method))


@router.post("/{beneficiary_id}/subscription/cancel", response_model=SubscriptionRead)
def cancel_subscription(
    beneficiary_id: UUID,
    service: Annotated[BillingService, Depends(get_billing_service)],
) -> SubscriptionRead:
    subscription = service.cancel_subscription(beneficiary_id)
    return SubscriptionRead.model_validate(subscription)
