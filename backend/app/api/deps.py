import hmac
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status
from sqlmodel import Session

from app.core.config import settings
from app.core.retry import RetryPolicy
from app.db.session import get_session
from app.services.billing import BillingGateway, BillingService
from app.services.contract import ContractService, SignatureGateway
from app.services.reconciler import ReconcilerService
from app.services.webhooks import WebhookService


def get_db() -> Session:
    yield from get_session()


@dataclass
class Gateways:
    """Clientes externos usados pelos serviços. ``None`` usa o cliente real compartilhado do processo."""

    signer: SignatureGateway | None = None
    billing: BillingGateway | None = None
    pix_retry_policy: RetryPolicy | None = None


def get_gateways() -> Gateways:
    return Gateways()


def get_billing_service(
    session: Annotated[Session, Depends(get_db)],
    gateways: Annotated[Gateways, Depends(get_gateways)],
) -> BillingService:
    return BillingService(session, gateways.billing, pix_retry_policy=gateways.pix_retry_policy)


def get_contract_service(
    session: Annotated[Session, Depends(get_db)],
    gateways: Annotated[Gateways, Depends(get_gateways)],
    billing: Annotated[BillingService, Depends(get_billing_service)],
) -> ContractService:
    return ContractService(session, gateways.signer, billing)


def get_reconciler_service(
    session: Annotated[Session, Depends(get_db)],
    gateways: Annotated[Gateways, Depends(get_gateways)],
) -> ReconcilerService:
    return ReconcilerService(session, gateways.billing)


def get_webhook_service(
    session: Annotated[Session, Depends(get_db)],
    contracts: Annotated[ContractService, Depends(get_contract_service)],
    reconciler: Annotated[ReconcilerService, Depends(get_reconciler_service)],
) -> WebhookService:
    return WebhookService(session, contracts, reconciler)


def require_admin_token(x_admin_token: Annotated[str | None, Header()] = None) -> None:
    expected = settings.admin_api_token
    if not expected:
        return
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")
