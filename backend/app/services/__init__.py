from app.services.billing import BillingService, PaymentLinkResult
from app.services.billing_scheduler import ReconciliationScheduler
from app.services.contract import ContractResult, ContractService
from app.services.reconciler import ReconcilerService, ReconcileSummary
from app.services.store import EnrollmentStore
from app.services.webhooks import WebhookService

__all__ = [
    "BillingService",
    "ContractResult",
    "ContractService",
    "EnrollmentStore",
    "PaymentLinkResult",
    "ReconcileSummary",
    "ReconcilerService",
    "ReconciliationScheduler",
    "WebhookService",
]
