# noqa: F401 to ensure models are imported for metadata
from app.models.beneficiary import Beneficiary
from app.models.billing import Charge, Plan, Subscription
from app.models.contract import Contract
from app.models.webhook import WebhookEvent

__all__ = [
    "Beneficiary",
    "Charge",
    "Contract",
    "Plan",
    "Subscription",
    "WebhookEvent",
]
