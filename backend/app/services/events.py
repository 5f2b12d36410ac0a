"""Eventos de webhook já classificados.

Os payloads da Autentique e da Vindi viram uniões fechadas de dataclasses, de
forma que os handlers tratam cada variante explicitamente em vez de comparar
strings espalhadas pelo código.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Tuple, Union

from app.core.errors import ValidationError
from app.models.beneficiary import PaymentStatus
from app.models.billing import ChargeStatus


class InvalidPayloadError(ValidationError):
    """JSON sem o envelope esperado (respondido com 400)."""


# Assinatura (Autentique) ---------------------------------------------------


@dataclass(frozen=True)
class _SignatureEventBase:
    document_id: str
    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class SignatureFinished(_SignatureEventBase):
    """document.finished: todas as assinaturas concluídas."""


@dataclass(frozen=True)
class SignatureAccepted(_SignatureEventBase):
    """signature.accepted: o signatário assinou."""


@dataclass(frozen=True)
class SignatureRejected(_SignatureEventBase):
    pass


@dataclass(frozen=True)
class SignatureViewed(_SignatureEventBase):
    pass


@dataclass(frozen=True)
class UnknownSignatureEvent(_SignatureEventBase):
    pass


SignatureEvent = Union[
    SignatureFinished,
    SignatureAccepted,
    SignatureRejected,
    SignatureViewed,
    UnknownSignatureEvent,
]

_SIGNATURE_EVENT_TYPES = {
    "document.finished": SignatureFinished,
    "signature.accepted": SignatureAccepted,
    "signature.rejected": SignatureRejected,
    "signature.viewed": SignatureViewed,
}


def parse_autentique_payload(payload: Any) -> SignatureEvent:
    if not isinstance(payload, dict):
        raise InvalidPayloadError("Payload inválido: objeto JSON esperado")
    event = payload.get("event")
    if not isinstance(event, dict):
        raise InvalidPayloadError("Payload inválido: envelope 'event' ausente")
    event_type = event.get("type")
    data = event.get("data") if isinstance(event.get("data"), dict) else {}

    # signature.* traz o documento em data.document; document.* em data.id
    if isinstance(event_type, str) and event_type.startswith("signature."):
        document = data.get("document")
        if isinstance(document, dict):
            document = document.get("id")
    else:
        document = data.get("id")

    if not event_type or not document:
        raise InvalidPayloadError(
            "Payload inválido: evento ou documento ausente",
            details={"event_type": event_type},
        )

    event_class = _SIGNATURE_EVENT_TYPES.get(event_type, UnknownSignatureEvent)
    return event_class(document_id=str(document), event_type=str(event_type), payload=payload)


# Pagamento (Vindi) ---------------------------------------------------------


def map_provider_status(provider_status: str | None) -> Tuple[ChargeStatus, PaymentStatus] | None:
    """Status da Vindi -> (status da cobrança, status de pagamento do beneficiário).

    Usada tanto pelo webhook quanto pelo polling. Status desconhecidos
    retornam ``None`` e são ignorados pelo chamador.
    """
    status = (provider_status or "").strip().lower()
    if status == "paid":
        return ChargeStatus.PAID, PaymentStatus.PAID
    if status in ("canceled", "rejected", "failed"):
        return ChargeStatus.FAILED, PaymentStatus.FAILED
    if status == "pending":
        return ChargeStatus.PENDING, PaymentStatus.PENDING
    if status == "processing":
        return ChargeStatus.PROCESSING, PaymentStatus.PROCESSING
    return None


@dataclass(frozen=True)
class _PaymentEventBase:
    charge_id: str | None
    provider_status: str | None
    event_type: str
    bill_id: str | None = None
    payload: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def external_id(self) -> str | None:
        return self.charge_id or self.bill_id


@dataclass(frozen=True)
class PaymentPaid(_PaymentEventBase):
    pass


@dataclass(frozen=True)
class PaymentFailed(_PaymentEventBase):
    pass


@dataclass(frozen=True)
class PaymentPending(_PaymentEventBase):
    pass


@dataclass(frozen=True)
class PaymentProcessing(_PaymentEventBase):
    pass


@dataclass(frozen=True)
class UnknownPaymentEvent(_PaymentEventBase):
    """Tipo ou status sem efeito local (inclui o evento ``test`` da Vindi)."""


PaymentEvent = Union[
    PaymentPaid,
    PaymentFailed,
    PaymentPending,
    PaymentProcessing,
    UnknownPaymentEvent,
]

_PAYMENT_EVENT_CLASSES = {
    ChargeStatus.PAID: PaymentPaid,
    ChargeStatus.FAILED: PaymentFailed,
    ChargeStatus.PENDING: PaymentPending,
    ChargeStatus.PROCESSING: PaymentProcessing,
}

# O tipo do evento nativo é mais confiável que o status embutido, que pode
# refletir a cobrança antes da transição.
_VINDI_EVENT_STATUS = {
    "bill_paid": "paid",
    "charge_paid": "paid",
    "charge_rejected": "rejected",
    "charge_canceled": "canceled",
    "bill_canceled": "canceled",
    "charge_created": "pending",
    "bill_created": "pending",
}


def _as_id(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _classify_payment(
    *,
    charge_id: str | None,
    bill_id: str | None,
    provider_status: str | None,
    event_type: str,
    payload: Dict[str, Any],
) -> PaymentEvent:
    mapped = map_provider_status(provider_status)
    event_class = _PAYMENT_EVENT_CLASSES[mapped[0]] if mapped else UnknownPaymentEvent
    return event_class(
        charge_id=charge_id,
        bill_id=bill_id,
        provider_status=provider_status,
        event_type=event_type,
        payload=payload,
    )


def parse_vindi_payload(payload: Any) -> PaymentEvent:
    """Aceita o formato plano ``{charge_id, status}`` ou o envelope nativo da Vindi."""
    if not isinstance(payload, dict):
        raise InvalidPayloadError("Payload inválido: objeto JSON esperado")

    event = payload.get("event")
    if isinstance(event, dict):
        event_type = str(event.get("type") or "unknown")
        data = event.get("data") if isinstance(event.get("data"), dict) else {}
        if event_type == "test":
            return UnknownPaymentEvent(charge_id=None, provider_status=None, event_type=event_type, payload=payload)

        charge = data.get("charge") if isinstance(data.get("charge"), dict) else None
        bill = data.get("bill") if isinstance(data.get("bill"), dict) else None
        charge_id = bill_id = entity_status = None
        if charge:
            charge_id = _as_id(charge.get("id"))
            entity_status = charge.get("status")
            charge_bill = charge.get("bill")
            bill_id = _as_id(charge_bill.get("id")) if isinstance(charge_bill, dict) else None
        elif bill:
            bill_id = _as_id(bill.get("id"))
            entity_status = bill.get("status")
            charges = bill.get("charges") or []
            if charges and isinstance(charges[0], dict):
                charge_id = _as_id(charges[0].get("id"))

        if not charge_id and not bill_id:
            return UnknownPaymentEvent(charge_id=None, provider_status=None, event_type=event_type, payload=payload)

        provider_status = _VINDI_EVENT_STATUS.get(event_type, entity_status)
        return _classify_payment(
            charge_id=charge_id,
            bill_id=bill_id,
            provider_status=provider_status,
            event_type=event_type,
            payload=payload,
        )

    charge_id = _as_id(payload.get("charge_id"))
    if not charge_id:
        raise InvalidPayloadError("Payload inválido: charge_id ausente")
    provider_status = payload.get("status")
    return _classify_payment(
        charge_id=charge_id,
        bill_id=_as_id(payload.get("bill_id")),
        provider_status=str(provider_status) if provider_status is not None else None,
        event_type=str(payload.get("type") or "charge_status"),
        payload=payload,
    )
