from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass, field
from typing import Any, Dict, List
from uuid import UUID

from sqlmodel import Session

from app.core.errors import NotFoundError
from app.core.logging_setup import get_logger
from app.models.webhook import WebhookEvent, WebhookEventStatus, WebhookProvider
from app.services.contract import ContractService
from app.services.events import (
    InvalidPayloadError,
    PaymentEvent,
    SignatureEvent,
    SignatureViewed,
    UnknownPaymentEvent,
    UnknownSignatureEvent,
    parse_autentique_payload,
    parse_vindi_payload,
)
from app.services.reconciler import ReconcilerService
from app.services.store import EnrollmentStore

logger = get_logger("webhooks")


def verify_autentique_signature(raw_body: bytes, signature: str | None, secret: str | None) -> bool:
    """HMAC-SHA256 (hex) do corpo bruto. Sem segredo configurado, tudo é aceito."""
    if not secret:
        return True
    if not signature:
        return False
    computed = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(computed, signature.strip().lower())


def verify_vindi_token(candidates: List[str | None], expected: str | None) -> bool:
    if not expected:
        return True
    return any(candidate and hmac.compare_digest(candidate, expected) for candidate in candidates)


@dataclass
class WebhookOutcome:
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)
    event_id: UUID | None = None


class WebhookService:
    """Registra cada webhook recebido e despacha para o coordenador certo.

    Nunca levanta exceção para a rota: todo caminho vira um ``WebhookOutcome``
    com o status HTTP correspondente (404 para id desconhecido, 500 para erro
    inesperado, de modo que o provedor reenvie).
    """

    def __init__(self, session: Session, contracts: ContractService, reconciler: ReconcilerService) -> None:
        self.session = session
        self.store = EnrollmentStore(session)
        self.contracts = contracts
        self.reconciler = reconciler

    # Registro ------------------------------------------------------------------
    def _record(self, provider: WebhookProvider, event_type: str, external_id: str | None, payload: Any) -> WebhookEvent:
        return self.store.record_webhook(
            WebhookEvent(
                provider=provider,
                event_type=event_type[:64],
                external_id=external_id,
                payload=payload if isinstance(payload, dict) else {"raw": payload},
            )
        )

    def _fail(self, record: WebhookEvent, exc: Exception, tag: str) -> WebhookOutcome:
        self.session.rollback()
        logger.exception("[%s] erro ao processar evento %s", tag, record.id)
        self.store.finish_webhook(record, WebhookEventStatus.FAILED, error=str(exc))
        return WebhookOutcome(500, {"detail": "Erro ao processar webhook", "error": str(exc)}, record.id)

    # Autentique ----------------------------------------------------------------
    def handle_autentique(self, payload: Any) -> WebhookOutcome:
        try:
            event = parse_autentique_payload(payload)
        except InvalidPayloadError as exc:
            logger.warning("[autentique-webhook] payload inválido: %s", exc)
            record = self._record(WebhookProvider.AUTENTIQUE, "invalid", None, payload)
            self.store.finish_webhook(record, WebhookEventStatus.IGNORED, error=str(exc))
            return WebhookOutcome(400, {"detail": str(exc)}, record.id)

        logger.info("[autentique-webhook] evento %s documento %s", event.event_type, event.document_id)
        record = self._record(WebhookProvider.AUTENTIQUE, event.event_type, event.document_id, payload)
        return self._dispatch_signature(record, event)

    def _dispatch_signature(self, record: WebhookEvent, event: SignatureEvent) -> WebhookOutcome:
        contract = self.store.find_contract_by_document_id(event.document_id)
        if contract is None:
            logger.warning("[autentique-webhook] beneficiário não encontrado para documento %s", event.document_id)
            self.store.finish_webhook(record, WebhookEventStatus.NOT_FOUND, error="Documento desconhecido")
            return WebhookOutcome(
                404,
                {"detail": "Beneficiário não encontrado", "document_id": event.document_id},
                record.id,
            )

        beneficiary_id = contract.beneficiary_id
        record.beneficiary_id = beneficiary_id
        try:
            contract = self.contracts.on_signature_event(beneficiary_id, event)
        except Exception as exc:
            return self._fail(record, exc, "autentique-webhook")

        ignored = isinstance(event, (SignatureViewed, UnknownSignatureEvent))
        self.store.finish_webhook(record, WebhookEventStatus.IGNORED if ignored else WebhookEventStatus.PROCESSED)
        return WebhookOutcome(
            200,
            {
                "ok": True,
                "event_type": event.event_type,
                "beneficiary_id": str(beneficiary_id),
                "contract_status": contract.contract_status.value,
            },
            record.id,
        )

    # Vindi -----------------------------------------------------------------------
    def handle_vindi(self, payload: Any) -> WebhookOutcome:
        try:
            event = parse_vindi_payload(payload)
        except InvalidPayloadError as exc:
            logger.warning("[vindi-webhook] payload inválido: %s", exc)
            record = self._record(WebhookProvider.VINDI, "invalid", None, payload)
            self.store.finish_webhook(record, WebhookEventStatus.IGNORED, error=str(exc))
            return WebhookOutcome(400, {"detail": str(exc)}, record.id)

        logger.info(
            "[vindi-webhook] evento %s cobrança %s status %s",
            event.event_type,
            event.external_id,
            event.provider_status,
        )
        record = self._record(WebhookProvider.VINDI, event.event_type, event.external_id, payload)
        return self._dispatch_payment(record, event)

    def _dispatch_payment(self, record: WebhookEvent, event: PaymentEvent) -> WebhookOutcome:
        if isinstance(event, UnknownPaymentEvent):
            self.store.finish_webhook(record, WebhookEventStatus.IGNORED)
            return WebhookOutcome(200, {"ok": True, "ignored": True, "event_type": event.event_type}, record.id)

        try:
            charge = self.reconciler.on_payment_event(event)
        except NotFoundError:
            logger.warning("[vindi-webhook] cobrança %s não encontrada", event.external_id)
            self.store.finish_webhook(record, WebhookEventStatus.NOT_FOUND, error="Cobrança desconhecida")
            return WebhookOutcome(
                404,
                {"detail": "Cobrança não encontrada", "charge_id": event.external_id},
                record.id,
            )
        except Exception as exc:
            return self._fail(record, exc, "vindi-webhook")

        beneficiary = self.store.get_beneficiary(charge.beneficiary_id)
        record.beneficiary_id = beneficiary.id
        self.store.finish_webhook(record, WebhookEventStatus.PROCESSED)
        return WebhookOutcome(
            200,
            {
                "ok": True,
                "event_type": event.event_type,
                "beneficiary_id": str(beneficiary.id),
                "charge_id": charge.charge_id,
                "charge_status": charge.status.value,
                "payment_status": beneficiary.payment_status.value,
            },
            record.id,
        )

    # Reprocessamento -------------------------------------------------------------
    def reprocess_failed_events(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Redespacha eventos ``failed`` e ``not_found`` (ex.: webhook antes do commit local)."""
        results: List[Dict[str, Any]] = []
        for record in self.store.reprocessable_webhooks(limit):
            previous = record.status
            try:
                if record.provider == WebhookProvider.AUTENTIQUE:
                    outcome = self._dispatch_signature(record, parse_autentique_payload(record.payload))
                else:
                    outcome = self._dispatch_payment(record, parse_vindi_payload(record.payload))
            except InvalidPayloadError as exc:
                self.store.finish_webhook(record, WebhookEventStatus.IGNORED, error=str(exc))
                outcome = WebhookOutcome(400, {"detail": str(exc)}, record.id)

            self.session.refresh(record)
            results.append(
                {
                    "event_id": str(record.id),
                    "provider": record.provider.value,
                    "external_id": record.external_id,
                    "previous_status": previous.value,
                    "status": record.status.value,
                    "http_status": outcome.status_code,
                }
            )
        logger.info("[webhooks] %s eventos reprocessados", len(results))
        return results
