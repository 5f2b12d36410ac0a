from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Protocol
from uuid import UUID

from sqlmodel import Session

from app.core.config import settings
from app.core.errors import (
    GatewayError,
    GatewayRejectedError,
    GatewayTransientError,
    InvalidStateError,
    PlanNotConfiguredError,
    ValidationError,
)
from app.core.locks import BeneficiaryLockRegistry, beneficiary_locks
from app.core.logging_setup import get_logger
from app.core.retry import RetryPolicy
from app.models.base import utcnow
from app.models.beneficiary import Beneficiary, BeneficiaryStatus, PaymentStatus
from app.models.billing import (
    OPEN_CHARGE_STATUSES,
    Charge,
    ChargeStatus,
    PaymentMethod,
    Plan,
    Subscription,
    SubscriptionStatus,
)
from app.models.contract import ContractStatus
from app.services.events import map_provider_status
from app.services.gateways.vindi import get_vindi_client
from app.services.reconciler import advance_payment_status
from app.services.store import EnrollmentStore
from app.utils.formatting import only_digits

logger = get_logger("billing")

_VINDI_PAYMENT_METHOD_CODES = {
    PaymentMethod.PIX: "pix",
    PaymentMethod.BANK_SLIP: "bank_slip",
    PaymentMethod.CREDIT_CARD: "credit_card",
}

_PIX_CODE_KEYS = ("pix_code", "pix_copia_e_cola", "pix_emv", "pix_qr", "qr_code_text", "emv")
_PIX_URL_KEYS = ("qr_code_url", "pix_qr_code_url", "qrcode_path")


class BillingGateway(Protocol):
    def find_customer(self, *, email: str | None, registry_code: str | None) -> Dict[str, Any] | None:
        ...

    def create_customer(self, data: Dict[str, Any], *, idempotency_key: str | None = None) -> Dict[str, Any]:
        ...

    def update_customer(self, customer_id: int | str, data: Dict[str, Any]) -> Dict[str, Any]:
        ...

    def create_subscription(
        self,
        *,
        plan_id: int,
        customer_id: int,
        payment_method_code: str,
        start_at: str,
        idempotency_key: str | None = None,
    ) -> Dict[str, Any]:
        ...

    def list_subscription_bills(self, subscription_id: int | str) -> List[Dict[str, Any]]:
        ...

    def get_charge(self, charge_id: int | str, *, timeout: float | None = None, retry: bool = True) -> Dict[str, Any]:
        ...

    def cancel_subscription(self, subscription_id: int | str) -> Dict[str, Any]:
        ...


@dataclass
class PaymentArtifact:
    print_url: str | None = None
    pix_code: str | None = None
    pix_qr_code_url: str | None = None
    boleto_url: str | None = None
    boleto_barcode: str | None = None
    card_status: str | None = None


@dataclass
class PaymentLinkResult:
    beneficiary_id: UUID
    subscription_id: UUID
    vindi_subscription_id: int | None
    charge_id: str
    bill_id: str | None
    payment_method: PaymentMethod
    status: ChargeStatus
    payment_status: PaymentStatus
    pix_pending: bool = False
    artifact: PaymentArtifact = field(default_factory=PaymentArtifact)

    @property
    def payment_url(self) -> str | None:
        return self.artifact.pix_qr_code_url or self.artifact.boleto_url or self.artifact.print_url


def _first_non_empty(sources: Iterable[Dict[str, Any]], keys: Iterable[str]) -> str | None:
    for source in sources:
        for key in keys:
            value = source.get(key)
            if value:
                return str(value)
    return None


def extract_payment_artifact(charge: Dict[str, Any], method: PaymentMethod) -> PaymentArtifact:
    """Lê o artefato de pagamento de uma cobrança da Vindi.

    O código PIX aparece em lugares diferentes conforme o gateway adquirente:
    na própria cobrança, nos metadados ou em
    ``last_transaction.gateway_response_fields``.
    """
    last_transaction = charge.get("last_transaction") or {}
    gateway_fields = last_transaction.get("gateway_response_fields") or {}
    metadata = charge.get("metadata") or {}
    sources = [s for s in (charge, metadata, gateway_fields) if isinstance(s, dict)]
    artifact = PaymentArtifact(print_url=charge.get("print_url"))

    if method == PaymentMethod.PIX:
        artifact.pix_code = _first_non_empty(sources, _PIX_CODE_KEYS)
        artifact.pix_qr_code_url = _first_non_empty(sources, _PIX_URL_KEYS) or artifact.print_url
    elif method == PaymentMethod.BANK_SLIP:
        artifact.boleto_url = charge.get("print_url")
        artifact.boleto_barcode = _first_non_empty(sources, ("code", "barcode", "typable_barcode"))
    else:
        artifact.card_status = last_transaction.get("status") or charge.get("status")
    return artifact


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _first_charge(bills: Iterable[Dict[str, Any]]) -> tuple[Dict[str, Any], str | None] | None:
    for bill in bills or []:
        charges = bill.get("charges") or []
        if charges:
            bill_id = bill.get("id")
            return charges[0], (str(bill_id) if bill_id is not None else None)
    return None


class BillingService:
    """Ativa a cobrança recorrente na Vindi depois do contrato assinado."""

    def __init__(
        self,
        session: Session,
        gateway: BillingGateway | None = None,
        *,
        pix_retry_policy: RetryPolicy | None = None,
        locks: BeneficiaryLockRegistry | None = None,
    ) -> None:
        self.session = session
        self.store = EnrollmentStore(session)
        self._gateway = gateway
        self.pix_retry_policy = pix_retry_policy or RetryPolicy.linear(
            settings.pix_artifact_attempts, settings.pix_artifact_delay_seconds
        )
        self.locks = locks or beneficiary_locks

    @property
    def gateway(self) -> BillingGateway:
        if self._gateway is None:
            self._gateway = get_vindi_client()
        return self._gateway

    # Cliente Vindi -------------------------------------------------------------
    @staticmethod
    def _address_payload(beneficiary: Beneficiary) -> Dict[str, Any]:
        address = {
            "street": beneficiary.address,
            "number": beneficiary.address_number,
            "neighborhood": beneficiary.neighborhood,
            "city": beneficiary.city,
            "state": beneficiary.state,
            "zipcode": only_digits(beneficiary.zipcode) if len(only_digits(beneficiary.zipcode)) == 8 else None,
        }
        payload = {key: value for key, value in address.items() if value}
        if payload:
            payload["country"] = "BR"
        return payload

    @staticmethod
    def _address_complete(customer: Dict[str, Any]) -> bool:
        address = customer.get("address") or {}
        return bool(
            address.get("street")
            and address.get("city")
            and address.get("state")
            and len(only_digits(address.get("zipcode"))) == 8
        )

    def _customer_payload(self, beneficiary: Beneficiary) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": beneficiary.full_name,
            "email": beneficiary.email,
            "registry_code": beneficiary.cpf_digits,
            "code": str(beneficiary.id),
        }
        phone = only_digits(beneficiary.phone)
        if phone:
            number = phone if phone.startswith("55") else f"55{phone}"
            payload["phones"] = [{"phone_type": "mobile", "number": number}]
        address = self._address_payload(beneficiary)
        if address:
            payload["address"] = address
        return payload

    def _ensure_customer(self, beneficiary: Beneficiary) -> Dict[str, Any]:
        existing = self.gateway.find_customer(email=beneficiary.email, registry_code=beneficiary.cpf_digits)
        if existing is None:
            customer = self.gateway.create_customer(
                self._customer_payload(beneficiary),
                idempotency_key=f"customer-{beneficiary.id}",
            )
            logger.info("[billing] cliente Vindi %s criado para %s", customer.get("id"), beneficiary.id)
            return customer

        logger.info("[billing] cliente Vindi %s reutilizado para %s", existing.get("id"), beneficiary.id)
        if not self._address_complete(existing):
            address = self._address_payload(beneficiary)
            if address:
                # PIX exige endereço completo no adquirente.
                try:
                    self.gateway.update_customer(existing["id"], {"address": address})
                except GatewayError as exc:
                    logger.warning("[billing] endereço do cliente %s não atualizado: %s", existing.get("id"), exc)
        return existing

    # Ativação -----------------------------------------------------------------
    @staticmethod
    def _resolve_method(payment_method: PaymentMethod | str | None) -> PaymentMethod:
        raw = payment_method or settings.default_payment_method
        try:
            return PaymentMethod(raw)
        except ValueError as exc:
            raise ValidationError(f"Meio de pagamento inválido: {raw}") from exc

    def _result_from_charge(self, beneficiary: Beneficiary, charge: Charge) -> PaymentLinkResult:
        subscription = self.session.get(Subscription, charge.subscription_id)
        return PaymentLinkResult(
            beneficiary_id=beneficiary.id,
            subscription_id=charge.subscription_id,
            vindi_subscription_id=subscription.vindi_subscription_id if subscription else None,
            charge_id=charge.charge_id,
            bill_id=charge.bill_id,
            payment_method=charge.payment_method,
            status=charge.status,
            payment_status=beneficiary.payment_status,
            pix_pending=charge.pix_pending,
            artifact=PaymentArtifact(
                print_url=charge.print_url,
                pix_code=charge.pix_code,
                pix_qr_code_url=charge.pix_qr_code_url,
                boleto_url=charge.boleto_url,
                boleto_barcode=charge.boleto_barcode,
                card_status=charge.card_status,
            ),
        )

    def _require_signed(self, beneficiary: Beneficiary) -> None:
        contract = self.store.get_contract(beneficiary.id)
        if contract is None or contract.contract_status != ContractStatus.SIGNED:
            status = contract.contract_status.value if contract else ContractStatus.NOT_REQUESTED.value
            raise InvalidStateError(
                "Contrato precisa estar assinado antes da cobrança",
                details={"contract_status": status},
            )

    def _require_plan(self, beneficiary: Beneficiary) -> Plan:
        plan = self.store.get_plan(beneficiary.plan_id)
        if plan is None or not plan.vindi_plan_id:
            raise PlanNotConfiguredError(
                "Plano sem vindi_plan_id configurado",
                details={"plan_id": str(beneficiary.plan_id) if beneficiary.plan_id else None},
            )
        return plan

    def _fetch_charge_quietly(self, charge_id: str) -> Dict[str, Any] | None:
        try:
            return self.gateway.get_charge(charge_id)
        except GatewayError as exc:
            logger.warning("[billing] consulta da cobrança %s falhou durante espera do PIX: %s", charge_id, exc)
            return None

    def _wait_for_pix(self, charge_data: Dict[str, Any]) -> tuple[Dict[str, Any], bool]:
        charge_id = str(charge_data["id"])
        refreshed, satisfied = self.pix_retry_policy.poll(
            lambda: self._fetch_charge_quietly(charge_id),
            until=lambda result: bool(result and extract_payment_artifact(result, PaymentMethod.PIX).pix_code),
            label=f"pix da cobrança {charge_id}",
        )
        return (refreshed or charge_data), satisfied

    def activate(self, beneficiary_id: UUID | str, payment_method: PaymentMethod | str | None = None) -> PaymentLinkResult:
        """Cria (ou retoma) assinatura e primeira cobrança do beneficiário.

        Idempotente: com uma cobrança não falha já registrada, devolve-a sem
        chamar a Vindi. Ids remotos são gravados assim que obtidos para que
        uma nova tentativa continue de onde parou.
        """
        method = self._resolve_method(payment_method)
        with self.locks.hold(beneficiary_id):
            beneficiary = self.store.get_beneficiary(beneficiary_id, for_update=True)
            self._require_signed(beneficiary)

            existing = self.store.active_charge(beneficiary.id)
            if existing is not None:
                logger.info("[billing] cobrança %s já existe para %s", existing.charge_id, beneficiary.id)
                return self._result_from_charge(beneficiary, existing)

            plan = self._require_plan(beneficiary)
            subscription = self.store.get_open_subscription(beneficiary.id)
            if subscription is not None and self.store.charges_for_subscription(subscription.id):
                # Todas as cobranças desta assinatura falharam: recomeça com uma nova.
                subscription.status = SubscriptionStatus.FAILED
                self.store.save(subscription)
                customer_id = subscription.vindi_customer_id
                subscription = Subscription(
                    beneficiary_id=beneficiary.id,
                    plan_id=plan.id,
                    payment_method=method,
                    vindi_customer_id=customer_id,
                )
            elif subscription is None:
                subscription = Subscription(beneficiary_id=beneficiary.id, plan_id=plan.id, payment_method=method)
            else:
                method = subscription.payment_method

            try:
                charge_data, bill_id = self._create_remote_charge(beneficiary, plan, subscription, method)
            except GatewayError as exc:
                subscription.last_error = str(exc)
                self.store.save(subscription)
                logger.warning("[billing] ativação de %s falhou: %s", beneficiary.id, exc)
                raise

            pix_pending = False
            artifact = extract_payment_artifact(charge_data, method)
            if method == PaymentMethod.PIX and not artifact.pix_code:
                charge_data, satisfied = self._wait_for_pix(charge_data)
                artifact = extract_payment_artifact(charge_data, method)
                pix_pending = not satisfied
                if pix_pending:
                    logger.warning("[billing] código PIX ainda indisponível para cobrança %s", charge_data.get("id"))

            return self._persist_charge(beneficiary, subscription, charge_data, bill_id, method, artifact, pix_pending)

    def _create_remote_charge(
        self,
        beneficiary: Beneficiary,
        plan: Plan,
        subscription: Subscription,
        method: PaymentMethod,
    ) -> tuple[Dict[str, Any], str | None]:
        if not subscription.vindi_customer_id:
            customer = self._ensure_customer(beneficiary)
            subscription.vindi_customer_id = int(customer["id"])
            self.store.save(subscription)

        bills: List[Dict[str, Any]] = []
        if not subscription.vindi_subscription_id:
            remote = self.gateway.create_subscription(
                plan_id=int(plan.vindi_plan_id),
                customer_id=int(subscription.vindi_customer_id),
                payment_method_code=_VINDI_PAYMENT_METHOD_CODES[method],
                start_at=date.today().isoformat(),
                idempotency_key=f"subscription-{beneficiary.id}-{subscription.id}",
            )
            subscription.vindi_subscription_id = int(remote["id"])
            self.store.save(subscription)
            logger.info("[billing] assinatura Vindi %s criada para %s", remote["id"], beneficiary.id)
            bills = remote.get("bills") or []

        found = _first_charge(bills)
        if found is None:
            # A fatura inicial nem sempre volta na criação da assinatura.
            found = _first_charge(self.gateway.list_subscription_bills(subscription.vindi_subscription_id))
        if found is None:
            raise GatewayTransientError(
                "Fatura inicial ainda não gerada pela Vindi",
                provider="vindi",
                details={"subscription_id": subscription.vindi_subscription_id},
            )
        charge_data, bill_id = found
        if not charge_data.get("id"):
            raise GatewayRejectedError("Cobrança sem id na resposta da Vindi", provider="vindi", details=charge_data)
        return charge_data, bill_id

    def _persist_charge(
        self,
        beneficiary: Beneficiary,
        subscription: Subscription,
        charge_data: Dict[str, Any],
        bill_id: str | None,
        method: PaymentMethod,
        artifact: PaymentArtifact,
        pix_pending: bool,
    ) -> PaymentLinkResult:
        mapped = map_provider_status(charge_data.get("status"))
        charge_status = mapped[0] if mapped else ChargeStatus.PENDING
        now = utcnow()
        charge = Charge(
            subscription_id=subscription.id,
            beneficiary_id=beneficiary.id,
            charge_id=str(charge_data["id"]),
            bill_id=bill_id,
            status=charge_status,
            payment_method=method,
            due_at=_parse_datetime(charge_data.get("due_at")),
            paid_at=now if charge_status == ChargeStatus.PAID else None,
            print_url=artifact.print_url,
            pix_code=artifact.pix_code,
            pix_qr_code_url=artifact.pix_qr_code_url,
            pix_pending=pix_pending,
            boleto_url=artifact.boleto_url,
            boleto_barcode=artifact.boleto_barcode,
            card_status=artifact.card_status,
            last_synced_at=now,
            last_status_source="activation",
            provider_payload=charge_data,
        )

        subscription.status = (
            SubscriptionStatus.ACTIVE if charge_status == ChargeStatus.PAID else SubscriptionStatus.PENDING_PAYMENT
        )
        subscription.last_error = None
        if beneficiary.status != BeneficiaryStatus.PAYMENT_CONFIRMED:
            beneficiary.status = BeneficiaryStatus.PENDING_PAYMENT
        advance_payment_status(beneficiary, PaymentStatus(charge_status.value))
        beneficiary.checkout_link = artifact.pix_qr_code_url or artifact.boleto_url or artifact.print_url
        self.store.save(subscription, charge, beneficiary)
        logger.info(
            "[billing] cobrança %s (%s) registrada para %s; status %s",
            charge.charge_id,
            method.value,
            beneficiary.id,
            charge.status.value,
        )
        return self._result_from_charge(beneficiary, charge)

    # Ações do operador ------------------------------------------------------------
    def generate_payment_link(
        self, beneficiary_id: UUID | str, payment_method: PaymentMethod | str | None = None
    ) -> PaymentLinkResult:
        with self.locks.hold(beneficiary_id):
            beneficiary = self.store.get_beneficiary(beneficiary_id, for_update=True)
            self._require_signed(beneficiary)
            existing = self.store.active_charge(beneficiary.id)
            if existing is not None:
                raise InvalidStateError(
                    "Já existe uma cobrança ativa para o beneficiário",
                    details={"charge_id": existing.charge_id, "status": existing.status.value},
                )
            return self.activate(beneficiary.id, payment_method)

    def cancel_subscription(self, beneficiary_id: UUID | str) -> Subscription:
        with self.locks.hold(beneficiary_id):
            beneficiary = self.store.get_beneficiary(beneficiary_id, for_update=True)
            subscription = self.store.get_open_subscription(beneficiary.id)
            if subscription is None:
                raise InvalidStateError("Nenhuma assinatura ativa para cancelar")

            if subscription.vindi_subscription_id:
                try:
                    self.gateway.cancel_subscription(subscription.vindi_subscription_id)
                except GatewayRejectedError as exc:
                    # 404: já cancelada do lado da Vindi.
                    if exc.status_code != 404:
                        subscription.last_error = str(exc)
                        self.store.save(subscription)
                        raise
                    logger.info("[billing] assinatura %s já inexistente na Vindi", subscription.vindi_subscription_id)

            now = utcnow()
            subscription.status = SubscriptionStatus.CANCELED
            subscription.canceled_at = now
            subscription.last_error = None
            rows: List[object] = [subscription]
            for charge in self.store.charges_for_subscription(subscription.id):
                if charge.status in OPEN_CHARGE_STATUSES:
                    charge.status = ChargeStatus.FAILED
                    charge.last_status_source = "cancel"
                    charge.last_synced_at = now
                    rows.append(charge)
            advance_payment_status(beneficiary, PaymentStatus.FAILED)
            beneficiary.status = BeneficiaryStatus.INACTIVE
            rows.append(beneficiary)
            self.store.save(*rows)
            logger.info("[billing] assinatura %s cancelada para %s", subscription.vindi_subscription_id, beneficiary.id)
            return subscription
