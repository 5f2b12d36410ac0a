from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Mapping, Protocol
from uuid import UUID

from jinja2 import Environment, FileSystemLoader, select_autoescape
from sqlmodel import Session

from app.core.config import settings
from app.core.errors import EnrollmentError, GatewayError, InvalidStateError, NotFoundError, ValidationError
from app.core.locks import BeneficiaryLockRegistry, beneficiary_locks
from app.core.logging_setup import get_logger
from app.models.base import utcnow
from app.models.beneficiary import Beneficiary
from app.models.contract import TERMINAL_CONTRACT_STATUSES, Contract, ContractStatus, can_transition
from app.services.events import (
    SignatureAccepted,
    SignatureEvent,
    SignatureFinished,
    SignatureRejected,
    SignatureViewed,
)
from app.services.gateways.autentique import CreatedDocument, get_autentique_client
from app.services.store import EnrollmentStore
from app.utils.email_validation import normalize_email
from app.utils.formatting import currency_to_words, format_brl, format_cpf, number_to_words, only_digits

if TYPE_CHECKING:
    from app.services.billing import BillingService

logger = get_logger("contract")

_MONTHS = [
    "janeiro",
    "fevereiro",
    "março",
    "abril",
    "maio",
    "junho",
    "julho",
    "agosto",
    "setembro",
    "outubro",
    "novembro",
    "dezembro",
]


_RESENDABLE_STATUSES = (ContractStatus.ERROR, ContractStatus.PENDING_SIGNATURE)

class SignatureGateway(Protocol):
    def create_document(self, *, name: str, signer_email: str, html: str, filename: str) -> CreatedDocument:
        ...


@dataclass
class ContractResult:
    beneficiary_id: UUID
    document_id: str
    signature_link: str
    contract_status: ContractStatus


class ContractRenderer:
    """Preenche o modelo HTML do contrato enviado à Autentique."""

    def __init__(self, template_root: Path | None = None, template_name: str = "contract.html") -> None:
        self.template_root = template_root or Path(__file__).resolve().parent.parent / "templates"
        self.template_name = template_name
        self.template_env = Environment(
            loader=FileSystemLoader(self.template_root),
            autoescape=select_autoescape(["html", "xml"]),
        )

    @staticmethod
    def _long_date(value: date) -> str:
        return f"{value.day:02d} de {_MONTHS[value.month - 1]} de {value.year}"

    def render(self, customer: Mapping[str, Any], plan: Mapping[str, Any], *, today: date | None = None) -> str:
        address = ", ".join(
            part
            for part in (
                customer.get("address"),
                customer.get("city"),
                customer.get("state"),
                f"CEP: {customer['zipcode']}" if customer.get("zipcode") else None,
            )
            if part
        )
        if customer.get("city") and customer.get("state"):
            place = f"{customer['city']}/{customer['state']}"
        else:
            place = settings.contract_company_city
        loyalty_months = settings.contract_loyalty_months
        fee_percent = settings.contract_termination_fee_percent
        context = {
            "company_name": settings.contract_company_name,
            "company_cnpj": settings.contract_company_cnpj,
            "forum_city": settings.contract_company_city,
            "customer_name": customer["full_name"],
            "customer_cpf": format_cpf(customer["cpf"]),
            "customer_address": address,
            "plan_name": plan["name"],
            "price": format_brl(plan["price_cents"]),
            "price_words": currency_to_words(plan["price_cents"]),
            "loyalty_months": loyalty_months,
            "loyalty_months_words": number_to_words(loyalty_months),
            "termination_fee_percent": fee_percent,
            "termination_fee_words": number_to_words(fee_percent),
            "signature_place": place,
            "signature_date": self._long_date(today or date.today()),
        }
        template = self.template_env.get_template(self.template_name)
        return template.render(**context)


class ContractService:
    """Emite o contrato na Autentique e acompanha o status da assinatura.

    Toda transição acontece sob o lock do beneficiário. A assinatura concluída
    dispara a ativação da cobrança ainda dentro do mesmo lock (reentrante).
    """

    def __init__(
        self,
        session: Session,
        signer: SignatureGateway | None = None,
        billing: "BillingService | None" = None,
        *,
        renderer: ContractRenderer | None = None,
        locks: BeneficiaryLockRegistry | None = None,
    ) -> None:
        self.session = session
        self.store = EnrollmentStore(session)
        self._signer = signer
        self._billing = billing
        self.renderer = renderer or ContractRenderer()
        self.locks = locks or beneficiary_locks

    @property
    def signer(self) -> SignatureGateway:
        if self._signer is None:
            self._signer = get_autentique_client()
        return self._signer

    @property
    def billing(self) -> "BillingService":
        if self._billing is None:
            from app.services.billing import BillingService

            self._billing = BillingService(self.session, locks=self.locks)
        return self._billing

    # Dados do contrato -------------------------------------------------------
    def _customer_data(self, beneficiary: Beneficiary, overrides: Mapping[str, Any] | None) -> Dict[str, Any]:
        # O registro do banco é a fonte; o chamador pode sobrescrever campos pontuais.
        data: Dict[str, Any] = {
            "full_name": beneficiary.full_name,
            "cpf": beneficiary.cpf,
            "email": beneficiary.email,
            "address": beneficiary.address,
            "city": beneficiary.city,
            "state": beneficiary.state,
            "zipcode": beneficiary.zipcode,
        }
        for key, value in (overrides or {}).items():
            if key in data and value not in (None, ""):
                data[key] = value

        missing = [key for key in ("full_name", "cpf", "email") if not (data.get(key) or "").strip()]
        if missing:
            raise ValidationError(
                "Dados do beneficiário incompletos para o contrato",
                details={"missing": missing},
            )
        if len(only_digits(data["cpf"])) != 11:
            raise ValidationError("CPF inválido", details={"cpf": data["cpf"]})
        try:
            data["email"] = normalize_email(data["email"])
        except ValueError as exc:
            raise ValidationError(str(exc), details={"email": data["email"]}) from exc
        data["full_name"] = data["full_name"].strip()
        return data

    def _plan_data(self, beneficiary: Beneficiary, overrides: Mapping[str, Any] | None) -> Dict[str, Any]:
        plan = self.store.get_plan(beneficiary.plan_id)
        data: Dict[str, Any] = {
            "name": plan.name if plan else None,
            "price_cents": plan.price_cents if plan else None,
        }
        for key, value in (overrides or {}).items():
            if key in data and value is not None:
                data[key] = value
        if not data["name"] or data["price_cents"] is None:
            raise ValidationError("Plano sem nome ou valor para o contrato", details={"plan_id": str(beneficiary.plan_id)})
        if int(data["price_cents"]) <= 0:
            raise ValidationError("Valor do plano deve ser positivo", details={"price_cents": data["price_cents"]})
        data["price_cents"] = int(data["price_cents"])
        return data

    @staticmethod
    def _filename(full_name: str) -> str:
        cleaned = re.sub(r"[^a-zA-Z0-9\s]", "", full_name).strip()
        slug = re.sub(r"\s+", "_", cleaned) or "beneficiario"
        return f"contrato_{slug}.html"

    # Operações -----------------------------------------------------------------
    def generate_contract(
        self,
        beneficiary_id: UUID | str,
        customer_data: Mapping[str, Any] | None = None,
        plan_data: Mapping[str, Any] | None = None,
    ) -> ContractResult:
        with self.locks.hold(beneficiary_id):
            beneficiary = self.store.get_beneficiary(beneficiary_id, for_update=True)
            current = self.store.get_contract(beneficiary.id)
            if current and current.contract_status in TERMINAL_CONTRACT_STATUSES:
                raise InvalidStateError(
                    f"Contrato já está {current.contract_status.value}; não é possível gerar outro",
                    details={"contract_status": current.contract_status.value},
                )

            customer = self._customer_data(beneficiary, customer_data)
            plan = self._plan_data(beneficiary, plan_data)

            contract = self.store.get_or_create_contract(beneficiary.id)
            if contract.contract_status == ContractStatus.ERROR:
                # Regeneração após falha volta ao início do fluxo.
                contract.contract_status = ContractStatus.NOT_REQUESTED

            html = self.renderer.render(customer, plan)
            try:
                document = self.signer.create_document(
                    name=f"Contrato {plan['name']} - {customer['full_name']}",
                    signer_email=customer["email"],
                    html=html,
                    filename=self._filename(customer["full_name"]),
                )
            except GatewayError as exc:
                contract.contract_status = ContractStatus.ERROR
                contract.last_error = str(exc)
                self.store.save(contract)
                logger.warning("[contract] falha ao criar documento para %s: %s", beneficiary.id, exc)
                raise

            contract.document_id = document.document_id
            contract.signature_link = document.signature_link
            contract.provider_payload = document.raw
            contract.contract_status = ContractStatus.PENDING_SIGNATURE
            contract.last_error = None
            self.store.save(contract)
            logger.info(
                "[contract] documento %s criado para beneficiário %s",
                document.document_id,
                beneficiary.id,
            )
            return ContractResult(
                beneficiary_id=beneficiary.id,
                document_id=document.document_id,
                signature_link=document.signature_link,
                contract_status=contract.contract_status,
            )

    def resend_contract(self, beneficiary_id: UUID | str) -> ContractResult:
        with self.locks.hold(beneficiary_id):
            beneficiary = self.store.get_beneficiary(beneficiary_id)
            contract = self.store.get_contract(beneficiary.id)
            status = contract.contract_status if contract else ContractStatus.NOT_REQUESTED
            if status not in _RESENDABLE_STATUSES:
                raise InvalidStateError(
                    f"Reenvio não permitido com contrato {status.value}",
                    details={"contract_status": status.value},
                )
            logger.info("[contract] reenvio solicitado para %s (status %s)", beneficiary.id, status.value)
            return self.generate_contract(beneficiary.id)

    def on_signature_event(self, beneficiary_id: UUID | str, event: SignatureEvent) -> Contract:
        with self.locks.hold(beneficiary_id):
            beneficiary = self.store.get_beneficiary(beneficiary_id, for_update=True)
            contract = self.store.get_contract(beneficiary.id)
            if contract is None:
                raise NotFoundError("Contrato não encontrado", details={"beneficiary_id": str(beneficiary.id)})

            if isinstance(event, (SignatureFinished, SignatureAccepted)):
                self._mark_signed(beneficiary, contract, event)
            elif isinstance(event, SignatureRejected):
                self._mark_refused(contract, event)
            elif isinstance(event, SignatureViewed):
                logger.info("[autentique-webhook] documento %s visualizado", event.document_id)
            else:
                logger.info("[autentique-webhook] evento não tratado: %s", event.event_type)
            return contract

    def _mark_signed(self, beneficiary: Beneficiary, contract: Contract, event: SignatureEvent) -> None:
        if contract.contract_status == ContractStatus.SIGNED:
            logger.info("[autentique-webhook] contrato de %s já assinado; evento repetido", beneficiary.id)
            return
        if not can_transition(contract.contract_status, ContractStatus.SIGNED):
            logger.warning(
                "[autentique-webhook] %s ignorado: contrato de %s está %s",
                event.event_type,
                beneficiary.id,
                contract.contract_status.value,
            )
            return

        contract.contract_status = ContractStatus.SIGNED
        contract.signed_at = utcnow()
        contract.signed_payload = event.payload
        contract.last_error = None
        self.store.save(contract)
        logger.info("[autentique-webhook] contrato de %s assinado (%s)", beneficiary.id, event.event_type)

        try:
            self.billing.activate(beneficiary.id)
        except EnrollmentError as exc:
            # A assinatura continua válida; o operador gera o link depois.
            logger.warning("[autentique-webhook] ativação da cobrança falhou para %s: %s", beneficiary.id, exc)
            contract.last_error = f"Ativação da cobrança: {exc}"
            self.store.save(contract)

    def _mark_refused(self, contract: Contract, event: SignatureEvent) -> None:
        if contract.contract_status == ContractStatus.REFUSED:
            return
        if not can_transition(contract.contract_status, ContractStatus.REFUSED):
            logger.warning(
                "[autentique-webhook] recusa ignorada: contrato %s está %s",
                contract.id,
                contract.contract_status.value,
            )
            return
        contract.contract_status = ContractStatus.REFUSED
        contract.signed_payload = event.payload
        self.store.save(contract)
        logger.info("[autentique-webhook] contrato %s recusado", contract.id)
