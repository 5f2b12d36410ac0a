from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, List, Optional

import httpx

from app.core.config import settings
from app.core.errors import GatewayRejectedError
from app.core.retry import RetryPolicy
from app.services.gateways.base import GatewayClient


class VindiClient(GatewayClient):
    """Cliente REST da Vindi (clientes, assinaturas, faturas e cobranças)."""

    provider = "vindi"

    def __init__(
        self,
        api_key: str,
        *,
        api_url: str | None = None,
        timeout_seconds: float | None = None,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(
            api_url or settings.resolved_vindi_api_url(),
            timeout_seconds=timeout_seconds,
            retry_policy=retry_policy,
            auth=(api_key, ""),
            transport=transport,
        )

    # Clientes ----------------------------------------------------------------
    def find_customer(self, *, email: str | None, registry_code: str | None) -> Optional[Dict[str, Any]]:
        """Primeiro cliente com e-mail ou CPF exatamente iguais, na ordem da Vindi."""
        clauses = []
        if email:
            clauses.append(f'email:"{email}"')
        if registry_code:
            clauses.append(f"registry_code:{registry_code}")
        if not clauses:
            return None
        payload = self._request("GET", "/customers", params={"query": " OR ".join(clauses)})
        for customer in payload.get("customers") or []:
            if email and customer.get("email") == email:
                return customer
            if registry_code and customer.get("registry_code") == registry_code:
                return customer
        return None

    def create_customer(self, data: Dict[str, Any], *, idempotency_key: str | None = None) -> Dict[str, Any]:
        payload = self._request("POST", "/customers", json=data, idempotency_key=idempotency_key)
        customer = payload.get("customer") or {}
        if not customer.get("id"):
            raise GatewayRejectedError("Cliente criado mas ID não retornado pela Vindi", provider=self.provider, details=payload)
        return customer

    def update_customer(self, customer_id: int | str, data: Dict[str, Any]) -> Dict[str, Any]:
        payload = self._request("PUT", f"/customers/{customer_id}", json=data)
        return payload.get("customer") or {}

    # Assinaturas -------------------------------------------------------------
    def create_subscription(
        self,
        *,
        plan_id: int,
        customer_id: int,
        payment_method_code: str,
        start_at: str,
        idempotency_key: str | None = None,
    ) -> Dict[str, Any]:
        body = {
            "plan_id": int(plan_id),
            "customer_id": int(customer_id),
            "payment_method_code": payment_method_code,
            "start_at": start_at,
        }
        payload = self._request("POST", "/subscriptions", json=body, idempotency_key=idempotency_key)
        subscription = payload.get("subscription") or {}
        if not subscription.get("id"):
            raise GatewayRejectedError(
                "Assinatura criada mas ID não retornado pela Vindi", provider=self.provider, details=payload
            )
        # A fatura inicial pode vir fora do objeto da assinatura.
        if not subscription.get("bills") and payload.get("bill"):
            subscription["bills"] = [payload["bill"]]
        return subscription

    def cancel_subscription(self, subscription_id: int | str) -> Dict[str, Any]:
        payload = self._request("DELETE", f"/subscriptions/{subscription_id}", params={"cancel_bills": "true"})
        return payload.get("subscription") or {}

    # Faturas e cobranças -----------------------------------------------------
    def list_subscription_bills(self, subscription_id: int | str) -> List[Dict[str, Any]]:
        payload = self._request("GET", "/bills", params={"query": f"subscription_id:{subscription_id}"})
        return list(payload.get("bills") or [])

    def get_bill(self, bill_id: int | str) -> Dict[str, Any]:
        payload = self._request("GET", f"/bills/{bill_id}")
        return payload.get("bill") or {}

    def get_charge(self, charge_id: int | str, *, timeout: float | None = None, retry: bool = True) -> Dict[str, Any]:
        payload = self._request("GET", f"/charges/{charge_id}", timeout=timeout, retry=retry)
        charge = payload.get("charge")
        if not charge:
            raise GatewayRejectedError(f"Cobrança {charge_id} sem corpo na resposta", provider=self.provider, details=payload)
        return charge


@lru_cache
def get_vindi_client() -> VindiClient:
    """Cliente único do processo; fechado por ``close_gateway_clients``."""
    if not settings.vindi_api_key:
        raise GatewayRejectedError("VINDI_API_KEY não configurada", provider="vindi")
    return VindiClient(settings.vindi_api_key)
