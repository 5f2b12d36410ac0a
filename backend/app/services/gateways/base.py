from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

import httpx

from app.core.config import settings
from app.core.errors import GatewayRejectedError, GatewayTransientError
from app.core.logging_setup import get_logger
from app.core.retry import RetryPolicy

logger = get_logger("gateway")


def default_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max(settings.gateway_max_retries, 1),
        base_delay=settings.gateway_backoff_seconds,
    )


def _error_message(payload: Any, fallback: str) -> str:
    if isinstance(payload, dict):
        errors = payload.get("errors")
        if isinstance(errors, list) and errors:
            first = errors[0]
            if isinstance(first, dict):
                parameter = first.get("parameter")
                message = first.get("message") or first.get("id")
                if message:
                    return f"{parameter}: {message}" if parameter else str(message)
            return str(first)
        for key in ("error", "detail", "message"):
            if payload.get(key):
                return str(payload[key])
    return fallback


class GatewayClient:
    """Cliente HTTP síncrono e sem estado, compartilhado entre requisições.

    Timeouts, falhas de rede e 5xx viram ``GatewayTransientError`` e são
    re-tentados pela política; 4xx viram ``GatewayRejectedError`` e sobem direto.
    """

    provider = "gateway"

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float | None = None,
        retry_policy: RetryPolicy | None = None,
        headers: Mapping[str, str] | None = None,
        auth: httpx.Auth | tuple[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = (base_url or "").rstrip("/")
        if not self._base_url:
            raise GatewayRejectedError(f"URL base do provedor {self.provider} não configurada.", provider=self.provider)
        self._timeout = timeout_seconds or settings.gateway_timeout_seconds or 15.0
        self.retry_policy = retry_policy or default_retry_policy()
        self._client = httpx.Client(
            base_url=self._base_url,
            timeout=self._timeout,
            headers={"User-Agent": "MedPass-Sistema/1.0", **dict(headers or {})},
            auth=auth,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        files: Any = None,
        idempotency_key: str | None = None,
        timeout: float | None = None,
        retry: bool = True,
    ) -> Dict[str, Any]:
        def send() -> Dict[str, Any]:
            return self._send_once(
                method,
                path,
                json=json,
                params=params,
                data=data,
                files=files,
                idempotency_key=idempotency_key,
                timeout=timeout,
            )

        if not retry:
            return send()
        return self.retry_policy.call(send, label=f"{self.provider} {method} {path}")

    def _send_once(
        self,
        method: str,
        path: str,
        *,
        json: Any,
        params: Optional[Dict[str, Any]],
        data: Optional[Dict[str, Any]],
        files: Any,
        idempotency_key: str | None,
        timeout: float | None,
    ) -> Dict[str, Any]:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        try:
            response = self._client.request(
                method,
                path,
                json=json,
                params=params,
                data=data,
                files=files,
                headers=headers,
                timeout=timeout or self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise GatewayTransientError(
                f"Tempo esgotado ao chamar {self.provider}: {exc}", provider=self.provider
            ) from exc
        except httpx.RequestError as exc:
            raise GatewayTransientError(
                f"Falha ao conectar com {self.provider}: {exc}", provider=self.provider
            ) from exc

        parsed = True
        try:
            payload = response.json()
        except ValueError:
            parsed = False
            payload = {"error": response.text[:500]}

        if response.status_code >= 500:
            message = _error_message(payload, f"Erro {response.status_code} em {self.provider}")
            raise GatewayTransientError(
                message, provider=self.provider, details=payload, status_code=response.status_code
            )
        if response.status_code >= 400:
            message = _error_message(payload, f"Requisição rejeitada por {self.provider} ({response.status_code})")
            raise GatewayRejectedError(
                message, provider=self.provider, details=payload, status_code=response.status_code
            )
        if not parsed or not isinstance(payload, dict):
            raise GatewayRejectedError(
                f"Resposta inválida de {self.provider}", provider=self.provider, details={"raw": str(payload)[:200]}
            )

        logger.debug("[%s] %s %s -> %s", self.provider, method, path, response.status_code)
        return payload
