from __future__ import annotations

from typing import Any, Dict, Optional


class EnrollmentError(RuntimeError):
    """Erro de domínio do ciclo de adesão (contrato -> cobrança)."""

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        details: Optional[Dict[str, Any]] = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.details = details or {}
        self.status_code = status_code


class ValidationError(EnrollmentError):
    """Dados do chamador ausentes ou inválidos. Nunca é re-tentado."""


class InvalidStateError(EnrollmentError):
    """Operação tentada no estado local errado (ex.: cobrar antes da assinatura)."""


class NotFoundError(EnrollmentError):
    """Registro local ou id externo desconhecido."""


class PlanNotConfiguredError(EnrollmentError):
    """Plano sem vindi_plan_id. Exige correção manual do operador."""


class GatewayError(EnrollmentError):
    """Falha ao falar com um provedor externo (Autentique, Vindi)."""

    def __init__(self, message: str, *, provider: str, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.provider = provider


class GatewayTransientError(GatewayError):
    """Timeout, falha de rede ou 5xx. Re-tentado com backoff."""

    retryable = True


class GatewayRejectedError(GatewayError):
    """4xx do provedor (ex.: plano inválido). Não é re-tentado."""
