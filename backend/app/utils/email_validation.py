from __future__ import annotations

from functools import lru_cache

from email_validator import EmailNotValidError, validate_email

# Domínios reservados para testes não disparam consulta DNS.
_TEST_DOMAIN_ALLOWLIST = {
    "example.com",
    "example.org",
    "example.net",
}


@lru_cache(maxsize=512)
def _validate_deliverable_email(candidate: str) -> str:
    info = validate_email(candidate, check_deliverability=True)
    return info.normalized or info.email


@lru_cache(maxsize=512)
def _validate_format_only(candidate: str) -> str:
    info = validate_email(candidate, check_deliverability=False)
    return info.normalized or info.email


def normalize_email(value: str | None, *, check_deliverability: bool = False) -> str:
    """Normaliza o e-mail do signatário; ``ValueError`` quando ausente ou malformado.

    A Autentique rejeita o documento inteiro quando o e-mail do signatário é
    inválido, então a validação acontece antes de qualquer chamada externa.
    """
    candidate = (value or "").strip()
    if not candidate:
        raise ValueError("E-mail é obrigatório.")

    lowered = candidate.lower()
    domain = lowered.split("@", 1)[1] if "@" in lowered else ""

    try:
        if check_deliverability and domain not in _TEST_DOMAIN_ALLOWLIST:
            return _validate_deliverable_email(lowered)
        return _validate_format_only(lowered)
    except EmailNotValidError as exc:
        raise ValueError(f"E-mail inválido: {exc}") from exc
