from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict

import httpx

from app.core.config import settings
from app.core.errors import GatewayRejectedError
from app.core.retry import RetryPolicy
from app.services.gateways.base import GatewayClient

CREATE_DOCUMENT_MUTATION = """
mutation CreateDocumentMutation($document: DocumentInput!, $signers: [SignerInput!]!, $file: Upload!) {
  createDocument(document: $document, signers: $signers, file: $file) {
    id
    name
    created_at
    signatures {
      public_id
      name
      email
      action { name }
      link { short_link }
    }
  }
}
"""


@dataclass
class CreatedDocument:
    document_id: str
    signature_link: str
    raw: Dict[str, Any]


class AutentiqueClient(GatewayClient):
    """Cliente GraphQL (upload multipart) da Autentique."""

    provider = "autentique"

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
            api_url or settings.autentique_api_url,
            timeout_seconds=timeout_seconds,
            retry_policy=retry_policy,
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )

    def create_document(self, *, name: str, signer_email: str, html: str, filename: str) -> CreatedDocument:
        variables = {
            "document": {"name": name},
            "signers": [
                {
                    "email": signer_email,
                    "action": "SIGN",
                    "positions": [{"x": "50.00", "y": "88.00", "z": 1}],
                }
            ],
            "file": None,
        }
        # Upload multipart do GraphQL: operations + map + arquivo.
        form = {
            "operations": json.dumps({"query": CREATE_DOCUMENT_MUTATION, "variables": variables}),
            "map": json.dumps({"0": ["variables.file"]}),
        }
        files = {"0": (filename, html.encode("utf-8"), "text/html")}

        # URL absoluta: o endpoint GraphQL não aceita barra final.
        payload = self._request("POST", self._base_url, data=form, files=files)

        if payload.get("errors"):
            raise GatewayRejectedError(
                f"Erro Autentique: {json.dumps(payload['errors'], ensure_ascii=False)[:500]}",
                provider=self.provider,
                details=payload,
            )
        document = (payload.get("data") or {}).get("createDocument")
        if not document or not document.get("id"):
            raise GatewayRejectedError(
                "Resposta inválida da Autentique - documento não criado", provider=self.provider, details=payload
            )
        signatures = document.get("signatures") or []
        link = ((signatures[0] if signatures else {}).get("link") or {}).get("short_link")
        if not link:
            raise GatewayRejectedError(
                "Link de assinatura não retornado pela Autentique", provider=self.provider, details=payload
            )
        return CreatedDocument(document_id=str(document["id"]), signature_link=link, raw=payload["data"])


@lru_cache
def get_autentique_client() -> AutentiqueClient:
    if not settings.autentique_api_key:
        raise GatewayRejectedError("AUTENTIQUE_API_KEY não configurada", provider="autentique")
    return AutentiqueClient(settings.autentique_api_key)
