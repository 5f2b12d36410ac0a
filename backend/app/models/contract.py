from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON
from sqlmodel import Field

from app.models.base import TimestampedModel, UUIDModel


class ContractStatus(str, Enum):
    NOT_REQUESTED = "not_requested"
    PENDING_SIGNATURE = "pending_signature"
    SIGNED = "signed"
    REFUSED = "refused"
    ERROR = "error"


TERMINAL_CONTRACT_STATUSES = frozenset({ContractStatus.SIGNED, ContractStatus.REFUSED})

# Arestas permitidas do DAG de status do contrato. pending_signature -> pending_signature
# é a regeneração do link (reenvio), que sobrescreve o documento anterior.
CONTRACT_TRANSITIONS: dict[ContractStatus, frozenset[ContractStatus]] = {
    ContractStatus.NOT_REQUESTED: frozenset({ContractStatus.PENDING_SIGNATURE, ContractStatus.ERROR}),
    ContractStatus.PENDING_SIGNATURE: frozenset(
        {
            ContractStatus.PENDING_SIGNATURE,
            ContractStatus.SIGNED,
            ContractStatus.REFUSED,
            ContractStatus.ERROR,
        }
    ),
    ContractStatus.ERROR: frozenset({ContractStatus.NOT_REQUESTED, ContractStatus.ERROR}),
    ContractStatus.SIGNED: frozenset(),
    ContractStatus.REFUSED: frozenset(),
}


def can_transition(current: ContractStatus, target: ContractStatus) -> bool:
    return target in CONTRACT_TRANSITIONS.get(current, frozenset())


class Contract(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "contracts"

    beneficiary_id: UUID = Field(foreign_key="beneficiaries.id", unique=True, index=True)
    document_id: str | None = Field(default=None, unique=True, index=True, max_length=128)
    signature_link: str | None = Field(default=None, max_length=512)
    contract_status: ContractStatus = Field(default=ContractStatus.NOT_REQUESTED)
    signed_at: datetime | None = Field(default=None)
    signed_payload: dict | None = Field(default=None, sa_type=JSON)
    provider_payload: dict | None = Field(default=None, sa_type=JSON)
    last_error: str | None = Field(default=None)
