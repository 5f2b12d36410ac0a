"""Tabelas do ciclo de adesão: planos, beneficiários, contratos, assinaturas, cobranças e webhooks."""

from __future__ import annotations

import sqlalchemy as sa
import sqlmodel
from alembic import op

# revision identifiers, used by Alembic.
revision = "0001_enrollment_baseline"
down_revision = None
branch_labels = None
depends_on = None

# SQLModel grava o NOME do membro do Enum.
beneficiary_status = sa.Enum("ACTIVE", "INACTIVE", "PENDING", "PENDING_PAYMENT", "PAYMENT_CONFIRMED", name="beneficiarystatus")
payment_status = sa.Enum("NOT_REQUESTED", "PENDING", "PROCESSING", "PAID", "FAILED", name="paymentstatus")
contract_status = sa.Enum("NOT_REQUESTED", "PENDING_SIGNATURE", "SIGNED", "REFUSED", "ERROR", name="contractstatus")
payment_method = sa.Enum("PIX", "BANK_SLIP", "CREDIT_CARD", name="paymentmethod")
subscription_status = sa.Enum("PENDING_PAYMENT", "ACTIVE", "CANCELED", "FAILED", name="subscriptionstatus")
charge_status = sa.Enum("PENDING", "PROCESSING", "PAID", "FAILED", name="chargestatus")
webhook_provider = sa.Enum("AUTENTIQUE", "VINDI", name="webhookprovider")
webhook_status = sa.Enum("RECEIVED", "PROCESSED", "IGNORED", "NOT_FOUND", "FAILED", name="webhookeventstatus")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "plans",
        sa.Column("id", sa.Uuid(), primary_key=True),
        *_timestamps(),
        sa.Column("name", sqlmodel.AutoString(), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("vindi_plan_id", sa.Integer(), nullable=True),
        sa.Column("vindi_product_id", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
    )
    op.create_index("ix_plans_id", "plans", ["id"])
    op.create_index("ix_plans_name", "plans", ["name"])

    op.create_table(
        "beneficiaries",
        sa.Column("id", sa.Uuid(), primary_key=True),
        *_timestamps(),
        sa.Column("full_name", sqlmodel.AutoString(), nullable=False),
        sa.Column("cpf", sqlmodel.AutoString(length=14), nullable=False),
        sa.Column("email", sqlmodel.AutoString(), nullable=True),
        sa.Column("phone", sqlmodel.AutoString(length=32), nullable=True),
        sa.Column("birth_date", sa.Date(), nullable=True),
        sa.Column("address", sqlmodel.AutoString(), nullable=True),
        sa.Column("address_number", sqlmodel.AutoString(length=16), nullable=True),
        sa.Column("neighborhood", sqlmodel.AutoString(), nullable=True),
        sa.Column("city", sqlmodel.AutoString(), nullable=True),
        sa.Column("state", sqlmodel.AutoString(length=2), nullable=True),
        sa.Column("zipcode", sqlmodel.AutoString(length=9), nullable=True),
        sa.Column("plan_id", sa.Uuid(), sa.ForeignKey("plans.id"), nullable=True),
        sa.Column("status", beneficiary_status, nullable=False),
        sa.Column("payment_status", payment_status, nullable=False),
        sa.Column("checkout_link", sqlmodel.AutoString(length=512), nullable=True),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_beneficiaries_id", "beneficiaries", ["id"])
    op.create_index("ix_beneficiaries_full_name", "beneficiaries", ["full_name"])
    op.create_index("ix_beneficiaries_cpf", "beneficiaries", ["cpf"])
    op.create_index("ix_beneficiaries_email", "beneficiaries", ["email"])

    op.create_table(
        "contracts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        *_timestamps(),
        sa.Column("beneficiary_id", sa.Uuid(), sa.ForeignKey("beneficiaries.id"), nullable=False),
        sa.Column("document_id", sqlmodel.AutoString(length=128), nullable=True),
        sa.Column("signature_link", sqlmodel.AutoString(length=512), nullable=True),
        sa.Column("contract_status", contract_status, nullable=False),
        sa.Column("signed_at", sa.DateTime(), nullable=True),
        sa.Column("signed_payload", sa.JSON(), nullable=True),
        sa.Column("provider_payload", sa.JSON(), nullable=True),
        sa.Column("last_error", sqlmodel.AutoString(), nullable=True),
    )
    op.create_index("ix_contracts_id", "contracts", ["id"])
    op.create_index("ix_contracts_beneficiary_id", "contracts", ["beneficiary_id"], unique=True)
    op.create_index("ix_contracts_document_id", "contracts", ["document_id"], unique=True)

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        *_timestamps(),
        sa.Column("beneficiary_id", sa.Uuid(), sa.ForeignKey("beneficiaries.id"), nullable=False),
        sa.Column("plan_id", sa.Uuid(), sa.ForeignKey("plans.id"), nullable=True),
        sa.Column("payment_method", payment_method, nullable=False),
        sa.Column("status", subscription_status, nullable=False),
        sa.Column("vindi_customer_id", sa.Integer(), nullable=True),
        sa.Column("vindi_subscription_id", sa.Integer(), nullable=True),
        sa.Column("canceled_at", sa.DateTime(), nullable=True),
        sa.Column("last_error", sqlmodel.AutoString(), nullable=True),
    )
    op.create_index("ix_subscriptions_id", "subscriptions", ["id"])
    op.create_index("ix_subscriptions_beneficiary_id", "subscriptions", ["beneficiary_id"])
    op.create_index("ix_subscriptions_vindi_subscription_id", "subscriptions", ["vindi_subscription_id"], unique=True)

    op.create_table(
        "charges",
        sa.Column("id", sa.Uuid(), primary_key=True),
        *_timestamps(),
        sa.Column("subscription_id", sa.Uuid(), sa.ForeignKey("subscriptions.id"), nullable=False),
        sa.Column("beneficiary_id", sa.Uuid(), sa.ForeignKey("beneficiaries.id"), nullable=False),
        sa.Column("charge_id", sqlmodel.AutoString(length=64), nullable=False),
        sa.Column("bill_id", sqlmodel.AutoString(length=64), nullable=True),
        sa.Column("status", charge_status, nullable=False),
        sa.Column("payment_method", payment_method, nullable=False),
        sa.Column("due_at", sa.DateTime(), nullable=True),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("print_url", sqlmodel.AutoString(length=512), nullable=True),
        sa.Column("pix_code", sqlmodel.AutoString(), nullable=True),
        sa.Column("pix_qr_code_url", sqlmodel.AutoString(length=512), nullable=True),
        sa.Column("pix_pending", sa.Boolean(), nullable=False),
        sa.Column("boleto_url", sqlmodel.AutoString(length=512), nullable=True),
        sa.Column("boleto_barcode", sqlmodel.AutoString(length=128), nullable=True),
        sa.Column("card_status", sqlmodel.AutoString(length=64), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(), nullable=True),
        sa.Column("last_status_source", sqlmodel.AutoString(length=32), nullable=True),
        sa.Column("last_error", sqlmodel.AutoString(), nullable=True),
        sa.Column("provider_payload", sa.JSON(), nullable=True),
    )
    op.create_index("ix_charges_id", "charges", ["id"])
    op.create_index("ix_charges_subscription_id", "charges", ["subscription_id"])
    op.create_index("ix_charges_beneficiary_id", "charges", ["beneficiary_id"])
    op.create_index("ix_charges_charge_id", "charges", ["charge_id"], unique=True)
    op.create_index("ix_charges_status", "charges", ["status"])

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        *_timestamps(),
        sa.Column("provider", webhook_provider, nullable=False),
        sa.Column("event_type", sqlmodel.AutoString(length=64), nullable=False),
        sa.Column("external_id", sqlmodel.AutoString(length=128), nullable=True),
        sa.Column("beneficiary_id", sa.Uuid(), sa.ForeignKey("beneficiaries.id"), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("status", webhook_status, nullable=False),
        sa.Column("error", sqlmodel.AutoString(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_webhook_events_id", "webhook_events", ["id"])
    op.create_index("ix_webhook_events_provider", "webhook_events", ["provider"])
    op.create_index("ix_webhook_events_event_type", "webhook_events", ["event_type"])
    op.create_index("ix_webhook_events_external_id", "webhook_events", ["external_id"])
    op.create_index("ix_webhook_events_beneficiary_id", "webhook_events", ["beneficiary_id"])
    op.create_index("ix_webhook_events_status", "webhook_events", ["status"])


def downgrade() -> None:
    for table in ("webhook_events", "charges", "subscriptions", "contracts", "beneficiaries", "plans"):
        op.drop_table(table)
    bind = op.get_bind()
    for enum in (
        webhook_status,
        webhook_provider,
        charge_status,
        subscription_status,
        payment_method,
        contract_status,
        payment_status,
        beneficiary_status,
    ):
        enum.drop(bind, checkfirst=True)
