from __future__ import annotations

import os
import uuid
from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text
from sqlmodel import Session, SQLModel, create_engine

from app.api.deps import Gateways, get_db, get_gateways
from app.core.config import settings
from app.core.retry import RetryPolicy
from app.db import session as db_session_module
from app.main import app
from app.models.beneficiary import Beneficiary, BeneficiaryStatus, PaymentStatus
from app.models.billing import Plan
from app.models.contract import Contract, ContractStatus
from tests.fakes import FakeAutentique, FakeVindi


@pytest.fixture()
def db_engine(tmp_path):
    test_database_url = os.getenv("TEST_DATABASE_URL")
    if not test_database_url:
        db_path = tmp_path / f"test_{uuid.uuid4().hex}.db"
        test_database_url = f"sqlite:///{db_path}"

    is_postgres = test_database_url.startswith("postgresql")

    admin_engine = None
    schema_name = None

    if is_postgres:
        schema_name = f"test_{uuid.uuid4().hex}"
        admin_engine = create_engine(test_database_url, future=True)
        with admin_engine.connect() as conn:
            conn.execution_options(isolation_level="AUTOCOMMIT").execute(
                text(f'CREATE SCHEMA IF NOT EXISTS "{schema_name}"')
            )
        connect_args = {"options": f"-csearch_path={schema_name},public"}
        engine = create_engine(test_database_url, connect_args=connect_args, future=True)
    else:
        engine = create_engine(test_database_url, connect_args={"check_same_thread": False})

    SQLModel.metadata.create_all(bind=engine)

    original_engine = db_session_module.engine
    db_session_module.engine = engine

    def override_get_db():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    yield engine

    app.dependency_overrides.pop(get_db, None)
    db_session_module.engine = original_engine
    engine.dispose()
    if is_postgres and admin_engine and schema_name:
        with admin_engine.connect() as conn:
            conn.execution_options(isolation_level="AUTOCOMMIT").execute(
                text(f'DROP SCHEMA IF EXISTS "{schema_name}" CASCADE')
            )
        admin_engine.dispose()


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    monkeypatch.setattr(settings, "admin_api_token", None)
    monkeypatch.setattr(settings, "autentique_webhook_secret", None)
    monkeypatch.setattr(settings, "vindi_webhook_token", None)
    monkeypatch.setattr(settings, "reconcile_enabled", False)
    yield


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def pix_policy(sleeps) -> RetryPolicy:
    return RetryPolicy.linear(3, 3.0, sleep=sleeps.append)


@pytest.fixture()
def fake_autentique() -> FakeAutentique:
    return FakeAutentique()


@pytest.fixture()
def fake_vindi() -> FakeVindi:
    return FakeVindi()


@pytest.fixture()
def gateways(fake_autentique, fake_vindi, pix_policy) -> Gateways:
    return Gateways(signer=fake_autentique, billing=fake_vindi, pix_retry_policy=pix_policy)


@pytest.fixture()
def client(db_engine, gateways) -> TestClient:
    app.dependency_overrides[get_gateways] = lambda: gateways
    yield TestClient(app)
    app.dependency_overrides.pop(get_gateways, None)


@pytest.fixture()
def db_session(db_engine) -> Session:
    with Session(db_engine) as session:
        yield session


def make_plan(session: Session, *, vindi_plan_id: int | None = 501, price_cents: int = 19990) -> Plan:
    plan = Plan(name="MedPass Familiar", price_cents=price_cents, vindi_plan_id=vindi_plan_id)
    session.add(plan)
    session.commit()
    session.refresh(plan)
    return plan


def make_beneficiary(
    session: Session,
    plan: Plan | None = None,
    *,
    email: str | None = "maria.silva@example.com",
    cpf: str = "12345678909",
    contract_status: ContractStatus | None = None,
    document_id: str | None = None,
) -> Beneficiary:
    beneficiary = Beneficiary(
        full_name="Maria da Silva",
        cpf=cpf,
        email=email,
        phone="(44) 99999-0000",
        birth_date=date(1985, 5, 20),
        address="Av. Brasil",
        address_number="100",
        neighborhood="Centro",
        city="Umuarama",
        state="PR",
        zipcode="87501-000",
        plan_id=plan.id if plan else None,
        status=BeneficiaryStatus.PENDING,
        payment_status=PaymentStatus.NOT_REQUESTED,
    )
    session.add(beneficiary)
    session.commit()
    session.refresh(beneficiary)
    if contract_status is not None:
        contract = Contract(
            beneficiary_id=beneficiary.id,
            contract_status=contract_status,
            document_id=document_id,
            signature_link=f"https://assina.ae/{document_id}" if document_id else None,
        )
        session.add(contract)
        session.commit()
    return beneficiary


def admin_headers(token: str | None = None) -> dict[str, str]:
    return {"X-Admin-Token": token} if token else {}
