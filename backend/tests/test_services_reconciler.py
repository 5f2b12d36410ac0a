import threading
from contextlib import contextmanager

import pytest
from sqlmodel import Session, select

from app.core.errors import NotFoundError
from app.core.locks import BeneficiaryLockRegistry
from app.models.beneficiary import Beneficiary, BeneficiaryStatus, PaymentStatus
from app.models.billing import Charge, ChargeStatus, Subscription, SubscriptionStatus
from app.models.contract import ContractStatus
from app.services.billing import BillingService
from app.services.events import PaymentFailed, PaymentPaid, PaymentPending, UnknownPaymentEvent
from app.services.reconciler import ReconcilerService, advance_payment_status
from tests.conftest import make_beneficiary, make_plan


class FakeClock:
    def __init__(self, step: float) -> None:
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value


@pytest.fixture()
def activate(db_session, fake_vindi, pix_policy):
    billing = BillingService(db_session, fake_vindi, pix_retry_policy=pix_policy)
    plan = make_plan(db_session)

    def _activate(index: int = 0):
        beneficiary = make_beneficiary(
            db_session,
            plan,
            email=f"pessoa{index}@example.com",
            cpf=f"{index:011d}",
            contract_status=ContractStatus.SIGNED,
            document_id=f"doc-{index}",
        )
        return beneficiary, billing.activate(beneficiary.id)

    return _activate


@pytest.fixture()
def reconciler(db_session, fake_vindi) -> ReconcilerService:
    return ReconcilerService(db_session, fake_vindi, budget_seconds=120.0, charge_timeout_seconds=1.0)


def test_advance_payment_status_is_monotonic(db_session):
    beneficiary = make_beneficiary(db_session)
    beneficiary.status = BeneficiaryStatus.PENDING_PAYMENT

    assert advance_payment_status(beneficiary, PaymentStatus.FAILED) is False
    assert advance_payment_status(beneficiary, PaymentStatus.PENDING) is True
    assert advance_payment_status(beneficiary, PaymentStatus.PAID) is True
    assert beneficiary.status == BeneficiaryStatus.PAYMENT_CONFIRMED
    assert advance_payment_status(beneficiary, PaymentStatus.FAILED) is False
    assert advance_payment_status(beneficiary, PaymentStatus.PENDING) is False
    assert beneficiary.payment_status == PaymentStatus.PAID


def test_reconcile_applies_remote_paid_status(db_session, activate, reconciler, fake_vindi):
    beneficiary, result = activate()
    fake_vindi.set_status(result.charge_id, "paid")

    summary = reconciler.reconcile_all()

    assert (summary.examined, summary.updated, summary.failed) == (1, 1, 0)
    assert summary.updates == [
        {
            "charge_id": result.charge_id,
            "beneficiary_id": str(beneficiary.id),
            "old_status": "pending",
            "new_status": "paid",
            "old_payment_status": "pending",
            "new_payment_status": "paid",
            "source": "poll",
        }
    ]
    charge = db_session.exec(select(Charge)).one()
    assert charge.status == ChargeStatus.PAID
    assert charge.paid_at is not None
    assert charge.last_status_source == "poll"
    db_session.refresh(beneficiary)
    assert beneficiary.payment_status == PaymentStatus.PAID
    assert beneficiary.status == BeneficiaryStatus.PAYMENT_CONFIRMED
    assert db_session.exec(select(Subscription)).one().status == SubscriptionStatus.ACTIVE


def test_second_run_is_a_no_op(db_session, activate, reconciler, fake_vindi):
    _, result = activate()
    fake_vindi.set_status(result.charge_id, "paid")
    reconciler.reconcile_all()

    summary = reconciler.reconcile_all()

    assert summary.examined == 0
    assert summary.updated == 0


def test_pending_remote_status_changes_nothing(db_session, activate, reconciler):
    activate()
    summary = reconciler.reconcile_all()
    assert (summary.examined, summary.updated) == (1, 0)


def test_paid_charge_is_never_reverted(db_session, activate, reconciler):
    beneficiary, result = activate()
    charge = db_session.exec(select(Charge)).one()
    reconciler.apply_status(charge, "paid", source="webhook")

    assert reconciler.apply_status(charge, "canceled", source="poll") is False

    db_session.refresh(charge)
    db_session.refresh(beneficiary)
    assert charge.status == ChargeStatus.PAID
    assert beneficiary.payment_status == PaymentStatus.PAID


def test_unknown_remote_status_is_ignored(db_session, activate, reconciler):
    activate()
    charge = db_session.exec(select(Charge)).one()
    assert reconciler.apply_status(charge, "chargeback", source="poll") is False
    assert charge.status == ChargeStatus.PENDING


def test_failure_on_one_charge_does_not_stop_the_batch(db_session, activate, reconciler, fake_vindi):
    _, first = activate(1)
    _, second = activate(2)
    fake_vindi.failing_charges.add(first.charge_id)
    fake_vindi.set_status(second.charge_id, "paid")

    summary = reconciler.reconcile_all()

    assert (summary.examined, summary.updated, summary.failed) == (2, 1, 1)
    assert summary.errors[0]["charge_id"] == first.charge_id
    failed = db_session.exec(select(Charge).where(Charge.charge_id == first.charge_id)).one()
    assert "timeout" in failed.last_error
    assert failed.status == ChargeStatus.PENDING


def test_budget_exhaustion_skips_remaining_charges(db_session, activate, fake_vindi):
    for index in range(3):
        activate(index)
    reconciler = ReconcilerService(db_session, fake_vindi, budget_seconds=10.0, clock=FakeClock(step=6.0))

    summary = reconciler.reconcile_all()

    # started=0, checagens em 6 e 12: só a primeira cobrança cabe no orçamento.
    assert summary.examined == 1
    assert summary.skipped == 2


def test_divergent_paid_charge_is_repaired(db_session, activate, reconciler, fake_vindi):
    beneficiary, result = activate()
    charge = db_session.exec(select(Charge)).one()
    charge.status = ChargeStatus.PAID
    db_session.add(charge)
    db_session.commit()
    fake_vindi.set_status(result.charge_id, "paid")

    summary = reconciler.reconcile_all()

    assert summary.updated == 1
    db_session.refresh(beneficiary)
    assert beneficiary.payment_status == PaymentStatus.PAID


def test_payment_event_paths(db_session, activate, reconciler):
    beneficiary, result = activate()

    assert reconciler.on_payment_event(UnknownPaymentEvent(charge_id=None, provider_status=None, event_type="test")) is None
    with pytest.raises(NotFoundError):
        reconciler.on_payment_event(PaymentPaid(charge_id="404404", provider_status="paid", event_type="bill_paid"))

    charge = reconciler.on_payment_event(
        PaymentPending(charge_id=None, bill_id=result.bill_id, provider_status="pending", event_type="bill_created")
    )
    assert charge.charge_id == result.charge_id

    charge = reconciler.on_payment_event(
        PaymentPaid(charge_id=result.charge_id, provider_status="paid", event_type="bill_paid")
    )
    assert charge.status == ChargeStatus.PAID
    assert charge.last_status_source == "webhook"
    db_session.refresh(beneficiary)
    assert beneficiary.payment_status == PaymentStatus.PAID


def test_concurrent_webhook_and_poll_converge(db_engine, db_session, activate, fake_vindi):
    beneficiary, result = activate()
    fake_vindi.set_status(result.charge_id, "paid")
    errors = []

    def webhook():
        try:
            with Session(db_engine) as session:
                ReconcilerService(session, fake_vindi).on_payment_event(
                    PaymentPaid(charge_id=result.charge_id, provider_status="paid", event_type="bill_paid")
                )
        except Exception as exc:  # pragma: no cover - falha reportada abaixo
            errors.append(exc)

    def poll():
        try:
            with Session(db_engine) as session:
                ReconcilerService(session, fake_vindi).reconcile_all()
        except Exception as exc:  # pragma: no cover
            errors.append(exc)

    threads = [threading.Thread(target=webhook), threading.Thread(target=poll)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)

    assert errors == []
    db_session.expire_all()
    assert db_session.exec(select(Charge)).one().status == ChargeStatus.PAID
    assert db_session.get(Beneficiary, beneficiary.id).payment_status == PaymentStatus.PAID


def test_late_pending_webhook_does_not_reopen_failed_charge(db_session, activate, reconciler):
    beneficiary, result = activate()
    reconciler.on_payment_event(
        PaymentFailed(charge_id=result.charge_id, provider_status="rejected", event_type="charge_rejected")
    )

    charge = reconciler.on_payment_event(
        PaymentPending(charge_id=result.charge_id, provider_status="pending", event_type="charge_created")
    )

    assert charge.status == ChargeStatus.FAILED
    assert charge.last_status_source == "webhook"
    db_session.refresh(beneficiary)
    assert beneficiary.payment_status == PaymentStatus.FAILED


def test_failed_charge_is_never_reverted(db_session, activate, reconciler):
    activate()
    charge = db_session.exec(select(Charge)).one()
    reconciler.apply_status(charge, "canceled", source="webhook")

    assert reconciler.apply_status(charge, "paid", source="poll") is False
    assert reconciler.apply_status(charge, "processing", source="poll") is False
    db_session.refresh(charge)
    assert charge.status == ChargeStatus.FAILED


class RejectedWhileFetching:
    """Devolve ``pending`` depois que um webhook de rejeição já foi gravado em outra sessão."""

    def __init__(self, engine) -> None:
        self.engine = engine

    def get_charge(self, charge_id, *, timeout=None, retry=True):
        with Session(self.engine) as session:
            ReconcilerService(session).on_payment_event(
                PaymentFailed(charge_id=str(charge_id), provider_status="rejected", event_type="charge_rejected")
            )
        return {"id": charge_id, "status": "pending"}


def test_stale_poll_does_not_undo_concurrent_rejection(db_engine, db_session, activate):
    beneficiary, result = activate()
    # A sessão do polling já tem o beneficiário carregado (status pending).
    assert db_session.get(Beneficiary, beneficiary.id).payment_status == PaymentStatus.PENDING
    reconciler = ReconcilerService(db_session, RejectedWhileFetching(db_engine), budget_seconds=120.0)

    summary = reconciler.reconcile_all()

    assert (summary.examined, summary.updated, summary.failed) == (1, 0, 0)
    charge = db_session.exec(select(Charge)).one()
    assert charge.status == ChargeStatus.FAILED
    assert charge.last_status_source == "webhook"
    assert db_session.get(Beneficiary, beneficiary.id).payment_status == PaymentStatus.FAILED


class DepthTrackingLocks(BeneficiaryLockRegistry):
    def __init__(self) -> None:
        super().__init__()
        self.depth = 0

    @contextmanager
    def hold(self, beneficiary_id):
        with super().hold(beneficiary_id):
            self.depth += 1
            try:
                yield
            finally:
                self.depth -= 1


def test_lookup_error_is_recorded_under_the_beneficiary_lock(db_session, activate, fake_vindi, monkeypatch):
    _, result = activate()
    fake_vindi.failing_charges.add(result.charge_id)
    locks = DepthTrackingLocks()
    reconciler = ReconcilerService(db_session, fake_vindi, locks=locks, budget_seconds=120.0)
    depths = []
    original_save = reconciler.store.save

    def recording_save(*rows):
        depths.append(locks.depth)
        original_save(*rows)

    monkeypatch.setattr(reconciler.store, "save", recording_save)

    summary = reconciler.reconcile_all()

    assert summary.failed == 1
    assert depths == [1]
    charge = db_session.exec(select(Charge)).one()
    assert "timeout" in charge.last_error
