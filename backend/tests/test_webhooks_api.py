import hashlib
import hmac
import json

from sqlmodel import select

from app.core.config import settings
from app.models.beneficiary import Beneficiary, PaymentStatus
from app.models.billing import Charge, ChargeStatus
from app.models.contract import Contract, ContractStatus
from app.models.webhook import WebhookEvent, WebhookEventStatus
from app.services.contract import ContractService
from tests.conftest import make_beneficiary, make_plan


def _finished(document_id: str) -> dict:
    return {"event": {"type": "document.finished", "data": {"id": document_id, "name": "Contrato"}}}


def _rejected(document_id: str) -> dict:
    return {"event": {"type": "signature.rejected", "data": {"id": "sig-1", "document": document_id}}}


def _events(session) -> list[WebhookEvent]:
    session.expire_all()
    return list(session.exec(select(WebhookEvent).order_by(WebhookEvent.created_at)).all())


def test_full_enrollment_lifecycle(client, db_session):
    beneficiary = make_beneficiary(db_session, make_plan(db_session))

    response = client.post(f"/api/v1/enrollments/{beneficiary.id}/contract")
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["contract_status"] == "pending_signature"
    document_id = body["document_id"]

    response = client.post("/webhooks/autentique", json=_finished(document_id))
    assert response.status_code == 200, response.text
    assert response.json()["contract_status"] == "signed"

    db_session.expire_all()
    charge = db_session.exec(select(Charge)).one()
    assert charge.status == ChargeStatus.PENDING

    response = client.post("/webhooks/vindi", json={"charge_id": charge.charge_id, "status": "paid"})
    assert response.status_code == 200, response.text
    assert response.json()["charge_status"] == "paid"
    assert response.json()["payment_status"] == "paid"

    db_session.expire_all()
    assert db_session.exec(select(Charge)).one().status == ChargeStatus.PAID
    assert db_session.get(Beneficiary, beneficiary.id).payment_status == PaymentStatus.PAID
    assert [event.status for event in _events(db_session)] == [
        WebhookEventStatus.PROCESSED,
        WebhookEventStatus.PROCESSED,
    ]


def test_rejected_signature_never_creates_charge(client, db_session):
    beneficiary = make_beneficiary(
        db_session, make_plan(db_session), contract_status=ContractStatus.PENDING_SIGNATURE, document_id="doc-55"
    )

    response = client.post("/webhooks/autentique", json=_rejected("doc-55"))
    assert response.status_code == 200
    assert response.json()["contract_status"] == "refused"

    response = client.post("/webhooks/autentique", json=_finished("doc-55"))
    assert response.status_code == 200
    assert response.json()["contract_status"] == "refused"

    db_session.expire_all()
    assert db_session.exec(select(Charge)).all() == []
    contract = db_session.exec(select(Contract).where(Contract.beneficiary_id == beneficiary.id)).one()
    assert contract.contract_status == ContractStatus.REFUSED


def test_duplicate_delivery_is_idempotent(client, db_session, fake_vindi):
    make_beneficiary(db_session, make_plan(db_session), contract_status=ContractStatus.PENDING_SIGNATURE, document_id="doc-2")

    first = client.post("/webhooks/autentique", json=_finished("doc-2"))
    second = client.post("/webhooks/autentique", json=_finished("doc-2"))

    assert first.json() == second.json()
    db_session.expire_all()
    charge = db_session.exec(select(Charge)).one()
    assert fake_vindi.calls.count("create_subscription") == 1

    paid = {"charge_id": charge.charge_id, "status": "paid"}
    assert client.post("/webhooks/vindi", json=paid).json() == client.post("/webhooks/vindi", json=paid).json()


def test_unknown_document_is_404_and_can_be_reprocessed(client, db_session):
    response = client.post("/webhooks/autentique", json=_finished("doc-late"))
    assert response.status_code == 404
    assert response.json() == {"detail": "Beneficiário não encontrado", "document_id": "doc-late"}
    assert _events(db_session)[0].status == WebhookEventStatus.NOT_FOUND

    # O registro local é gravado depois do webhook.
    make_beneficiary(
        db_session, make_plan(db_session), contract_status=ContractStatus.PENDING_SIGNATURE, document_id="doc-late"
    )
    response = client.post("/api/v1/enrollments/webhooks/reprocess")
    assert response.status_code == 200
    body = response.json()
    assert body["processed"] == 1
    assert body["results"][0]["previous_status"] == "not_found"
    assert body["results"][0]["status"] == "processed"
    assert body["results"][0]["http_status"] == 200

    db_session.expire_all()
    assert db_session.exec(select(Contract)).one().contract_status == ContractStatus.SIGNED


def test_unknown_charge_is_404(client, db_session):
    response = client.post("/webhooks/vindi", json={"charge_id": "999", "status": "paid"})
    assert response.status_code == 404
    assert response.json()["charge_id"] == "999"


def test_unexpected_error_returns_500_and_records_failure(client, db_session, monkeypatch):
    make_beneficiary(db_session, make_plan(db_session), contract_status=ContractStatus.PENDING_SIGNATURE, document_id="doc-3")

    def explode(self, beneficiary_id, event):
        raise RuntimeError("falha inesperada")

    with monkeypatch.context() as patch:
        patch.setattr(ContractService, "on_signature_event", explode)
        response = client.post("/webhooks/autentique", json=_finished("doc-3"))

    assert response.status_code == 500
    event = _events(db_session)[0]
    assert event.status == WebhookEventStatus.FAILED
    assert event.error == "falha inesperada"

    response = client.post("/api/v1/enrollments/webhooks/reprocess")
    assert response.json()["results"][0]["status"] == "processed"


def test_invalid_json_and_payloads(client, db_session):
    response = client.post("/webhooks/autentique", content=b"{not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 400

    response = client.post("/webhooks/autentique", json={"document": "doc-1"})
    assert response.status_code == 400

    response = client.post("/webhooks/vindi", json={"status": "paid"})
    assert response.status_code == 400

    events = _events(db_session)
    assert [event.status for event in events] == [WebhookEventStatus.IGNORED, WebhookEventStatus.IGNORED]


def test_vindi_test_event_is_acknowledged(client, db_session):
    response = client.post("/webhooks/vindi", json={"event": {"type": "test", "data": {}}})
    assert response.status_code == 200
    assert response.json()["ignored"] is True
    assert _events(db_session)[0].status == WebhookEventStatus.IGNORED


def test_native_vindi_envelope(client, db_session):
    make_beneficiary(db_session, make_plan(db_session), contract_status=ContractStatus.PENDING_SIGNATURE, document_id="doc-4")
    client.post("/webhooks/autentique", json=_finished("doc-4"))
    db_session.expire_all()
    charge = db_session.exec(select(Charge)).one()

    payload = {
        "event": {
            "type": "bill_paid",
            "data": {"bill": {"id": int(charge.bill_id), "status": "paid", "charges": [{"id": int(charge.charge_id)}]}},
        }
    }
    response = client.post("/webhooks/vindi", json=payload)

    assert response.status_code == 200
    assert response.json()["charge_status"] == "paid"


def test_autentique_hmac_signature(client, db_session, monkeypatch):
    monkeypatch.setattr(settings, "autentique_webhook_secret", "segredo")
    make_beneficiary(db_session, make_plan(db_session), contract_status=ContractStatus.PENDING_SIGNATURE, document_id="doc-5")
    body = json.dumps(_rejected("doc-5")).encode()
    signature = hmac.new(b"segredo", body, hashlib.sha256).hexdigest()
    headers = {"Content-Type": "application/json"}

    response = client.post("/webhooks/autentique", content=body, headers=headers)
    assert response.status_code == 401

    response = client.post(
        "/webhooks/autentique", content=body, headers={**headers, "X-Autentique-Signature": "00" * 32}
    )
    assert response.status_code == 401

    response = client.post(
        "/webhooks/autentique", content=body, headers={**headers, "X-Autentique-Signature": signature}
    )
    assert response.status_code == 200
    assert _events(db_session)[0].event_type == "signature.rejected"


def test_vindi_token(client, db_session, monkeypatch):
    monkeypatch.setattr(settings, "vindi_webhook_token", "tok")
    payload = {"event": {"type": "test", "data": {}}}

    assert client.post("/webhooks/vindi", json=payload).status_code == 401
    assert client.post("/webhooks/vindi?token=errado", json=payload).status_code == 401
    assert client.post("/webhooks/vindi?token=tok", json=payload).status_code == 200
    assert client.post("/webhooks/vindi", json=payload, headers={"X-Webhook-Secret": "tok"}).status_code == 200
