import pytest

from app.models.beneficiary import PaymentStatus
from app.models.billing import ChargeStatus
from app.services.events import (
    InvalidPayloadError,
    PaymentFailed,
    PaymentPaid,
    PaymentPending,
    SignatureAccepted,
    SignatureFinished,
    SignatureRejected,
    SignatureViewed,
    UnknownPaymentEvent,
    UnknownSignatureEvent,
    map_provider_status,
    parse_autentique_payload,
    parse_vindi_payload,
)


def _autentique(event_type: str, data: dict) -> dict:
    return {"event": {"type": event_type, "data": data}}


def test_document_finished_reads_data_id():
    event = parse_autentique_payload(_autentique("document.finished", {"id": "doc-9"}))
    assert event == SignatureFinished(document_id="doc-9", event_type="document.finished")


@pytest.mark.parametrize(
    "event_type, expected",
    [
        ("signature.accepted", SignatureAccepted),
        ("signature.rejected", SignatureRejected),
        ("signature.viewed", SignatureViewed),
    ],
)
def test_signature_events_read_document_field(event_type, expected):
    event = parse_autentique_payload(_autentique(event_type, {"id": "sig-1", "document": "doc-9"}))
    assert isinstance(event, expected)
    assert event.document_id == "doc-9"


def test_signature_event_accepts_nested_document():
    event = parse_autentique_payload(_autentique("signature.accepted", {"document": {"id": "doc-3"}}))
    assert event.document_id == "doc-3"


def test_unknown_signature_event_is_classified_not_rejected():
    event = parse_autentique_payload(_autentique("document.created", {"id": "doc-1"}))
    assert isinstance(event, UnknownSignatureEvent)


@pytest.mark.parametrize(
    "payload",
    [
        [],
        {"document": "doc-1"},
        {"event": {"type": "document.finished", "data": {}}},
        {"event": {"data": {"id": "doc-1"}}},
    ],
)
def test_autentique_payload_without_envelope_is_invalid(payload):
    with pytest.raises(InvalidPayloadError):
        parse_autentique_payload(payload)


def test_map_provider_status():
    assert map_provider_status("paid") == (ChargeStatus.PAID, PaymentStatus.PAID)
    assert map_provider_status("Canceled") == (ChargeStatus.FAILED, PaymentStatus.FAILED)
    assert map_provider_status("rejected") == (ChargeStatus.FAILED, PaymentStatus.FAILED)
    assert map_provider_status("pending") == (ChargeStatus.PENDING, PaymentStatus.PENDING)
    assert map_provider_status("processing") == (ChargeStatus.PROCESSING, PaymentStatus.PROCESSING)
    assert map_provider_status("chargeback") is None
    assert map_provider_status(None) is None


def test_flat_vindi_payload():
    event = parse_vindi_payload({"charge_id": 123, "status": "paid"})
    assert isinstance(event, PaymentPaid)
    assert event.charge_id == "123"
    assert event.event_type == "charge_status"


def test_flat_vindi_payload_requires_charge_id():
    with pytest.raises(InvalidPayloadError):
        parse_vindi_payload({"status": "paid"})


def test_native_bill_paid_uses_first_charge():
    payload = {
        "event": {
            "type": "bill_paid",
            "data": {"bill": {"id": 55, "status": "pending", "charges": [{"id": 66}]}},
        }
    }
    event = parse_vindi_payload(payload)
    assert isinstance(event, PaymentPaid)
    assert (event.charge_id, event.bill_id) == ("66", "55")


def test_native_charge_rejected():
    payload = {"event": {"type": "charge_rejected", "data": {"charge": {"id": 7, "bill": {"id": 8}}}}}
    event = parse_vindi_payload(payload)
    assert isinstance(event, PaymentFailed)
    assert event.external_id == "7"
    assert event.bill_id == "8"


def test_native_charge_created_is_pending():
    payload = {"event": {"type": "charge_created", "data": {"charge": {"id": 7, "status": "pending"}}}}
    assert isinstance(parse_vindi_payload(payload), PaymentPending)


def test_native_test_event_and_unknown_status_are_ignored():
    assert isinstance(parse_vindi_payload({"event": {"type": "test", "data": {}}}), UnknownPaymentEvent)
    event = parse_vindi_payload({"event": {"type": "subscription_reactivated", "data": {"charge": {"id": 1, "status": "x"}}}})
    assert isinstance(event, UnknownPaymentEvent)
