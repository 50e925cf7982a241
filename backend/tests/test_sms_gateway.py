from types import SimpleNamespace

import httpx
import pytest
from twilio.base.exceptions import TwilioRestException
from twilio.request_validator import RequestValidator

from replypilot import models, sms_gateway
from replypilot.number_pool import add_to_pool, allocate_from_pool
from replypilot.sms_providers import (
    FonecloudProvider,
    SendResult,
    SmsProvider,
    TwilioProvider,
    extract_fonecloud_message_id,
)


class RecordingProvider(SmsProvider):
    def __init__(self, name, results=None):
        self.name = name
        self.sent = []
        self.results = list(results or [])

    def send(self, to, body, from_number=None):
        self.sent.append((to, body, from_number))
        if self.results:
            return self.results.pop(0)
        return SendResult(success=True, provider_message_id=f"{self.name}-{len(self.sent)}")


class FakeMessages:
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def create(self, **params):
        self.calls.append(params)
        if self.error:
            raise self.error
        return SimpleNamespace(sid="SM123", status="queued")


class FakeIncomingNumbers:
    def __init__(self):
        self.created = []
        self.deleted = []

    def __call__(self, sid):
        return SimpleNamespace(delete=lambda: self.deleted.append(sid) or True)

    def create(self, **params):
        self.created.append(params)
        return SimpleNamespace(phone_number=params["phone_number"], sid="PN1", friendly_name="Replypilot")


class FakeTwilioClient:
    def __init__(self, error=None, available=("+4520000001",)):
        self.messages = FakeMessages(error)
        self.incoming_phone_numbers = FakeIncomingNumbers()
        self.searches = []
        self._available = [SimpleNamespace(phone_number=number) for number in available]

    def available_phone_numbers(self, country):
        def _list(**search):
            self.searches.append((country, search))
            return self._available

        return SimpleNamespace(mobile=SimpleNamespace(list=_list))


@pytest.fixture()
def providers(monkeypatch, db_session):
    twilio = RecordingProvider("twilio")
    fonecloud = RecordingProvider("fonecloud")
    monkeypatch.setitem(sms_gateway.default_gateway.providers, "twilio", twilio)
    monkeypatch.setitem(sms_gateway.default_gateway.providers, "fonecloud", fonecloud)
    return {"twilio": twilio, "fonecloud": fonecloud}


def _fonecloud(handler) -> FonecloudProvider:
    return FonecloudProvider(http_client=httpx.Client(transport=httpx.MockTransport(handler)))


def test_send_routes_to_customer_provider(helpers, providers):
    customer = helpers["make_customer"](sms_provider="fonecloud", fonecloud_sender_id="Firma")

    result = sms_gateway.send_sms(helpers["db"], customer_id=customer.id, to="+4512345678", body="Hej")

    assert result.success is True
    assert result.provider_message_id == "fonecloud-1"
    assert providers["fonecloud"].sent == [("+4512345678", "Hej", "Firma")]
    assert providers["twilio"].sent == []


def test_fonecloud_sender_prefers_allocated_pool_number(helpers, providers):
    db = helpers["db"]
    customer = helpers["make_customer"](sms_provider="fonecloud", fonecloud_sender_id="Firma")
    add_to_pool(db, "+45 7000 0001")
    allocate_from_pool(db, customer.id)

    sms_gateway.send_sms(db, customer_id=customer.id, to="+4512345678", body="Hej")

    assert providers["fonecloud"].sent[0][2] == "+4570000001"


def test_twilio_sender_uses_owned_number(helpers, providers):
    db = helpers["db"]
    customer = helpers["make_customer"](sms_provider="twilio")
    db.add(models.OwnedNumber(customer_id=customer.id, provider="twilio", phone_number="+4520000001"))
    db.commit()

    sms_gateway.send_sms(db, customer_id=customer.id, to="+4512345678", body="Hej")

    assert providers["twilio"].sent[0][2] == "+4520000001"


def test_missing_provider_fails_closed(helpers, providers):
    customer = helpers["make_customer"]()

    result = sms_gateway.send_sms(helpers["db"], customer_id=customer.id, to="+4512345678", body="Hej")

    assert (result.success, result.error, result.retryable) == (False, "sms_provider_not_configured", False)
    assert providers["twilio"].sent == []


def test_fallback_flag_routes_to_default_provider(helpers, providers, override_settings):
    override_settings(sms_fallback_to_default_provider=True, sms_default_provider="twilio")
    customer = helpers["make_customer"](sms_provider="carrier-pigeon")

    result = sms_gateway.send_sms(helpers["db"], customer_id=customer.id, to="+4512345678", body="Hej")

    assert result.success is True
    assert len(providers["twilio"].sent) == 1


def test_circuit_opens_per_provider(helpers, providers, override_settings):
    override_settings(circuit_breaker_threshold=2, circuit_breaker_reset_seconds=600)
    db = helpers["db"]
    twilio_customer = helpers["make_customer"]("a@firma.dk", sms_provider="twilio")
    fonecloud_customer = helpers["make_customer"]("b@firma.dk", sms_provider="fonecloud")
    providers["twilio"].results = [SendResult(success=False, error="twilio_error_20503", retryable=True)] * 2

    for _ in range(2):
        sms_gateway.send_sms(db, customer_id=twilio_customer.id, to="+4512345678", body="Hej")
    blocked = sms_gateway.send_sms(db, customer_id=twilio_customer.id, to="+4512345678", body="Hej")
    other = sms_gateway.send_sms(db, customer_id=fonecloud_customer.id, to="+4512345678", body="Hej")

    assert (blocked.success, blocked.error, blocked.retryable) == (False, "circuit_open", False)
    assert len(providers["twilio"].sent) == 2
    assert other.success is True


def test_permanent_failures_do_not_trip_breaker(helpers, providers, override_settings):
    override_settings(circuit_breaker_threshold=1)
    customer = helpers["make_customer"](sms_provider="twilio")
    providers["twilio"].results = [SendResult(success=False, error="twilio_error_21211", retryable=False)]

    sms_gateway.send_sms(helpers["db"], customer_id=customer.id, to="+45", body="Hej")

    assert sms_gateway.get_breaker("twilio").allow_request() is True


def test_queue_sms_is_sent_by_job(helpers, providers):
    from replypilot.task_queue import JOB_TYPE_SEND_SMS, claim_next_job, process_job

    db = helpers["db"]
    customer = helpers["make_customer"](sms_provider="twilio")
    job = sms_gateway.queue_sms(db, customer_id=customer.id, to="+4512345678", body="Hej", from_number="+4520000001")
    assert job.job_type == JOB_TYPE_SEND_SMS

    process_job(db, claim_next_job(db, worker_id="test"))

    db.refresh(job)
    assert job.status == "succeeded"
    assert providers["twilio"].sent == [("+4512345678", "Hej", "+4520000001")]


def test_redelivered_sms_job_sends_once(helpers, providers):
    from datetime import datetime, timedelta, timezone

    from replypilot.task_queue import claim_next_job, process_job, requeue_stale_jobs

    db = helpers["db"]
    customer = helpers["make_customer"](sms_provider="twilio")
    job = sms_gateway.queue_sms(db, customer_id=customer.id, to="+4512345678", body="Hej", from_number="+4520000001")

    claimed = claim_next_job(db, worker_id="w1")
    process_job(db, claimed)
    # Worker died after sending but before the job was marked done.
    claimed.status = "running"
    claimed.locked_at = datetime.now(timezone.utc) - timedelta(hours=1)
    db.commit()
    assert requeue_stale_jobs(db, stale_after_seconds=60) == 1

    process_job(db, claim_next_job(db, worker_id="w2"))

    db.refresh(job)
    assert job.status == "succeeded"
    assert len(providers["twilio"].sent) == 1
    delivery = db.query(models.NotificationDelivery).one()
    assert (delivery.status, delivery.provider_message_id) == ("sent", "twilio-1")


def test_gateway_instances_keep_separate_breakers(helpers, override_settings):
    override_settings(circuit_breaker_threshold=1, circuit_breaker_reset_seconds=600)
    customer = helpers["make_customer"](sms_provider="twilio")
    failing = sms_gateway.SmsGateway()
    failing.register_provider("twilio", RecordingProvider("twilio", [SendResult(success=False, error="down", retryable=True)]))
    healthy = sms_gateway.SmsGateway()
    healthy.register_provider("twilio", RecordingProvider("twilio"))

    failing.send_sms(helpers["db"], customer_id=customer.id, to="+4512345678", body="Hej", from_number="+4520000001")

    assert failing.send_sms(helpers["db"], customer_id=customer.id, to="+4512345678", body="Hej").error == "circuit_open"
    assert healthy.send_sms(helpers["db"], customer_id=customer.id, to="+4512345678", body="Hej").success is True
    assert sms_gateway.get_breaker("twilio").allow_request() is True


def test_failed_sms_job_is_not_retried(helpers, providers):
    from replypilot.task_queue import claim_next_job, process_job

    db = helpers["db"]
    customer = helpers["make_customer"]()
    job = sms_gateway.queue_sms(db, customer_id=customer.id, to="+4512345678", body="Hej")

    process_job(db, claim_next_job(db, worker_id="test"))

    db.refresh(job)
    assert job.status == "failed"
    assert job.last_error == "sms_provider_not_configured"


def test_inbound_message_is_passed_to_handler(db_session):
    received = []

    def _handler(db, inbound):
        received.append(inbound)
        return 11, 42

    sms_gateway.set_inbound_handler(_handler)

    result = sms_gateway.handle_incoming(
        "twilio",
        {"From": "+4512345678", "To": "+4520000001", "Body": "Hej", "MessageSid": "SM9"},
        db=db_session,
    )

    assert result.success is True
    assert (result.conversation_id, result.message_id) == (11, 42)
    assert received[0].from_number == "+4512345678"
    assert received[0].provider_message_id == "SM9"


def test_inbound_without_sender_is_rejected(db_session):
    result = sms_gateway.handle_incoming("twilio", {"Body": "Hej"})
    assert (result.success, result.error) == (False, "invalid_payload")


def test_inbound_for_unknown_provider_raises(db_session):
    with pytest.raises(sms_gateway.SmsProviderNotConfigured):
        sms_gateway.handle_incoming("carrier-pigeon", {})


def test_fonecloud_send_builds_query_and_reads_message_id(override_settings):
    override_settings(fonecloud_api_base_url="https://api.fonecloud.test/v1/", fonecloud_token="tok")
    seen = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"+4512345678": {"id_state": 9876}})

    result = _fonecloud(_handler).send("+4512345678", "Hej med dig", "Firma")

    assert result.success is True
    assert result.provider_message_id == "9876"
    request = seen[0]
    assert request.method == "GET"
    assert request.url.path == "/v1/send"
    assert dict(request.url.params) == {
        "token": "tok",
        "phone": "+4512345678",
        "senderID": "Firma",
        "text": "Hej med dig",
        "type": "sms",
    }


@pytest.mark.parametrize(("status", "retryable"), [(503, True), (429, True), (400, False)])
def test_fonecloud_error_status_classification(override_settings, status, retryable):
    override_settings(fonecloud_api_base_url="https://api.fonecloud.test", fonecloud_token="tok")

    result = _fonecloud(lambda request: httpx.Response(status, json={"error": "nope"})).send("+4512345678", "Hej")

    assert (result.success, result.error, result.retryable) == (False, "nope", retryable)


def test_fonecloud_transport_error_is_retryable(override_settings):
    override_settings(fonecloud_api_base_url="https://api.fonecloud.test", fonecloud_token="tok")

    def _handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    result = _fonecloud(_handler).send("+4512345678", "Hej")

    assert result.success is False
    assert result.retryable is True
    assert result.error.startswith("fonecloud_request_failed")


def test_fonecloud_without_configuration_is_not_sent(override_settings):
    override_settings(fonecloud_api_base_url=None, fonecloud_token=None)
    result = _fonecloud(lambda request: httpx.Response(200)).send("+4512345678", "Hej")
    assert (result.success, result.error) == (False, "fonecloud_not_configured")


def test_extract_fonecloud_message_id_shapes():
    assert extract_fonecloud_message_id({"+451": "abc"}, "+451") == "abc"
    assert extract_fonecloud_message_id({"other": ["xyz"]}, "+451") == "xyz"
    assert extract_fonecloud_message_id({"+451": {"id_state": 5}}, "+451") == "5"
    assert extract_fonecloud_message_id([], "+451") is None


def test_twilio_send_uses_sender_or_messaging_service(override_settings):
    override_settings(twilio_messaging_service_sid="MG1")
    client = FakeTwilioClient()
    provider = TwilioProvider(client=client)

    with_sender = provider.send("+4512345678", "Hej", "+4520000001")
    with_service = provider.send("+4512345678", "Hej")

    assert with_sender.provider_message_id == "SM123"
    assert with_service.success is True
    assert client.messages.calls == [
        {"to": "+4512345678", "body": "Hej", "from_": "+4520000001"},
        {"to": "+4512345678", "body": "Hej", "messaging_service_sid": "MG1"},
    ]


def test_twilio_without_sender_fails(override_settings):
    override_settings(twilio_messaging_service_sid=None)
    result = TwilioProvider(client=FakeTwilioClient()).send("+4512345678", "Hej")
    assert (result.success, result.error) == (False, "twilio_sender_missing")


@pytest.mark.parametrize(("status", "retryable"), [(503, True), (400, False)])
def test_twilio_rest_errors_are_classified(status, retryable):
    error = TwilioRestException(status, "/Messages.json", msg="failed", code=20000 + status)
    result = TwilioProvider(client=FakeTwilioClient(error=error)).send("+4512345678", "Hej", "+4520000001")

    assert result.success is False
    assert result.retryable is retryable
    assert result.error.startswith(f"twilio_error_{20000 + status}")


def test_twilio_provision_and_release(helpers, override_settings):
    override_settings(twilio_number_country="DK", twilio_sms_webhook_url="https://api.replypilot.test/webhooks/sms/twilio")
    db = helpers["db"]
    customer = helpers["make_customer"](sms_provider="twilio")
    client = FakeTwilioClient()
    provider = TwilioProvider(client=client)

    provisioned = provider.provision_number(db, customer.id)

    assert provisioned.success is True
    assert provisioned.phone_number == "+4520000001"
    assert client.searches[0][0] == "DK"
    assert client.incoming_phone_numbers.created[0]["sms_url"].endswith("/webhooks/sms/twilio")
    owned = db.query(models.OwnedNumber).one()
    assert (owned.customer_id, owned.provider_sid, owned.is_active) == (customer.id, "PN1", True)

    assert provider.release_number(db, customer.id, "+4520000001").success is True
    assert client.incoming_phone_numbers.deleted == ["PN1"]
    assert provider.release_number(db, customer.id, "+4520000001").error == "not_found_or_already_released"


def test_twilio_provision_with_empty_inventory():
    provider = TwilioProvider(client=FakeTwilioClient(available=()))
    assert provider.provision_number(None, 1).error == "no_numbers_available"


def test_gateway_provisions_from_pool_for_fonecloud_customers(helpers):
    db = helpers["db"]
    customer = helpers["make_customer"](sms_provider="fonecloud")
    add_to_pool(db, "+4570000001")

    result = sms_gateway.provision_number(db, customer.id)

    assert (result.success, result.phone_number) == (True, "+4570000001")
    assert sms_gateway.release_number(db, customer.id, "+4570000001").success is True


def test_twilio_webhook_signature(override_settings):
    override_settings(twilio_auth_token="secret-token")
    url = "https://api.replypilot.test/webhooks/sms/twilio"
    params = {"From": "+4512345678", "Body": "Hej"}
    signature = RequestValidator("secret-token").compute_signature(url, params)

    assert sms_gateway.verify_webhook_signature("twilio", url, params, signature) is True
    assert sms_gateway.verify_webhook_signature("twilio", url, params, "forged") is False
    assert sms_gateway.verify_webhook_signature("twilio", url, params, None) is False
    assert sms_gateway.verify_webhook_signature("carrier-pigeon", url, params, signature) is False
