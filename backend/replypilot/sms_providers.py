from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from sqlalchemy.orm import Session
from twilio.base.exceptions import TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.request_validator import RequestValidator
from twilio.rest import Client

from . import models
from .config import settings
from .logging_utils import log_debug, log_event, log_warning


@dataclass
class SendResult:
    success: bool
    provider_message_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False


@dataclass
class InboundResult:
    success: bool
    from_number: Optional[str] = None
    to_number: Optional[str] = None
    body: Optional[str] = None
    provider_message_id: Optional[str] = None
    conversation_id: Optional[int] = None
    message_id: Optional[int] = None
    error: Optional[str] = None


@dataclass
class ProvisionResult:
    success: bool
    phone_number: Optional[str] = None
    sid: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ReleaseResult:
    success: bool
    error: Optional[str] = None


def _is_retryable_status(status: int | None) -> bool:
    return status is None or status == 429 or status >= 500


class SmsProvider:
    """Operations every SMS provider offers to the gateway."""

    name = ""

    def send(self, to: str, body: str, from_number: str | None = None) -> SendResult:
        raise NotImplementedError

    def handle_incoming(self, payload: dict[str, Any]) -> InboundResult:
        raise NotImplementedError

    def provision_number(self, db: Session, customer_id: int, region: str | None = None) -> ProvisionResult:
        raise NotImplementedError

    def release_number(self, db: Session, customer_id: int, phone_number: str) -> ReleaseResult:
        raise NotImplementedError

    def verify_webhook_signature(self, url: str, params: dict[str, Any], signature: str | None) -> bool:
        raise NotImplementedError


class TwilioProvider(SmsProvider):
    name = "twilio"

    def __init__(self, client: Client | None = None):
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self._client or (settings.twilio_account_sid and settings.twilio_auth_token))

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = Client(
                settings.twilio_account_sid,
                settings.twilio_auth_token,
                http_client=TwilioHttpClient(timeout=settings.sms_provider_timeout_seconds),
            )
        return self._client

    def send(self, to: str, body: str, from_number: str | None = None) -> SendResult:
        if not self.configured:
            return SendResult(success=False, error="twilio_not_configured")
        params: dict[str, Any] = {"to": to, "body": body}
        if from_number:
            params["from_"] = from_number
        elif settings.twilio_messaging_service_sid:
            params["messaging_service_sid"] = settings.twilio_messaging_service_sid
        else:
            return SendResult(success=False, error="twilio_sender_missing")

        try:
            message = self.client.messages.create(**params)
        except TwilioRestException as exc:
            log_warning("twilio_send_failed", to=to, status=exc.status, code=exc.code, error=exc.msg)
            return SendResult(
                success=False,
                error=f"twilio_error_{exc.code or exc.status}: {exc.msg}",
                retryable=_is_retryable_status(exc.status),
            )
        except Exception as exc:  # noqa: BLE001
            log_warning("twilio_send_error", to=to, error=str(exc))
            return SendResult(success=False, error=f"twilio_request_failed: {exc}", retryable=True)

        return SendResult(success=True, provider_message_id=message.sid, status=message.status)

    def handle_incoming(self, payload: dict[str, Any]) -> InboundResult:
        from_number = (payload.get("From") or "").strip()
        body = payload.get("Body")
        if not from_number or body is None:
            return InboundResult(success=False, error="invalid_payload")
        return InboundResult(
            success=True,
            from_number=from_number,
            to_number=(payload.get("To") or "").strip() or None,
            body=body,
            provider_message_id=payload.get("MessageSid"),
        )

    def provision_number(self, db: Session, customer_id: int, region: str | None = None) -> ProvisionResult:
        if not self.configured:
            return ProvisionResult(success=False, error="twilio_not_configured")
        search: dict[str, Any] = {"limit": 1, "sms_enabled": True, "voice_enabled": True}
        if region:
            search["area_code"] = region
        try:
            available = self.client.available_phone_numbers(settings.twilio_number_country).mobile.list(**search)
            if not available:
                return ProvisionResult(success=False, error="no_numbers_available")
            create: dict[str, Any] = {"phone_number": available[0].phone_number}
            if settings.twilio_sms_webhook_url:
                create["sms_url"] = settings.twilio_sms_webhook_url
                create["sms_method"] = "POST"
            purchased = self.client.incoming_phone_numbers.create(**create)
        except TwilioRestException as exc:
            log_warning("twilio_provision_failed", customer_id=customer_id, status=exc.status, error=exc.msg)
            return ProvisionResult(success=False, error=f"twilio_error_{exc.code or exc.status}: {exc.msg}")

        owned = models.OwnedNumber(
            customer_id=customer_id,
            provider=self.name,
            phone_number=purchased.phone_number,
            provider_sid=purchased.sid,
            friendly_name=purchased.friendly_name,
        )
        db.add(owned)
        db.commit()
        log_event("twilio_number_provisioned", customer_id=customer_id, phone_number=owned.phone_number, sid=owned.provider_sid)
        return ProvisionResult(success=True, phone_number=owned.phone_number, sid=owned.provider_sid)

    def release_number(self, db: Session, customer_id: int, phone_number: str) -> ReleaseResult:
        owned = (
            db.query(models.OwnedNumber)
            .filter(
                models.OwnedNumber.customer_id == customer_id,
                models.OwnedNumber.phone_number == phone_number,
                models.OwnedNumber.is_active.is_(True),
            )
            .first()
        )
        if owned is None:
            return ReleaseResult(success=False, error="not_found_or_already_released")

        if owned.provider_sid and self.configured:
            try:
                self.client.incoming_phone_numbers(owned.provider_sid).delete()
            except TwilioRestException as exc:
                # The local row is still retired so the number stops being used for sending.
                log_warning("twilio_release_failed", customer_id=customer_id, phone_number=phone_number, error=exc.msg)

        owned.is_active = False
        owned.released_at = datetime.now(timezone.utc)
        db.add(owned)
        db.commit()
        log_event("twilio_number_released", customer_id=customer_id, phone_number=phone_number)
        return ReleaseResult(success=True)

    def verify_webhook_signature(self, url: str, params: dict[str, Any], signature: str | None) -> bool:
        if not settings.twilio_auth_token or not signature:
            return False
        return RequestValidator(settings.twilio_auth_token).validate(url, params, signature)


def extract_fonecloud_message_id(data: Any, phone: str) -> Optional[str]:
    if not isinstance(data, dict) or not data:
        return None
    value = data.get(phone) if phone in data else next(iter(data.values()))
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and value.get("id_state") is not None:
        return str(value["id_state"])
    return None


class FonecloudProvider(SmsProvider):
    name = "fonecloud"

    def __init__(self, http_client: httpx.Client | None = None):
        self._http = http_client

    @property
    def http(self) -> httpx.Client:
        if self._http is None:
            self._http = httpx.Client(timeout=settings.sms_provider_timeout_seconds)
        return self._http

    def send(self, to: str, body: str, from_number: str | None = None) -> SendResult:
        if not settings.fonecloud_api_base_url or not settings.fonecloud_token:
            log_warning("fonecloud_not_configured", has_base_url=bool(settings.fonecloud_api_base_url), has_token=bool(settings.fonecloud_token))
            return SendResult(success=False, error="fonecloud_not_configured")

        sender = from_number or settings.fonecloud_default_sender_id
        url = f"{settings.fonecloud_api_base_url.rstrip('/')}/send"
        params = {
            "token": settings.fonecloud_token,
            "phone": to,
            "senderID": sender,
            "text": body,
            "type": "sms",
        }
        log_debug("fonecloud_send_request", to=to, sender=sender)
        try:
            response = self.http.get(url, params=params)
        except httpx.HTTPError as exc:
            log_warning("fonecloud_request_failed", to=to, error=str(exc))
            return SendResult(success=False, error=f"fonecloud_request_failed: {exc}", retryable=True)

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status_code >= 400:
            message = None
            if isinstance(data, dict):
                message = data.get("error") or data.get("message")
            log_warning("fonecloud_send_failed", to=to, status=response.status_code, error=message)
            return SendResult(
                success=False,
                error=str(message or f"fonecloud_error_status_{response.status_code}"),
                retryable=_is_retryable_status(response.status_code),
            )

        return SendResult(success=True, provider_message_id=extract_fonecloud_message_id(data, to), status="accepted")

    def handle_incoming(self, payload: dict[str, Any]) -> InboundResult:
        return InboundResult(success=False, error="fonecloud_inbound_not_supported")

    def provision_number(self, db: Session, customer_id: int, region: str | None = None) -> ProvisionResult:
        from .number_pool import allocate_from_pool  # noqa: PLC0415

        number = allocate_from_pool(db, customer_id)
        return ProvisionResult(success=True, phone_number=number.phone_number)

    def release_number(self, db: Session, customer_id: int, phone_number: str) -> ReleaseResult:
        from .number_pool import release_to_pool  # noqa: PLC0415

        return release_to_pool(db, customer_id, phone_number)

    def verify_webhook_signature(self, url: str, params: dict[str, Any], signature: str | None) -> bool:
        return True
