"""Single entrypoint for outbound and inbound SMS across providers.

Each customer is routed to the provider named on ``customers.sms_provider``.
Every provider gets its own circuit breaker so one failing upstream never
blocks the others. The registry and breakers live on an ``SmsGateway``
instance; the module-level functions delegate to ``default_gateway``.
"""

from __future__ import annotations

import uuid
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from . import models
from .channels import ChannelResult
from .circuit_breaker import CircuitBreaker
from .config import settings
from .logging_utils import log_debug, log_event, log_warning
from .number_pool import get_allocated_number
from .sms_providers import (
    FonecloudProvider,
    InboundResult,
    ProvisionResult,
    ReleaseResult,
    SmsProvider,
    TwilioProvider,
)
from .task_queue import JOB_TYPE_SEND_SMS, enqueue_job

InboundHandler = Callable[[Session | None, InboundResult], tuple[Optional[int], Optional[int]]]


class SmsProviderNotConfigured(Exception):
    code = "sms_provider_not_configured"


def get_from_number(db: Session, customer_id: int | None, provider_name: str) -> str | None:
    if customer_id is None:
        return None
    if provider_name == "fonecloud":
        pooled = get_allocated_number(db, customer_id)
        if pooled is not None:
            return pooled.phone_number
        customer = db.get(models.Customer, customer_id)
        return customer.fonecloud_sender_id if customer else None

    owned = (
        db.query(models.OwnedNumber)
        .filter(
            models.OwnedNumber.customer_id == customer_id,
            models.OwnedNumber.provider == provider_name,
            models.OwnedNumber.is_active.is_(True),
        )
        .order_by(models.OwnedNumber.id.asc())
        .first()
    )
    return owned.phone_number if owned else None


class SmsGateway:
    def __init__(self) -> None:
        self.providers: dict[str, SmsProvider] = {}
        self.breakers: dict[str, CircuitBreaker] = {}
        self.inbound_handler: InboundHandler | None = None

    def register_provider(self, name: str, provider: SmsProvider) -> None:
        name = (name or "").strip().lower()
        if not name:
            raise ValueError("Provider name is required")
        self.providers[name] = provider
        self.breakers.pop(name, None)

    def get_provider(self, name: str | None) -> SmsProvider | None:
        return self.providers.get((name or "").strip().lower())

    def list_providers(self) -> list[str]:
        return sorted(self.providers)

    def get_breaker(self, name: str) -> CircuitBreaker:
        breaker = self.breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name=f"sms:{name}",
                threshold=settings.circuit_breaker_threshold,
                reset_timeout_seconds=settings.circuit_breaker_reset_seconds,
            )
            self.breakers[name] = breaker
        return breaker

    def reset_breakers(self) -> None:
        self.breakers.clear()

    def resolve_provider_name(self, db: Session, customer_id: int | None) -> str:
        configured = None
        if customer_id is not None:
            customer = db.get(models.Customer, customer_id)
            configured = (customer.sms_provider or "").strip().lower() if customer else None
        if configured and configured in self.providers:
            return configured

        if settings.sms_fallback_to_default_provider and settings.sms_default_provider in self.providers:
            log_warning(
                "sms_provider_fallback",
                customer_id=customer_id,
                configured=configured,
                provider=settings.sms_default_provider,
            )
            return settings.sms_default_provider

        raise SmsProviderNotConfigured(
            f"Customer {customer_id} has no usable SMS provider (configured={configured!r})"
        )

    def send_sms(
        self,
        db: Session,
        *,
        customer_id: int | None,
        to: str,
        body: str,
        from_number: str | None = None,
    ) -> ChannelResult:
        """Send one SMS through the customer's provider. Never raises."""
        try:
            provider_name = self.resolve_provider_name(db, customer_id)
        except SmsProviderNotConfigured:
            log_warning("sms_provider_not_configured", customer_id=customer_id, to=to)
            return ChannelResult(success=False, error=SmsProviderNotConfigured.code, retryable=False)
        except Exception as exc:  # noqa: BLE001
            log_warning("sms_provider_lookup_failed", customer_id=customer_id, error=str(exc))
            return ChannelResult(success=False, error=f"sms_provider_lookup_failed: {exc}", retryable=True)

        provider = self.providers[provider_name]
        breaker = self.get_breaker(provider_name)
        if not breaker.allow_request():
            log_warning("sms_circuit_open", provider=provider_name, customer_id=customer_id)
            return ChannelResult(success=False, error="circuit_open", retryable=False)

        try:
            sender = from_number or get_from_number(db, customer_id, provider_name)
            log_debug("sms_sending", provider=provider_name, customer_id=customer_id, to=to)
            result = provider.send(to, body, sender)
        except Exception as exc:  # noqa: BLE001
            breaker.record_failure()
            log_warning("sms_send_error", provider=provider_name, customer_id=customer_id, error=str(exc))
            return ChannelResult(success=False, error=f"sms_send_error: {exc}", retryable=True)

        if result.success:
            breaker.record_success()
        elif result.retryable:
            breaker.record_failure()

        log_event(
            "sms_send_result",
            provider=provider_name,
            customer_id=customer_id,
            to=to,
            success=result.success,
            provider_message_id=result.provider_message_id,
            error=result.error,
        )
        return ChannelResult(
            success=result.success,
            error=result.error,
            retryable=result.retryable,
            provider_message_id=result.provider_message_id,
        )

    def handle_incoming(self, provider_name: str, payload: dict[str, Any], db: Session | None = None) -> InboundResult:
        provider = self.get_provider(provider_name)
        if provider is None:
            raise SmsProviderNotConfigured(f"SMS provider {provider_name!r} is not registered")

        result = provider.handle_incoming(payload)
        if not result.success:
            log_warning("sms_inbound_rejected", provider=provider_name, error=result.error)
            return result
        if self.inbound_handler is None:
            log_warning("sms_inbound_unhandled", provider=provider_name, from_number=result.from_number)
            return result

        conversation_id, message_id = self.inbound_handler(db, result)
        result.conversation_id = conversation_id
        result.message_id = message_id
        log_event(
            "sms_inbound_handled",
            provider=provider_name,
            from_number=result.from_number,
            conversation_id=conversation_id,
            message_id=message_id,
        )
        return result

    def provision_number(self, db: Session, customer_id: int, region: str | None = None) -> ProvisionResult:
        provider_name = self.resolve_provider_name(db, customer_id)
        result = self.providers[provider_name].provision_number(db, customer_id, region)
        log_event(
            "sms_number_provisioned" if result.success else "sms_number_provision_failed",
            provider=provider_name,
            customer_id=customer_id,
            phone_number=result.phone_number,
            error=result.error,
        )
        return result

    def release_number(self, db: Session, customer_id: int, phone_number: str) -> ReleaseResult:
        provider_name = self.resolve_provider_name(db, customer_id)
        return self.providers[provider_name].release_number(db, customer_id, phone_number)

    def verify_webhook_signature(self, provider_name: str, url: str, params: dict[str, Any], signature: str | None) -> bool:
        provider = self.get_provider(provider_name)
        if provider is None:
            return False
        return provider.verify_webhook_signature(url, params, signature)


def queue_sms(
    db: Session,
    *,
    customer_id: int | None,
    to: str,
    body: str,
    from_number: str | None = None,
) -> models.BackgroundJob:
    return enqueue_job(
        db,
        JOB_TYPE_SEND_SMS,
        {
            "customer_id": customer_id,
            "to": to,
            "body": body,
            "from_number": from_number,
            "message_id": uuid.uuid4().hex,
        },
    )


default_gateway = SmsGateway()
default_gateway.register_provider("twilio", TwilioProvider())
default_gateway.register_provider("fonecloud", FonecloudProvider())


def register_provider(name: str, provider: SmsProvider) -> None:
    default_gateway.register_provider(name, provider)


def get_provider(name: str | None) -> SmsProvider | None:
    return default_gateway.get_provider(name)


def list_providers() -> list[str]:
    return default_gateway.list_providers()


def get_breaker(name: str) -> CircuitBreaker:
    return default_gateway.get_breaker(name)


def reset_breakers() -> None:
    default_gateway.reset_breakers()


def resolve_provider_name(db: Session, customer_id: int | None) -> str:
    return default_gateway.resolve_provider_name(db, customer_id)


def send_sms(
    db: Session,
    *,
    customer_id: int | None,
    to: str,
    body: str,
    from_number: str | None = None,
) -> ChannelResult:
    return default_gateway.send_sms(db, customer_id=customer_id, to=to, body=body, from_number=from_number)


def set_inbound_handler(handler: InboundHandler | None) -> None:
    default_gateway.inbound_handler = handler


def handle_incoming(provider_name: str, payload: dict[str, Any], db: Session | None = None) -> InboundResult:
    return default_gateway.handle_incoming(provider_name, payload, db)


def provision_number(db: Session, customer_id: int, region: str | None = None) -> ProvisionResult:
    return default_gateway.provision_number(db, customer_id, region)


def release_number(db: Session, customer_id: int, phone_number: str) -> ReleaseResult:
    return default_gateway.release_number(db, customer_id, phone_number)


def verify_webhook_signature(provider_name: str, url: str, params: dict[str, Any], signature: str | None) -> bool:
    return default_gateway.verify_webhook_signature(provider_name, url, params, signature)
