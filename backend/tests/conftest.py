import os
from datetime import time

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("EMAIL_ENABLED", "false")
os.environ.setdefault("DELIVERY_RETRY_BASE_SECONDS", "0")
os.environ.setdefault("LOG_JSON", "false")

from replypilot import channels, models, sms_gateway, task_queue  # noqa: E402
from replypilot.api import app  # noqa: E402
from replypilot.channels import ChannelResult  # noqa: E402
from replypilot.config import settings  # noqa: E402
from replypilot.database import Base, SessionLocal, engine, get_db  # noqa: E402


class FakeChannel:
    """Records every send and answers with queued results (success by default)."""

    def __init__(self, name: str):
        self.name = name
        self.sent = []
        self.results = []

    def send(self, recipient, content, *, db=None):
        self.sent.append((recipient, content))
        if self.results:
            return self.results.pop(0)
        return ChannelResult(success=True, provider_message_id=f"{self.name}-{len(self.sent)}", attempts=1)


@pytest.fixture(scope="session", autouse=True)
def _ensure_schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session():
    db = SessionLocal()
    try:
        for table in reversed(Base.metadata.sorted_tables):
            db.execute(table.delete())
        db.commit()
        channels.reset_channels()
        sms_gateway.reset_breakers()
        yield db
    finally:
        db.close()
        channels.reset_channels()
        sms_gateway.set_inbound_handler(None)
        task_queue.unregister_job_handler(task_queue.JOB_TYPE_AI_GENERATE)


@pytest.fixture()
def client(db_session):
    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def fake_channels(db_session):
    email = FakeChannel("email")
    sms = FakeChannel("sms")
    channels.set_channel("email", email)
    channels.set_channel("sms", sms)
    yield {"email": email, "sms": sms}
    channels.reset_channels()


@pytest.fixture()
def override_settings():
    changed = {}

    def _set(**values):
        for name, value in values.items():
            if name not in changed:
                changed[name] = getattr(settings, name)
            setattr(settings, name, value)

    yield _set
    for name, value in changed.items():
        setattr(settings, name, value)


@pytest.fixture()
def helpers(db_session):
    def make_customer(email: str = "owner@firma.dk", **fields) -> models.Customer:
        customer = models.Customer(email=email, name=fields.pop("name", "Firma ApS"), **fields)
        db_session.add(customer)
        db_session.commit()
        db_session.refresh(customer)
        return customer

    def make_user(customer: models.Customer, email: str) -> models.User:
        user = models.User(customer_id=customer.id, email=email)
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    def make_preferences(customer: models.Customer, user: models.User | None = None, **fields) -> models.NotificationPreference:
        fields.setdefault("timezone", "UTC")
        for name in ("digest_time", "quiet_hours_start", "quiet_hours_end"):
            if isinstance(fields.get(name), str):
                hour, minute = fields[name].split(":")
                fields[name] = time(int(hour), int(minute))
        pref = models.NotificationPreference(
            customer_id=customer.id,
            user_id=user.id if user else None,
            **fields,
        )
        db_session.add(pref)
        db_session.commit()
        db_session.refresh(pref)
        return pref

    def deliveries(**filters) -> list[models.NotificationDelivery]:
        query = db_session.query(models.NotificationDelivery)
        for name, value in filters.items():
            query = query.filter(getattr(models.NotificationDelivery, name) == value)
        return query.order_by(models.NotificationDelivery.id.asc()).all()

    def jobs(job_type: str | None = None) -> list[models.BackgroundJob]:
        query = db_session.query(models.BackgroundJob)
        if job_type:
            query = query.filter(models.BackgroundJob.job_type == job_type)
        return query.order_by(models.BackgroundJob.id.asc()).all()

    return {
        "db": db_session,
        "make_customer": make_customer,
        "make_user": make_user,
        "make_preferences": make_preferences,
        "deliveries": deliveries,
        "jobs": jobs,
    }
