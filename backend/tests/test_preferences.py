import threading
from datetime import time

import pytest
from sqlalchemy.exc import IntegrityError

from replypilot import models
from replypilot.cadence import InvalidCadence
from replypilot.database import SessionLocal
from replypilot.preferences import (
    get_notification_preferences,
    load_preference_rows,
    update_notification_preferences,
)


def test_update_creates_tenant_row_with_defaults(helpers):
    db = helpers["db"]
    customer = helpers["make_customer"]()

    pref = update_notification_preferences(db, customer.id, None, {"sms_enabled": True, "sms_phone": " +4512345678 "})

    assert pref.user_id is None
    assert pref.cadence_mode == "immediate"
    assert pref.sms_phone == "+4512345678"
    assert pref.email_new_lead is True
    assert pref.digest_time == time(9, 0)
    assert get_notification_preferences(db, customer.id).id == pref.id


def test_update_existing_row_applies_partial_fields(helpers):
    db = helpers["db"]
    customer = helpers["make_customer"]()
    helpers["make_preferences"](customer, email="ops@firma.dk")

    pref = update_notification_preferences(
        db,
        customer.id,
        None,
        {"cadence_mode": "daily", "digest_time": "07:30", "quiet_hours_start": "22:00", "quiet_hours_end": "06:00"},
    )

    assert pref.email == "ops@firma.dk"
    assert pref.cadence_mode == "daily"
    assert pref.digest_time == time(7, 30)
    assert (pref.quiet_hours_start, pref.quiet_hours_end) == (time(22, 0), time(6, 0))


def test_custom_cadence_requires_valid_interval(helpers):
    db = helpers["db"]
    customer = helpers["make_customer"]()

    with pytest.raises(InvalidCadence):
        update_notification_preferences(db, customer.id, None, {"cadence_mode": "custom"})
    with pytest.raises(InvalidCadence):
        update_notification_preferences(db, customer.id, None, {"cadence_mode": "custom", "cadence_interval_minutes": 4})

    pref = update_notification_preferences(db, customer.id, None, {"cadence_mode": "custom", "cadence_interval_minutes": 15})
    assert pref.cadence_interval_minutes == 15


@pytest.mark.parametrize(
    "fields",
    [
        {"timezone": "Mars/Olympus"},
        {"cadence_mode": "weekly"},
        {"max_notifications_per_day": -1},
        {"email_enabled": None},
        {"digest_time": None},
        {"favourite_colour": "blue"},
    ],
)
def test_invalid_fields_are_rejected(helpers, fields):
    customer = helpers["make_customer"]()
    with pytest.raises(ValueError):
        update_notification_preferences(helpers["db"], customer.id, None, fields)
    assert get_notification_preferences(helpers["db"], customer.id) is None


def test_unknown_customer_is_rejected(helpers):
    with pytest.raises(LookupError):
        update_notification_preferences(helpers["db"], 12345, None, {"email_enabled": False})


def test_user_rows_are_separate_from_tenant_row(helpers):
    db = helpers["db"]
    customer = helpers["make_customer"]()
    user = helpers["make_user"](customer, "anna@firma.dk")
    tenant = helpers["make_preferences"](customer)

    user_pref = update_notification_preferences(db, customer.id, user.id, {"email_new_message": True})

    assert user_pref.id != tenant.id
    assert get_notification_preferences(db, customer.id, user.id).id == user_pref.id
    assert get_notification_preferences(db, customer.id).id == tenant.id
    assert [row.id for row in load_preference_rows(db, customer.id)] == [user_pref.id]


def test_tenant_row_is_used_when_no_user_rows(helpers):
    customer = helpers["make_customer"]()
    tenant = helpers["make_preferences"](customer)
    assert [row.id for row in load_preference_rows(helpers["db"], customer.id)] == [tenant.id]
    assert load_preference_rows(helpers["db"], customer.id + 1) == []


def test_second_tenant_row_is_rejected_by_the_database(helpers):
    db = helpers["db"]
    customer = helpers["make_customer"]()
    helpers["make_preferences"](customer)

    db.add(models.NotificationPreference(customer_id=customer.id, user_id=None))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()

    assert db.query(models.NotificationPreference).filter_by(customer_id=customer.id).count() == 1


def test_concurrent_tenant_updates_share_one_row(helpers, fake_channels):
    from replypilot.dispatcher import emit_event

    customer = helpers["make_customer"]()
    customer_id = customer.id
    workers = 4
    barrier = threading.Barrier(workers)
    errors = []

    def _worker(index: int) -> None:
        session = SessionLocal()
        try:
            barrier.wait()
            update_notification_preferences(session, customer_id, None, {"email_new_message": True, "email": f"ops{index}@firma.dk"})
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)
        finally:
            session.close()

    threads = [threading.Thread(target=_worker, args=(i,)) for i in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    db = helpers["db"]
    assert errors == []
    rows = db.query(models.NotificationPreference).filter_by(customer_id=customer_id).all()
    assert len(rows) == 1
    assert rows[0].email_new_message is True

    emit_event(db, customer_id, "new_message", {"lead_name": "Mette"})
    assert len(fake_channels["email"].sent) == 1
