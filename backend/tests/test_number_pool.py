import threading

import pytest

from replypilot import models
from replypilot.database import SessionLocal
from replypilot.number_pool import (
    NoNumbersAvailable,
    add_to_pool,
    allocate_from_pool,
    get_allocated_number,
    list_allocated_numbers,
    list_pool_numbers,
    release_to_pool,
)


def test_allocate_assigns_free_number(helpers):
    db = helpers["db"]
    customer = helpers["make_customer"]()
    add_to_pool(db, "+4570000001")

    number = allocate_from_pool(db, customer.id)

    assert number.customer_id == customer.id
    assert number.status == "allocated"
    assert number.version == 1
    assert number.allocated_at is not None
    assert get_allocated_number(db, customer.id).id == number.id


def test_allocate_is_idempotent_per_customer(helpers):
    db = helpers["db"]
    customer = helpers["make_customer"]()
    add_to_pool(db, "+4570000001")
    add_to_pool(db, "+4570000002")

    first = allocate_from_pool(db, customer.id)
    second = allocate_from_pool(db, customer.id)

    assert first.id == second.id
    assert len(list_pool_numbers(db)) == 1


def test_empty_pool_raises(helpers):
    customer = helpers["make_customer"]()
    with pytest.raises(NoNumbersAvailable):
        allocate_from_pool(helpers["db"], customer.id)


def test_inactive_numbers_are_never_allocated(helpers):
    db = helpers["db"]
    customer = helpers["make_customer"]()
    number = add_to_pool(db, "+4570000001")
    number.is_active = False
    db.commit()

    with pytest.raises(NoNumbersAvailable):
        allocate_from_pool(db, customer.id)


def test_release_returns_number_to_pool_once(helpers):
    db = helpers["db"]
    first = helpers["make_customer"]("a@firma.dk")
    second = helpers["make_customer"]("b@firma.dk")
    add_to_pool(db, "+4570000001")
    allocate_from_pool(db, first.id)

    released = release_to_pool(db, first.id, "+4570000001")
    again = release_to_pool(db, first.id, "+4570000001")

    assert released.success is True
    assert (again.success, again.error) == (False, "not_found_or_already_released")
    number = db.query(models.PoolNumber).one()
    db.refresh(number)
    assert (number.status, number.customer_id, number.version) == ("released", None, 2)

    reused = allocate_from_pool(db, second.id)
    assert reused.phone_number == "+4570000001"
    assert reused.customer_id == second.id


def test_release_by_other_customer_is_rejected(helpers):
    db = helpers["db"]
    owner = helpers["make_customer"]("a@firma.dk")
    other = helpers["make_customer"]("b@firma.dk")
    add_to_pool(db, "+4570000001")
    allocate_from_pool(db, owner.id)

    assert release_to_pool(db, other.id, "+4570000001").success is False
    assert get_allocated_number(db, owner.id) is not None


def test_concurrent_allocation_hands_out_single_number_once(helpers):
    db = helpers["db"]
    customers = [helpers["make_customer"](f"c{i}@firma.dk").id for i in range(6)]
    add_to_pool(db, "+4570000001")
    barrier = threading.Barrier(len(customers))
    allocated, exhausted, errors = [], [], []

    def _worker(customer_id: int) -> None:
        session = SessionLocal()
        try:
            barrier.wait()
            allocated.append((customer_id, allocate_from_pool(session, customer_id).phone_number))
        except NoNumbersAvailable:
            exhausted.append(customer_id)
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)
        finally:
            session.close()

    threads = [threading.Thread(target=_worker, args=(customer_id,)) for customer_id in customers]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(allocated) == 1
    assert len(exhausted) == len(customers) - 1
    number = db.query(models.PoolNumber).one()
    db.refresh(number)
    assert number.customer_id == allocated[0][0]
    assert number.version == 1


def test_add_to_pool_validates_and_rejects_duplicates(helpers):
    db = helpers["db"]
    number = add_to_pool(db, " +45 7000 0001 ", notes="Fonecloud batch 3")
    assert number.phone_number == "+4570000001"
    assert number.notes == "Fonecloud batch 3"

    with pytest.raises(ValueError):
        add_to_pool(db, "+4570000001")
    with pytest.raises(ValueError):
        add_to_pool(db, "1234")


def test_listings_split_free_and_allocated(helpers):
    db = helpers["db"]
    customer = helpers["make_customer"]()
    add_to_pool(db, "+4570000001")
    add_to_pool(db, "+4570000002")
    allocate_from_pool(db, customer.id)

    free = list_pool_numbers(db)
    allocated = list_allocated_numbers(db)

    assert [n.phone_number for n in free] == ["+4570000002"]
    assert [n.phone_number for n in allocated] == ["+4570000001"]
    assert allocated[0].customer.email == customer.email
