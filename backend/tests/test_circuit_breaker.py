from replypilot.circuit_breaker import STATE_CLOSED, STATE_HALF_OPEN, STATE_OPEN, CircuitBreaker


def test_breaker_opens_after_threshold_failures():
    breaker = CircuitBreaker(name="sms:test", threshold=3, reset_timeout_seconds=30)
    for _ in range(2):
        breaker.record_failure(now=100.0)
    assert breaker.state == STATE_CLOSED
    assert breaker.allow_request(now=100.0)

    breaker.record_failure(now=100.0)
    assert breaker.state == STATE_OPEN
    assert breaker.allow_request(now=110.0) is False


def test_breaker_half_opens_after_reset_timeout_and_closes_on_success():
    breaker = CircuitBreaker(name="sms:test", threshold=1, reset_timeout_seconds=30)
    breaker.record_failure(now=100.0)

    assert breaker.allow_request(now=130.0) is True
    assert breaker.state == STATE_HALF_OPEN

    breaker.record_success()
    assert breaker.state == STATE_CLOSED
    assert breaker.failure_count == 0


def test_failure_while_half_open_reopens_immediately():
    breaker = CircuitBreaker(name="sms:test", threshold=5, reset_timeout_seconds=30)
    for _ in range(5):
        breaker.record_failure(now=100.0)
    assert breaker.allow_request(now=131.0)

    breaker.record_failure(now=131.0)
    assert breaker.state == STATE_OPEN
    assert breaker.allow_request(now=140.0) is False


def test_success_resets_failure_count():
    breaker = CircuitBreaker(name="sms:test", threshold=3)
    breaker.record_failure(now=1.0)
    breaker.record_failure(now=2.0)
    breaker.record_success()
    breaker.record_failure(now=3.0)
    assert breaker.state == STATE_CLOSED
    assert breaker.failure_count == 1
