from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional

from .logging_utils import log_event, log_warning

STATE_CLOSED = "closed"
STATE_OPEN = "open"
STATE_HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """Failure counter guarding one outbound dependency.

    Each owner (for example one SMS provider inside the gateway) holds its own
    instance, so tripping one dependency never blocks another.
    """

    name: str
    threshold: int = 5
    reset_timeout_seconds: float = 60.0
    failure_count: int = 0
    last_failure_time: Optional[float] = None
    state: str = field(default=STATE_CLOSED)

    def allow_request(self, now: Optional[float] = None) -> bool:
        if self.state != STATE_OPEN:
            return True
        now = time.monotonic() if now is None else now
        if self.last_failure_time is not None and now - self.last_failure_time >= self.reset_timeout_seconds:
            self.state = STATE_HALF_OPEN
            self.failure_count = 0
            log_event("circuit_half_open", breaker=self.name)
            return True
        return False

    def record_success(self) -> None:
        if self.state != STATE_CLOSED:
            log_event("circuit_closed", breaker=self.name)
        self.state = STATE_CLOSED
        self.failure_count = 0

    def record_failure(self, now: Optional[float] = None) -> None:
        self.failure_count += 1
        self.last_failure_time = time.monotonic() if now is None else now
        if self.state == STATE_HALF_OPEN or self.failure_count >= self.threshold:
            if self.state != STATE_OPEN:
                log_warning("circuit_opened", breaker=self.name, failures=self.failure_count)
            self.state = STATE_OPEN
