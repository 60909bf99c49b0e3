from datetime import datetime, timedelta, timezone

from email_reconciler.config import CIRCUIT_BREAKER
from email_reconciler.utils.circuit_breaker import CircuitBreaker


def _trip(cb: CircuitBreaker, provider: str) -> None:
    for _ in range(int(CIRCUIT_BREAKER["failure_threshold"])):
        cb.record_failure(provider)


def test_opens_after_threshold_and_denies_calls():
    cb = CircuitBreaker()
    _trip(cb, "postmark")
    allowed, reason = cb.allow_call("postmark")
    assert allowed is False and reason == "circuit_open"
    assert cb.snapshot()["postmark"]["state"] == "OPEN"


def test_half_open_probes_then_close_on_success():
    cb = CircuitBreaker()
    _trip(cb, "postmark")
    # Pretend the cooldown already elapsed.
    cb._states["postmark"].opened_at = datetime.now(timezone.utc) - timedelta(
        seconds=int(CIRCUIT_BREAKER["open_cooldown_seconds"]) + 1
    )
    for _ in range(int(CIRCUIT_BREAKER["half_open_probe_count"])):
        assert cb.allow_call("postmark") == (True, None)
    assert cb.allow_call("postmark") == (False, "half_open_probe_exhausted")

    cb.record_success("postmark")
    assert cb.snapshot()["postmark"]["state"] == "CLOSED"
    assert cb.allow_call("postmark") == (True, None)


def test_failure_in_half_open_reopens():
    cb = CircuitBreaker()
    _trip(cb, "postmark")
    cb._states["postmark"].opened_at = datetime.now(timezone.utc) - timedelta(days=1)
    assert cb.allow_call("postmark")[0] is True
    cb.record_failure("postmark")
    assert cb.allow_call("postmark") == (False, "circuit_open")


def test_providers_are_independent_and_reset():
    cb = CircuitBreaker()
    _trip(cb, "postmark")
    assert cb.allow_call("other")[0] is True
    cb.reset("postmark")
    assert cb.allow_call("postmark") == (True, None)
    cb.reset()
    assert cb.snapshot() == {}
