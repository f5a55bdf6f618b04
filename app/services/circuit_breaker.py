"""
Circuit breakers for outbound provider calls (pybreaker).

State lives in Redis so API workers and the Celery sync task trip and
recover together. CB_STORAGE=memory keeps it per process (tests, local runs).
"""
import logging
from datetime import datetime, timezone

import pybreaker
import redis

from app.core.config import settings
from app.utils.metrics import circuit_breaker_state


logger = logging.getLogger("circuit_breaker")


class RedisCircuitBreakerStorage(pybreaker.CircuitBreakerStorage):
    """pybreaker storage backed by four Redis keys under ``cb:<name>:``."""

    def __init__(self, name: str, client: redis.Redis | None = None) -> None:
        super().__init__(name)
        self._name = name
        self.client = client or redis.Redis.from_url(settings.redis_url, decode_responses=True)
        # Keys outlive an open period so a half-open trial call still sees them
        self._ttl = settings.cb_open_seconds * 2

    def _key(self, suffix: str) -> str:
        return f"cb:{self._name}:{suffix}"

    def _get_int(self, suffix: str) -> int:
        raw = self.client.get(self._key(suffix))
        return int(raw) if raw else 0

    def _incr(self, suffix: str) -> None:
        pipe = self.client.pipeline()
        pipe.incr(self._key(suffix))
        pipe.expire(self._key(suffix), self._ttl)
        pipe.execute()

    @property
    def state(self) -> str:
        return self.client.get(self._key("state")) or pybreaker.STATE_CLOSED

    @state.setter
    def state(self, value: str) -> None:
        self.client.set(self._key("state"), value, ex=self._ttl)
        circuit_breaker_state.labels(name=self._name).set(1 if value == pybreaker.STATE_OPEN else 0)

    @property
    def counter(self) -> int:
        return self._get_int("failures")

    def increment_counter(self) -> None:
        self._incr("failures")

    def reset_counter(self) -> None:
        self.client.delete(self._key("failures"))

    @property
    def success_counter(self) -> int:
        return self._get_int("successes")

    def increment_success_counter(self) -> None:
        self._incr("successes")

    def reset_success_counter(self) -> None:
        self.client.delete(self._key("successes"))

    @property
    def opened_at(self) -> datetime | None:
        raw = self.client.get(self._key("opened_at"))
        return datetime.fromtimestamp(float(raw), tz=timezone.utc) if raw else None

    @opened_at.setter
    def opened_at(self, dt: datetime) -> None:
        self.client.set(self._key("opened_at"), str(dt.timestamp()), ex=self._ttl)


class CircuitBreakerListener(pybreaker.CircuitBreakerListener):
    """Logs transitions and failures with the breaker name."""

    def __init__(self, name: str) -> None:
        self.name = name

    def state_change(self, cb: pybreaker.CircuitBreaker, old_state, new_state) -> None:
        old_name = getattr(old_state, "name", str(old_state))
        new_name = getattr(new_state, "name", str(new_state))
        log = logger.error if new_name == pybreaker.STATE_OPEN else logger.warning
        log(
            "circuit_breaker_state_change",
            extra={"breaker_name": self.name, "old_state": old_name, "new_state": new_name},
        )

    def failure(self, cb: pybreaker.CircuitBreaker, exc: BaseException) -> None:
        logger.warning(
            "circuit_breaker_failure",
            extra={"breaker_name": self.name, "error": type(exc).__name__},
        )


_breakers: dict[str, pybreaker.CircuitBreaker] = {}


def _make_storage(name: str) -> pybreaker.CircuitBreakerStorage:
    if settings.cb_storage == "memory":
        return pybreaker.CircuitMemoryStorage(pybreaker.STATE_CLOSED)
    return RedisCircuitBreakerStorage(name)


def get_circuit_breaker(name: str) -> pybreaker.CircuitBreaker:
    """Breakers are created on first use; nothing touches Redis at import time."""
    breaker = _breakers.get(name)
    if breaker is None:
        breaker = pybreaker.CircuitBreaker(
            fail_max=settings.cb_failure_threshold,
            reset_timeout=settings.cb_open_seconds,
            state_storage=_make_storage(name),
            listeners=[CircuitBreakerListener(name)],
            name=name,
        )
        _breakers[name] = breaker
    return breaker
