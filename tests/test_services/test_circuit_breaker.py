from geoenrich.models.enrichment import ProviderErrorKind, ProviderResponse
from geoenrich.services.circuit_breaker import CircuitBreaker, CircuitState

AUTH = ProviderResponse.fail("mapbox", ProviderErrorKind.AUTHORIZATION, "401", status_code=401)
TRANSIENT = ProviderResponse.fail("mapbox", ProviderErrorKind.TRANSIENT, "timeout")
OK = ProviderResponse.ok("mapbox")


class TestCircuitBreaker:
    def test_trips_on_third_consecutive_auth_failure(self):
        breaker = CircuitBreaker("mapbox", threshold=3)
        breaker.record(AUTH)
        breaker.record(AUTH)
        assert breaker.allow()
        breaker.record(AUTH)
        assert breaker.state == CircuitState.TRIPPED
        assert not breaker.allow()

    def test_other_outcomes_reset_streak(self):
        breaker = CircuitBreaker("mapbox", threshold=3)
        breaker.record(AUTH)
        breaker.record(AUTH)
        breaker.record(TRANSIENT)
        breaker.record(AUTH)
        breaker.record(OK)
        breaker.record(AUTH)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 1

    def test_stays_tripped(self):
        breaker = CircuitBreaker("mapbox", threshold=1)
        breaker.record(AUTH)
        breaker.record(OK)
        assert breaker.is_open
