from enum import Enum

import structlog

from geoenrich.models.enrichment import ProviderErrorKind, ProviderResponse

logger = structlog.get_logger()


class CircuitState(str, Enum):
    CLOSED = "closed"
    TRIPPED = "tripped"


class CircuitBreaker:
    """Disable a provider for the rest of a run after consecutive auth failures.

    Only authorization-class failures count. Any other outcome, success or
    not, resets the streak. Once tripped the breaker stays tripped.
    """

    def __init__(self, provider: str, threshold: int = 3):
        self.provider = provider
        self.threshold = threshold
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.TRIPPED

    def allow(self) -> bool:
        return self.state == CircuitState.CLOSED

    def record(self, response: ProviderResponse) -> None:
        if self.is_open:
            return
        if not response.success and response.error_kind == ProviderErrorKind.AUTHORIZATION:
            self.consecutive_failures += 1
            if self.consecutive_failures >= self.threshold:
                self.state = CircuitState.TRIPPED
                logger.warning(
                    "Circuit tripped, provider disabled for this run",
                    provider=self.provider,
                    failures=self.consecutive_failures,
                )
        else:
            self.consecutive_failures = 0

    def to_dict(self) -> dict:
        return {"state": self.state.value, "consecutive_failures": self.consecutive_failures}
