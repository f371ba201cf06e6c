"""Failure classification and delay-before-retry."""

import random
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

import evm_workload.constants as C
from evm_workload.constants import Disposition
from evm_workload.errors import (
    ChainError,
    ConfirmationTimeout,
    NonceConflictError,
    TransientNetworkError,
    UnderpricedError,
)

RETRYABLE_ERRORS: tuple[type[ChainError], ...] = (
    UnderpricedError,
    TransientNetworkError,
    ConfirmationTimeout,
    NonceConflictError,
)


class Backoff(Protocol):
    def delay(self, attempt: int) -> float: ...


@dataclass(frozen=True)
class FixedBackoff:
    seconds: float = C.RETRY_DELAY

    def delay(self, attempt: int) -> float:
        return self.seconds


@dataclass(frozen=True)
class ExponentialBackoff:
    """min(base * 2**attempt, cap) + uniform(0, jitter)"""

    base: float = 1.0
    cap: float = 10.0
    jitter: float = 1.0

    def delay(self, attempt: int) -> float:
        return min(self.base * 2**attempt, self.cap) + random.uniform(0, self.jitter)


class RetryPolicy:
    def __init__(self, max_retries: int = C.DEFAULT_MAX_RETRIES, backoff: Backoff | None = None):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.max_retries = max_retries
        self.backoff = backoff or FixedBackoff()

    @classmethod
    def from_config(cls, section: Mapping[str, Any], *, max_retries: int | None = None) -> "RetryPolicy":
        strategy = section.get("strategy", "fixed")
        if strategy == "exponential":
            backoff = ExponentialBackoff(
                base=float(section.get("base", 1.0)),
                cap=float(section.get("cap", 10.0)),
                jitter=float(section.get("jitter", 1.0)),
            )
        elif strategy == "fixed":
            backoff = FixedBackoff(float(section.get("delay", C.RETRY_DELAY)))
        else:
            raise ValueError(f"Unknown retry strategy {strategy!r}")
        if max_retries is None:
            max_retries = int(section.get("max_retries", C.DEFAULT_MAX_RETRIES))
        return cls(max_retries=max_retries, backoff=backoff)

    @staticmethod
    def is_retryable(error: BaseException) -> bool:
        return isinstance(error, RETRYABLE_ERRORS)

    def classify(self, error: BaseException, failures: int = 1) -> Disposition:
        """``failures`` counts retryable failures of this request so far, this one included."""
        if not self.is_retryable(error):
            return Disposition.TERMINAL
        if failures > self.max_retries:
            return Disposition.TERMINAL
        return Disposition.RETRYABLE

    def next_delay(self, attempt: int) -> float:
        return self.backoff.delay(attempt)
