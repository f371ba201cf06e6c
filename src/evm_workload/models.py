"""Domain data structures shared by the dispatcher and the funding loop."""

from dataclasses import dataclass, field
from typing import Any

from evm_workload.errors import ChainError


@dataclass(frozen=True, slots=True)
class Account:
    address: str
    private_key: str

    def __str__(self):
        return self.address

    def to_record(self) -> dict[str, str]:
        return {"address": self.address, "privateKey": self.private_key}

    @classmethod
    def from_record(cls, record: dict) -> "Account":
        return cls(address=record["address"], private_key=record["privateKey"])


@dataclass(slots=True)
class SendRequest:
    """One transfer intent. Retries of the same request share it."""

    sender: Account
    recipient: str
    value: int  # wei
    nonce: int | None = None
    gas_price: int | None = None  # fixed starting price, skips the quote
    max_confirmations: int = 1

    @property
    def sender_address(self) -> str:
        return self.sender.address


@dataclass(slots=True)
class Batch:
    requests: list[SendRequest]
    start_nonce: int

    def __len__(self) -> int:
        return len(self.requests)

    @property
    def nonce_range(self) -> range:
        return range(self.start_nonce, self.start_nonce + len(self.requests))


@dataclass(slots=True)
class DispatchOutcome:
    request: SendRequest
    nonce: int | None = None
    tx_hash: str | None = None
    receipt: dict[str, Any] | None = None
    error: ChainError | Exception | None = None
    attempts: int = 0
    gas_price: int | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class BatchResult:
    batch: Batch
    outcomes: list[DispatchOutcome] = field(default_factory=list)
    error: Exception | None = None

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.ok)
