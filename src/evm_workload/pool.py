import random
from typing import Iterable, Sequence, TypeVar

from evm_workload.models import Account

T = TypeVar("T")


def peer_index(self_index: int, size: int, rng: random.Random | None = None) -> int:
    """Uniform index in ``[0, size)`` other than ``self_index``.

    Draws from ``[0, size - 2]`` and shifts anything at or above ``self_index``
    up by one, so no rejection loop is needed.
    """
    if size < 2:
        raise ValueError("need at least two members to pick a peer")
    if not 0 <= self_index < size:
        raise IndexError(f"self_index {self_index} out of range for size {size}")
    j = (rng or random).randint(0, size - 2)
    return j + 1 if j >= self_index else j


def pick_peer(members: Sequence[T], self_index: int, rng: random.Random | None = None) -> T:
    return members[peer_index(self_index, len(members), rng)]


class Pool:
    """Every generated account, in creation order. Only ever grows."""

    def __init__(self, accounts: Iterable[Account] = (), funded: Iterable[str] = ()):
        self._accounts: list[Account] = []
        self._addresses: set[str] = set()
        self._funded: set[str] = set()
        self.extend(accounts)
        self._funded.update(a for a in funded if a in self._addresses)

    def __len__(self) -> int:
        return len(self._accounts)

    def __iter__(self):
        return iter(list(self._accounts))

    def __contains__(self, address: str) -> bool:
        return address in self._addresses

    def extend(self, accounts: Iterable[Account]) -> list[Account]:
        added = []
        for a in accounts:
            if a.address in self._addresses:
                continue
            self._accounts.append(a)
            self._addresses.add(a.address)
            added.append(a)
        return added

    def mark_funded(self, addresses: Iterable[str]) -> None:
        self._funded.update(a for a in addresses if a in self._addresses)

    def is_funded(self, address: str) -> bool:
        return address in self._funded

    @property
    def funded_count(self) -> int:
        return len(self._funded)

    def accounts(self) -> list[Account]:
        return list(self._accounts)

    def funded(self) -> list[Account]:
        return [a for a in self._accounts if a.address in self._funded]

    def unfunded(self) -> list[Account]:
        return [a for a in self._accounts if a.address not in self._funded]
