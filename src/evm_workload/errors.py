"""Failure taxonomy for chain interaction.

Node implementations word their rejections differently (geth, erigon,
nethermind, besu all disagree), so classification works on lower-cased
substrings of the JSON-RPC error message.
"""


class ChainError(Exception):
    """Base class for anything that went wrong talking to the chain."""


class TransientNetworkError(ChainError):
    """Timeouts, connection resets, 429/5xx from the endpoint."""


class ConfirmationTimeout(ChainError):
    def __init__(self, tx_hash: str, confirmations: int, timeout: float):
        super().__init__(f"{tx_hash} not confirmed ({confirmations} blocks) within {timeout:.1f}s")
        self.tx_hash = tx_hash
        self.confirmations = confirmations
        self.timeout = timeout


class RpcError(ChainError):
    """JSON-RPC error object returned by the node."""

    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.code = code


class UnderpricedError(RpcError):
    pass


class NonceConflictError(RpcError):
    pass


class AlreadyKnownError(RpcError):
    """The node already holds this exact signed transaction."""


class InsufficientFundsError(RpcError):
    pass


class MalformedError(RpcError):
    pass


class SignatureError(RpcError):
    """Signing failed locally or the node rejected the signature."""


class TransactionReverted(ChainError):
    def __init__(self, tx_hash: str, receipt: dict):
        super().__init__(f"{tx_hash} reverted in block {receipt.get('blockNumber')}")
        self.tx_hash = tx_hash
        self.receipt = receipt


class BatchError(Exception):
    """A batch could not be dispatched at all."""


# Order matters: "replacement transaction underpriced" must win over "nonce".
_RPC_PATTERNS: tuple[tuple[tuple[str, ...], type[RpcError]], ...] = (
    (("already known", "known transaction", "alreadyknown"), AlreadyKnownError),
    (("underpriced", "too cheap", "fee too low", "less than block base fee", "gas price too low"), UnderpricedError),
    (("nonce too low", "nonce too high", "invalid nonce", "nonce has already been used", "oldnonce"), NonceConflictError),
    (("insufficient funds", "insufficient balance"), InsufficientFundsError),
    (("invalid sender", "invalid signature", "invalid transaction v, r, s"), SignatureError),
    (("invalid address", "invalid recipient", "invalid argument", "invalid params", "rlp"), MalformedError),
)


def error_from_rpc(error: dict | str) -> RpcError:
    """Map a JSON-RPC ``error`` member to the matching exception instance."""
    if isinstance(error, dict):
        message = str(error.get("message", error))
        code = error.get("code")
    else:
        message, code = str(error), None

    lowered = message.lower()
    for needles, cls in _RPC_PATTERNS:
        if any(n in lowered for n in needles):
            return cls(message, code)
    return RpcError(message, code)
