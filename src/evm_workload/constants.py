from typing import Final
from enum import StrEnum

GWEI: Final = 10**9
ETHER: Final = 10**18

# Minimal cost of a plain value transfer
TRANSFER_GAS: Final = 21_000

DEFAULT_GAS_PREMIUM_PERCENT = 10  # +10% over eth_gasPrice
DEFAULT_GAS_ESCALATION_PERCENT = 150  # x1.5 per underpriced retry
FALLBACK_GAS_PRICE = 3 * GWEI
FUNDING_GAS_PRICE = 2000 * GWEI

DEFAULT_BATCH_SIZE = 100
DEFAULT_CONCURRENCY = 50
DEFAULT_MAX_RETRIES = 3
INTER_BATCH_PAUSE = 1.0
RETRY_DELAY = 1.0
CONFIRM_TIMEOUT = 30.0
CONFIRM_POLL_INTERVAL = 0.5
LANDED_CHECK_TIMEOUT = 5.0  # receipt lookup for an earlier broadcast after a nonce conflict
FUNDING_MAX_CONFIRMATIONS = 3

ROUND_PAUSE = 5.0
LOOP_COOLDOWN = 10.0

RPC_TIMEOUT = 10.0


class LoopState(StrEnum):
    IDLE            = "IDLE"
    GENERATING      = "GENERATING"
    INITIAL_FUNDING = "INITIAL_FUNDING"
    REDISTRIBUTING  = "REDISTRIBUTING"
    STOPPED         = "STOPPED"


class DispatchPolicy(StrEnum):
    SEQUENTIAL       = "sequential"
    BOUNDED_PARALLEL = "bounded_parallel"


class Disposition(StrEnum):
    RETRYABLE = "RETRYABLE"
    TERMINAL  = "TERMINAL"


__all__ = [
    "CONFIRM_POLL_INTERVAL",
    "CONFIRM_TIMEOUT",
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_CONCURRENCY",
    "DEFAULT_GAS_ESCALATION_PERCENT",
    "DEFAULT_GAS_PREMIUM_PERCENT",
    "DEFAULT_MAX_RETRIES",
    "ETHER",
    "FALLBACK_GAS_PRICE",
    "FUNDING_GAS_PRICE",
    "FUNDING_MAX_CONFIRMATIONS",
    "GWEI",
    "INTER_BATCH_PAUSE",
    "LANDED_CHECK_TIMEOUT",
    "LOOP_COOLDOWN",
    "RETRY_DELAY",
    "ROUND_PAUSE",
    "RPC_TIMEOUT",
    "TRANSFER_GAS",

    ######
    "DispatchPolicy",
    "Disposition",
    "LoopState",
]
