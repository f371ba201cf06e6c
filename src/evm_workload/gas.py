import logging

import evm_workload.constants as C
from evm_workload.chain import ChainClient
from evm_workload.errors import ChainError

log = logging.getLogger("evm_workload.gas")


class GasPricer:
    """Premium over the node's gas price, escalated on underpriced rejections.

    All arithmetic is integer wei with truncation. Escalation uses the
    aggressive x1.5 step by default and is unbounded here; the dispatcher
    applies its own cap.
    """

    def __init__(
        self,
        client: ChainClient,
        *,
        premium_percent: int = C.DEFAULT_GAS_PREMIUM_PERCENT,
        escalation_percent: int = C.DEFAULT_GAS_ESCALATION_PERCENT,
        fallback: int = C.FALLBACK_GAS_PRICE,
    ):
        if escalation_percent <= 100:
            raise ValueError("escalation_percent must be > 100")
        self.client = client
        self.premium_percent = premium_percent
        self.escalation_percent = escalation_percent
        self.fallback = fallback

    def quote(self, base: int) -> int:
        return base * (100 + self.premium_percent) // 100

    async def current_price(self) -> int:
        try:
            base = await self.client.get_gas_price()
        except ChainError as e:
            log.warning(f"Failed to get gas price, using fallback {self.fallback} wei: {e}")
            return self.fallback
        return self.quote(base)

    def escalate(self, price: int, attempt: int) -> int:
        new = price * self.escalation_percent // 100
        log.debug("Escalating gas price %s -> %s (attempt %s)", price, new, attempt)
        return new
