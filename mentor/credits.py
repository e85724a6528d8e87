"""
Spark ledger: the spendable balance debited for every message.

Free users pay more per message and are refilled daily; pro users pay less
and are refilled monthly. Refills only top the balance up to the tier cap.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional

from .schemas import LedgerState, Tier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreditPolicy:
    """Per-tier costs, caps and refill windows."""

    free_cost: int = 2
    pro_cost: int = 1
    free_cap: int = 10
    pro_cap: int = 999
    refill_windows: Dict[Tier, timedelta] = field(
        default_factory=lambda: {
            Tier.FREE: timedelta(hours=24),
            Tier.PRO: timedelta(days=30),
        }
    )

    def cost_for(self, tier: Tier) -> int:
        return self.pro_cost if tier == Tier.PRO else self.free_cost

    def cap_for(self, tier: Tier) -> int:
        return self.pro_cap if tier == Tier.PRO else self.free_cap

    def window_for(self, tier: Tier) -> timedelta:
        return self.refill_windows[tier]


class CreditLedger:
    """Holds the spark balance and applies the refill policy."""

    def __init__(
        self,
        policy: Optional[CreditPolicy] = None,
        tier: Tier = Tier.FREE,
        balance: int = 0,
        last_refill_at: Optional[datetime] = None,
    ) -> None:
        if balance < 0:
            raise ValueError("Balance cannot be negative")
        self.policy = policy or CreditPolicy()
        self.tier = tier
        self.balance = balance
        self.last_refill_at = last_refill_at

    @property
    def cost(self) -> int:
        """Sparks charged for one message at the current tier."""
        return self.policy.cost_for(self.tier)

    @property
    def cap(self) -> int:
        return self.policy.cap_for(self.tier)

    def try_debit(self, cost: Optional[int] = None) -> bool:
        """
        Subtract ``cost`` sparks if the balance covers it.

        Returns False without touching the balance otherwise; the balance is
        never clamped.
        """
        amount = self.cost if cost is None else cost
        if amount < 0:
            raise ValueError("Cost cannot be negative")
        if self.balance < amount:
            logger.info(
                "Debit rejected: balance %s below cost %s", self.balance, amount
            )
            return False
        self.balance -= amount
        return True

    def refund(self, amount: int) -> None:
        """Give back sparks taken by an earlier debit."""
        if amount < 0:
            raise ValueError("Refund cannot be negative")
        self.balance += amount

    def tick(self, now: datetime) -> bool:
        """
        Apply a refill if the tier's window has elapsed.

        Safe to call on every read. Returns True when the balance changed.
        """
        if self.last_refill_at is None:
            # First sight of this user: start the window and fill up.
            self.last_refill_at = now
            self.balance = max(self.balance, self.cap)
            return True

        if now - self.last_refill_at < self.policy.window_for(self.tier):
            return False

        self.last_refill_at = now
        if self.balance >= self.cap:
            return False
        logger.info("Refilling %s sparks: %s -> %s", self.tier.value, self.balance, self.cap)
        self.balance = self.cap
        return True

    def change_tier(self, tier: Tier, now: datetime) -> None:
        """Switch tier with a one-time top-up to the new cap."""
        if tier == self.tier:
            return
        self.tier = tier
        self.balance = max(self.balance, self.cap)
        self.last_refill_at = now
        logger.info("Tier changed to %s, balance %s", tier.value, self.balance)

    # -------------------------------------------------------------------------
    # Snapshot
    # -------------------------------------------------------------------------

    def to_state(self) -> LedgerState:
        return LedgerState(
            balance=self.balance, last_refill_at=self.last_refill_at, tier=self.tier
        )

    @classmethod
    def from_state(
        cls, state: LedgerState, policy: Optional[CreditPolicy] = None
    ) -> "CreditLedger":
        return cls(
            policy=policy,
            tier=state.tier,
            balance=state.balance,
            last_refill_at=state.last_refill_at,
        )
