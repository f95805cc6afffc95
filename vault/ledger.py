from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

from infra.time_utils import now_utc

U64_MAX = 2**64 - 1


def is_valid_amount(amount: Any) -> bool:
    # bool is an int subclass; True must not deposit 1 token
    return isinstance(amount, int) and not isinstance(amount, bool) and 0 < amount <= U64_MAX


@dataclass(frozen=True)
class VaultLedger:
    """Singleton custody record: who configured the vault and which asset it holds."""
    address: str
    authority: str
    accepted_asset: str
    initialized: bool
    created_at: str

    @classmethod
    def new(cls, address: str, authority: str, accepted_asset: str) -> "VaultLedger":
        return cls(
            address=address,
            authority=authority,
            accepted_asset=accepted_asset,
            initialized=True,
            created_at=now_utc().isoformat(),
        )


@dataclass(frozen=True)
class DepositorLedger:
    """
    One depositor's entitlement against the pooled account.

    Invariantes:
    - 0 <= balance <= U64_MAX (checked arithmetic, never wraps).
    - version sube en cada write; un write con version vieja es un conflicto.
    - version == 0 means "not stored yet" (first deposit creates it).
    """
    address: str
    owner: str
    balance: int = 0
    version: int = 0
    updated_at: str = ""

    def __post_init__(self) -> None:
        if not 0 <= self.balance <= U64_MAX:
            raise ValueError(f"balance out of u64 range: {self.balance}")
        if self.version < 0:
            raise ValueError("version must be non-negative")

    def credited(self, amount: int) -> "DepositorLedger | None":
        """New record with balance + amount, or None on u64 overflow."""
        new_balance = self.balance + amount
        if new_balance > U64_MAX:
            return None
        return replace(self, balance=new_balance, updated_at=now_utc().isoformat())

    def debited(self, amount: int) -> "DepositorLedger | None":
        """New record with balance - amount, or None if that would underflow."""
        if amount > self.balance:
            return None
        return replace(self, balance=self.balance - amount, updated_at=now_utc().isoformat())
