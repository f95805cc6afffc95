"""
Holding-account abstraction: balance-bearing accounts keyed by (owner, asset).

The vault consumes this through the HoldingBank protocol. InMemoryHoldingBank
is the in-process implementation used by the engine in tests and local runs.
"""
from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from typing import Dict, Protocol, Tuple

import deal

from infra.logging_config import get_logger
from infra.result import Err, Ok, Result
from vault import errors
from vault.authorization import Authority, ProgramSigner, VerifiedSigner
from vault.errors import VaultError
from vault.ledger import U64_MAX, is_valid_amount

logger = get_logger(__name__)


@dataclass(frozen=True)
class HoldingAccount:
    owner: str
    asset: str
    amount: int


@dataclass(frozen=True)
class AssetInfo:
    asset: str
    mint_authority: str
    decimals: int
    supply: int


class HoldingBank(Protocol):
    def create_account(self, owner: str, asset: str) -> HoldingAccount: ...

    def transfer(
        self,
        source_owner: str,
        destination_owner: str,
        asset: str,
        amount: int,
        *,
        authority: Authority,
    ) -> Result[None, VaultError]: ...

    def balance(self, owner: str, asset: str) -> int: ...

    def has_asset(self, asset: str) -> bool: ...


class InMemoryHoldingBank:
    """Thread-safe in-memory token bank. Every transfer is atomic under one lock."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._assets: Dict[str, AssetInfo] = {}
        self._accounts: Dict[Tuple[str, str], int] = {}

    # --- assets ---

    @deal.pre(lambda self, mint_authority, decimals=6: isinstance(mint_authority, str) and mint_authority.strip() != "", message="mint_authority required")
    @deal.pre(lambda self, mint_authority, decimals=6: isinstance(decimals, int) and 0 <= decimals <= 18, message="decimals must be 0..18")
    def create_asset(self, mint_authority: str, decimals: int = 6) -> str:
        asset = secrets.token_hex(32)
        with self._lock:
            self._assets[asset] = AssetInfo(asset=asset, mint_authority=mint_authority, decimals=decimals, supply=0)
        return asset

    def has_asset(self, asset: str) -> bool:
        with self._lock:
            return asset in self._assets

    def asset_info(self, asset: str) -> AssetInfo:
        with self._lock:
            return self._assets[asset]

    def mint_to(self, asset: str, owner: str, amount: int, *, authority: str) -> Result[None, VaultError]:
        if not is_valid_amount(amount):
            return Err(errors.invalid_amount(amount))
        with self._lock:
            info = self._assets.get(asset)
            if info is None:
                return Err(errors.invalid_asset(expected="<known asset>", got=asset))
            if authority != info.mint_authority:
                return Err(errors.unauthorized("only the mint authority can mint", asset=asset))
            if info.supply + amount > U64_MAX:
                return Err(errors.math_overflow(info.supply, amount))
            key = (owner, asset)
            self._accounts[key] = self._accounts.get(key, 0) + amount
            self._assets[asset] = AssetInfo(asset, info.mint_authority, info.decimals, info.supply + amount)
        return Ok(None)

    # --- accounts ---

    @deal.pre(lambda self, owner, asset: isinstance(owner, str) and owner.strip() != "", message="owner required")
    @deal.pre(lambda self, owner, asset: isinstance(asset, str) and asset.strip() != "", message="asset required")
    def create_account(self, owner: str, asset: str) -> HoldingAccount:
        """Idempotent: returns the existing account when present."""
        with self._lock:
            if asset not in self._assets:
                raise LookupError(f"UNKNOWN_ASSET:{asset}")
            key = (owner, asset)
            if key not in self._accounts:
                self._accounts[key] = 0
            return HoldingAccount(owner=owner, asset=asset, amount=self._accounts[key])

    def account(self, owner: str, asset: str) -> HoldingAccount | None:
        with self._lock:
            amount = self._accounts.get((owner, asset))
            if amount is None:
                return None
            return HoldingAccount(owner=owner, asset=asset, amount=amount)

    def balance(self, owner: str, asset: str) -> int:
        with self._lock:
            return self._accounts.get((owner, asset), 0)

    def transfer(
        self,
        source_owner: str,
        destination_owner: str,
        asset: str,
        amount: int,
        *,
        authority: Authority,
    ) -> Result[None, VaultError]:
        if not is_valid_amount(amount):
            return Err(errors.invalid_amount(amount))
        if not isinstance(authority, (VerifiedSigner, ProgramSigner)) or authority.address != source_owner:
            return Err(errors.unauthorized("transfer authority does not own the source account", source=source_owner))

        with self._lock:
            src_key = (source_owner, asset)
            dst_key = (destination_owner, asset)
            if dst_key not in self._accounts:
                raise LookupError(f"HOLDING_ACCOUNT_NOT_FOUND:{destination_owner}")
            available = self._accounts.get(src_key, 0)
            if available < amount:
                return Err(errors.insufficient_funds(source_owner, available, amount))
            self._accounts[src_key] = available - amount
            self._accounts[dst_key] += amount

        logger.debug("transfer %s -> %s amount=%s", source_owner[:12], destination_owner[:12], amount)
        return Ok(None)
