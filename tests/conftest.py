from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict

import pytest
from hypothesis import HealthCheck, settings

from vault.authorization import Keypair
from vault.custody import CustodyEngine
from vault.holding import InMemoryHoldingBank
from vault.store import MemoryLedgerStore, SqliteLedgerStore

# Hypothesis can get flaky on slow CI boxes; that is a perf healthcheck, not a bug.
settings.register_profile(
    "vault_stable",
    suppress_health_check=[HealthCheck.too_slow, HealthCheck.function_scoped_fixture],
    deadline=None,
)

settings.load_profile("vault_stable")

PROGRAM_ID = "token-vault-test"


@dataclass
class VaultEnv:
    """Engine + bank + an authority and a mint, the way the integration tests drive the vault."""
    engine: CustodyEngine
    bank: InMemoryHoldingBank
    authority: Keypair
    asset: str
    users: Dict[str, Keypair] = field(default_factory=dict)

    def user(self, name: str, funded: int = 100_000_000) -> Keypair:
        if name not in self.users:
            kp = Keypair.generate()
            self.bank.create_account(kp.identity, self.asset)
            if funded:
                self.bank.mint_to(self.asset, kp.identity, funded, authority=self.authority.identity).unwrap()
            self.users[name] = kp
        return self.users[name]

    def initialize(self, signer: Keypair | None = None):
        kp = signer or self.authority
        req = kp.sign_request(self.engine.program_id, "initialize", accepted_asset=self.asset)
        return self.engine.initialize(kp.identity, self.asset, request=req)

    def deposit(self, kp: Keypair, amount):
        req = kp.sign_request(self.engine.program_id, "deposit", amount=amount)
        return self.engine.deposit(kp.identity, amount, request=req)

    def withdraw(self, kp: Keypair, amount):
        req = kp.sign_request(self.engine.program_id, "withdraw", amount=amount)
        return self.engine.withdraw(kp.identity, amount, request=req)

    def ledger_balance(self, kp: Keypair) -> int | None:
        rec = self.engine.depositor_ledger(kp.identity)
        return None if rec is None else rec.balance

    def wallet(self, kp: Keypair) -> int:
        return self.bank.balance(kp.identity, self.asset)


def make_env(store) -> VaultEnv:
    bank = InMemoryHoldingBank()
    authority = Keypair.generate()
    asset = bank.create_asset(authority.identity, decimals=6)
    engine = CustodyEngine(store=store, bank=bank, program_id=PROGRAM_ID)
    return VaultEnv(engine=engine, bank=bank, authority=authority, asset=asset)


@pytest.fixture(params=["memory", "sqlite"])
def env(request, tmp_path: Path) -> VaultEnv:
    if request.param == "sqlite":
        store = SqliteLedgerStore(str(tmp_path / "ledger.db"))
    else:
        store = MemoryLedgerStore()
    return make_env(store)


@pytest.fixture
def memory_env() -> VaultEnv:
    return make_env(MemoryLedgerStore())


@pytest.fixture
def env_factory():
    """Fresh memory-backed env per call; hypothesis examples must not share state."""
    return lambda store=None: make_env(store if store is not None else MemoryLedgerStore())


@pytest.fixture
def ready_env(env: VaultEnv) -> VaultEnv:
    env.initialize().unwrap()
    return env
