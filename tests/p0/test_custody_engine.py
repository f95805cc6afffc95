from __future__ import annotations

from infra.result import Err, Ok
from vault.authorization import Keypair, ProgramSigner
from vault.custody import CustodyEngine
from vault.errors import VaultErrorCode
from vault.ledger import U64_MAX
from vault.store import SqliteLedgerStore


def test_initialize_once(env) -> None:
    r = env.initialize()
    assert isinstance(r, Ok)
    ledger = env.engine.vault_ledger()
    assert ledger is not None
    assert ledger.initialized is True
    assert ledger.authority == env.authority.identity
    assert ledger.accepted_asset == env.asset
    assert env.bank.account(env.engine.vault_address, env.asset) is not None


def test_second_initialize_rejected_and_state_unchanged(env) -> None:
    env.initialize().unwrap()
    before = env.engine.vault_ledger()

    r = env.initialize()
    assert isinstance(r, Err)
    assert r.error.code == VaultErrorCode.ALREADY_INITIALIZED
    assert env.engine.vault_ledger() == before

    # a different caller cannot take over the vault either
    intruder = Keypair.generate()
    r2 = env.initialize(signer=intruder)
    assert r2.error.code == VaultErrorCode.ALREADY_INITIALIZED
    assert env.engine.vault_ledger().authority == env.authority.identity


def test_initialize_unknown_asset_rejected(env) -> None:
    kp = env.authority
    req = kp.sign_request(env.engine.program_id, "initialize", accepted_asset="not-a-mint")
    r = env.engine.initialize(kp.identity, "not-a-mint", request=req)
    assert r.error.code == VaultErrorCode.INVALID_ASSET
    assert env.engine.vault_ledger() is None


def test_initialize_signed_by_someone_else_is_unauthorized(env) -> None:
    other = Keypair.generate()
    req = other.sign_request(env.engine.program_id, "initialize", accepted_asset=env.asset)
    r = env.engine.initialize(env.authority.identity, env.asset, request=req)
    assert r.error.code == VaultErrorCode.UNAUTHORIZED
    assert env.engine.vault_ledger() is None


def test_operations_before_initialize_fail(env) -> None:
    u = env.user("u1")
    d = env.deposit(u, 10)
    w = env.withdraw(u, 10)
    assert d.error.code == VaultErrorCode.VAULT_NOT_INITIALIZED
    assert w.error.code == VaultErrorCode.VAULT_NOT_INITIALIZED
    assert env.engine.depositor_ledger(u.identity) is None
    assert env.wallet(u) == 100_000_000


def test_multi_user_trace(ready_env) -> None:
    env = ready_env
    u1, u2 = env.user("user1"), env.user("user2")

    env.deposit(u1, 30_000_000).unwrap()
    assert env.ledger_balance(u1) == 30_000_000

    env.withdraw(u1, 10_000_000).unwrap()
    assert env.ledger_balance(u1) == 20_000_000

    env.deposit(u2, 40_000_000).unwrap()
    assert env.ledger_balance(u2) == 40_000_000

    env.deposit(u1, 20_000_000).unwrap()
    assert env.ledger_balance(u1) == 40_000_000

    env.withdraw(u2, 30_000_000).unwrap()
    assert env.ledger_balance(u2) == 10_000_000

    env.withdraw(u1, 20_000_000).unwrap()
    assert env.ledger_balance(u1) == 20_000_000

    assert env.engine.pooled_balance() == 30_000_000
    assert env.engine.total_entitlements() == 30_000_000
    assert env.engine.reconcile() == Ok(30_000_000)
    assert env.wallet(u1) == 80_000_000
    assert env.wallet(u2) == 90_000_000


def test_depositor_isolation(ready_env) -> None:
    env = ready_env
    a, b = env.user("a"), env.user("b")
    env.deposit(a, 30).unwrap()
    env.deposit(b, 40).unwrap()
    assert env.engine.pooled_balance() == 70

    r = env.withdraw(a, 40)
    assert r.error.code == VaultErrorCode.INSUFFICIENT_BALANCE
    assert env.engine.pooled_balance() == 70
    assert env.ledger_balance(a) == 30
    assert env.ledger_balance(b) == 40


def test_withdraw_without_record_is_insufficient_balance(ready_env) -> None:
    env = ready_env
    env.deposit(env.user("a"), 50).unwrap()
    stranger = env.user("stranger")
    r = env.withdraw(stranger, 1)
    assert r.error.code == VaultErrorCode.INSUFFICIENT_BALANCE
    assert env.engine.depositor_ledger(stranger.identity) is None


def test_withdraw_signed_by_other_user_rejected(ready_env) -> None:
    env = ready_env
    victim, thief = env.user("victim"), env.user("thief")
    env.deposit(victim, 1_000).unwrap()

    req = thief.sign_request(env.engine.program_id, "withdraw", amount=500)
    r = env.engine.withdraw(victim.identity, 500, request=req)
    assert r.error.code == VaultErrorCode.UNAUTHORIZED
    assert env.ledger_balance(victim) == 1_000
    assert env.wallet(thief) == 100_000_000


def test_authority_cannot_withdraw_for_depositor(ready_env) -> None:
    env = ready_env
    u = env.user("u")
    env.deposit(u, 1_000).unwrap()
    req = env.authority.sign_request(env.engine.program_id, "withdraw", amount=1_000)
    r = env.engine.withdraw(u.identity, 1_000, request=req)
    assert r.error.code == VaultErrorCode.UNAUTHORIZED
    assert env.engine.pooled_balance() == 1_000


def test_deposit_on_behalf_of_another_rejected(ready_env) -> None:
    env = ready_env
    payer, other = env.user("payer"), env.user("other")
    req = payer.sign_request(env.engine.program_id, "deposit", amount=10)
    r = env.engine.deposit(other.identity, 10, request=req)
    assert r.error.code == VaultErrorCode.UNAUTHORIZED
    assert env.engine.depositor_ledger(other.identity) is None


def test_invalid_amounts(ready_env) -> None:
    env = ready_env
    u = env.user("u")
    env.deposit(u, 5).unwrap()
    for bad in (0, -1, U64_MAX + 1, True, 1.5):
        assert env.deposit(u, bad).error.code == VaultErrorCode.INVALID_AMOUNT
        assert env.withdraw(u, bad).error.code == VaultErrorCode.INVALID_AMOUNT
    assert env.ledger_balance(u) == 5


def test_insufficient_funds_leaves_no_record(ready_env) -> None:
    env = ready_env
    poor = env.user("poor", funded=10)
    r = env.deposit(poor, 11)
    assert r.error.code == VaultErrorCode.INSUFFICIENT_FUNDS
    assert env.engine.depositor_ledger(poor.identity) is None
    assert env.wallet(poor) == 10
    assert env.engine.pooled_balance() == 0


def test_insufficient_funds_keeps_existing_balance(ready_env) -> None:
    env = ready_env
    u = env.user("u", funded=100)
    env.deposit(u, 60).unwrap()
    r = env.deposit(u, 41)
    assert r.error.code == VaultErrorCode.INSUFFICIENT_FUNDS
    assert env.ledger_balance(u) == 60
    assert env.engine.pooled_balance() == 60


def test_deposit_wrong_asset_rejected(ready_env) -> None:
    env = ready_env
    u = env.user("u")
    other_asset = env.bank.create_asset(env.authority.identity)
    req = u.sign_request(env.engine.program_id, "deposit", amount=10, asset=other_asset)
    r = env.engine.deposit(u.identity, 10, request=req, asset=other_asset)
    assert r.error.code == VaultErrorCode.INVALID_ASSET

    req_ok = u.sign_request(env.engine.program_id, "deposit", amount=10, asset=env.asset)
    assert env.engine.deposit(u.identity, 10, request=req_ok, asset=env.asset).is_ok()


def test_zero_balance_record_is_kept(ready_env) -> None:
    env = ready_env
    u = env.user("u")
    env.deposit(u, 25).unwrap()
    rec = env.withdraw(u, 25).unwrap()
    assert rec.balance == 0
    stored = env.engine.depositor_ledger(u.identity)
    assert stored is not None
    assert stored.balance == 0
    assert env.withdraw(u, 1).error.code == VaultErrorCode.INSUFFICIENT_BALANCE


def test_replayed_request_rejected(ready_env) -> None:
    env = ready_env
    u = env.user("u")
    req = u.sign_request(env.engine.program_id, "deposit", amount=10)
    assert env.engine.deposit(u.identity, 10, request=req).is_ok()
    again = env.engine.deposit(u.identity, 10, request=req)
    assert again.error.code == VaultErrorCode.UNAUTHORIZED
    assert env.ledger_balance(u) == 10


def test_replay_rejected_by_engine_reopened_on_same_database(env_factory, tmp_path) -> None:
    db = str(tmp_path / "ledger.db")
    env = env_factory(SqliteLedgerStore(db))
    env.initialize().unwrap()
    u = env.user("u")
    req = u.sign_request(env.engine.program_id, "deposit", amount=40)
    env.engine.deposit(u.identity, 40, request=req).unwrap()

    restarted = CustodyEngine(store=SqliteLedgerStore(db), bank=env.bank, program_id=env.engine.program_id)
    again = restarted.deposit(u.identity, 40, request=req)
    assert again.error.code == VaultErrorCode.UNAUTHORIZED
    assert restarted.depositor_ledger(u.identity).balance == 40
    assert restarted.reconcile() == Ok(40)

    fresh = u.sign_request(env.engine.program_id, "withdraw", amount=40)
    assert restarted.withdraw(u.identity, 40, request=fresh).is_ok()


def test_request_params_must_match_call(ready_env) -> None:
    env = ready_env
    u = env.user("u")
    req = u.sign_request(env.engine.program_id, "deposit", amount=10)
    r = env.engine.deposit(u.identity, 1_000, request=req)
    assert r.error.code == VaultErrorCode.UNAUTHORIZED

    w = u.sign_request(env.engine.program_id, "deposit", amount=10)
    r2 = env.engine.withdraw(u.identity, 10, request=w)
    assert r2.error.code == VaultErrorCode.UNAUTHORIZED


def test_pool_drained_externally_reports_vault_balance(memory_env) -> None:
    env = memory_env
    env.initialize().unwrap()
    u = env.user("u")
    env.deposit(u, 100).unwrap()

    # simulate a pool that lost funds outside the engine
    sink = Keypair.generate().identity
    env.bank.create_account(sink, env.asset)
    env.bank.transfer(env.engine.vault_address, sink, env.asset, 60, authority=ProgramSigner(env.engine.program_id, ("vault",))).unwrap()

    r = env.withdraw(u, 100)
    assert r.error.code == VaultErrorCode.INSUFFICIENT_VAULT_BALANCE
    assert env.ledger_balance(u) == 100
    assert env.engine.reconcile().error.code == VaultErrorCode.LEDGER_DESYNC
