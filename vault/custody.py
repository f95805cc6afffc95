"""
Custody engine: initialize / deposit / withdraw over the vault ledgers.

Reglas:
- Autorización primero; después precondiciones; nada se muta si alguna falla.
- El write del ledger y el transfer del pool viven en la misma transacción:
  se hace stage del write, se mueve el dinero, se hace commit. Si el transfer
  falla se hace rollback; si el commit falla se revierte el transfer.
- Todas las operaciones regresan Result, nunca rompen con excepción por
  rechazos de dominio.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from infra.logging_config import get_logger, log_kv, setup_logging
from infra.result import Err, Ok, Result
from infra.settings import Settings
from vault import errors
from vault.addressing import depositor_ledger_address, vault_address
from vault.authorization import Authority, Authorizer, ProgramSigner, SignedRequest, VerifiedSigner
from vault.errors import VaultError
from vault.holding import HoldingBank, InMemoryHoldingBank
from vault.journal import CustodyJournal
from vault.ledger import DepositorLedger, VaultLedger, is_valid_amount
from vault.store import ConflictError, LedgerStore, LedgerTransaction, MemoryLedgerStore, SqliteLedgerStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class _Move:
    """A transfer already executed inside an open transaction, and how to undo it."""
    source: str
    destination: str
    asset: str
    amount: int
    reverse_authority: Authority


TxBody = Callable[[LedgerTransaction, List[_Move]], Result[DepositorLedger, VaultError]]


class CustodyEngine:
    def __init__(
        self,
        *,
        store: LedgerStore,
        bank: HoldingBank,
        program_id: str = "token-vault",
        vault_seed: str = "vault",
        depositor_seed: str = "user_account",
        authorizer: Optional[Authorizer] = None,
        journal: Optional[CustodyJournal] = None,
        max_conflict_retries: int = 3,
    ) -> None:
        self._store = store
        self._bank = bank
        self._program_id = program_id
        self._depositor_seed = depositor_seed
        self._vault_address = vault_address(program_id, vault_seed)
        # capability over the pooled account; never handed to callers
        self._signer = ProgramSigner(program_id=program_id, seeds=(vault_seed,))
        self._authorizer = authorizer or Authorizer(program_id=program_id, nonces=store)
        self._journal = journal
        self._max_conflict_retries = max_conflict_retries

    # ----------------------
    # LECTURAS
    # ----------------------

    @property
    def program_id(self) -> str:
        return self._program_id

    @property
    def vault_address(self) -> str:
        return self._vault_address

    def depositor_address(self, depositor: str) -> str:
        return depositor_ledger_address(self._program_id, depositor, self._depositor_seed)

    def vault_ledger(self) -> Optional[VaultLedger]:
        return self._store.get_vault(self._vault_address)

    def depositor_ledger(self, depositor: str) -> Optional[DepositorLedger]:
        return self._store.get_depositor(self.depositor_address(depositor))

    def pooled_balance(self) -> int:
        vault = self.vault_ledger()
        if vault is None:
            return 0
        return self._bank.balance(self._vault_address, vault.accepted_asset)

    def total_entitlements(self) -> int:
        return sum(r.balance for r in self._store.iter_depositors())

    def reconcile(self) -> Result[int, VaultError]:
        """
        Sum of depositor balances vs. the pooled account.
        Meaningful when no operation is in flight.
        """
        entitlements = self.total_entitlements()
        pooled = self.pooled_balance()
        if entitlements != pooled:
            logger.error(
                "Ledger desync detected",
                extra={"extra_data": {"entitlements": entitlements, "pooled": pooled}},
            )
            return Err(errors.ledger_desync(entitlements, pooled))
        return Ok(pooled)

    # ----------------------
    # OPERACIONES PRINCIPALES
    # ----------------------

    def initialize(self, authority: str, accepted_asset: str, *, request: SignedRequest) -> Result[VaultLedger, VaultError]:
        auth = self._authorizer.authorize(request, authority, "initialize", {"accepted_asset": accepted_asset})
        if isinstance(auth, Err):
            return self._reject("initialize", auth.error)

        if not self._bank.has_asset(accepted_asset):
            return self._reject("initialize", errors.invalid_asset(expected="<known asset>", got=accepted_asset))

        record = VaultLedger.new(self._vault_address, authority, accepted_asset)
        if not self._store.insert_vault(record):
            return self._reject("initialize", errors.already_initialized(self._vault_address))

        self._bank.create_account(self._vault_address, accepted_asset)
        self._accepted("initialize", authority, {"vault": self._vault_address, "accepted_asset": accepted_asset})
        return Ok(record)

    def deposit(
        self,
        depositor: str,
        amount: int,
        *,
        request: SignedRequest,
        asset: Optional[str] = None,
    ) -> Result[DepositorLedger, VaultError]:
        params: Dict[str, Any] = {"amount": amount}
        if asset is not None:
            params["asset"] = asset
        auth = self._authorizer.authorize(request, depositor, "deposit", params)
        if isinstance(auth, Err):
            return self._reject("deposit", auth.error)

        vault = self.vault_ledger()
        if vault is None or not vault.initialized:
            return self._reject("deposit", errors.not_initialized())
        if not is_valid_amount(amount):
            return self._reject("deposit", errors.invalid_amount(amount))
        if asset is not None and asset != vault.accepted_asset:
            return self._reject("deposit", errors.invalid_asset(expected=vault.accepted_asset, got=asset))

        signer = auth.unwrap()
        address = self.depositor_address(depositor)

        def body(tx: LedgerTransaction, moves: List[_Move]) -> Result[DepositorLedger, VaultError]:
            current = tx.get_depositor(address) or DepositorLedger(address=address, owner=depositor)
            if current.owner != depositor:
                tx.rollback()
                return Err(errors.unauthorized("ledger record belongs to another depositor", address=address))

            credited = current.credited(amount)
            if credited is None:
                tx.rollback()
                return Err(errors.math_overflow(current.balance, amount))

            self._bank.create_account(self._vault_address, vault.accepted_asset)
            stored = tx.put_depositor(credited)
            moved = self._bank.transfer(depositor, self._vault_address, vault.accepted_asset, amount, authority=signer)
            if isinstance(moved, Err):
                tx.rollback()
                return Err(moved.error)
            moves.append(_Move(depositor, self._vault_address, vault.accepted_asset, amount, reverse_authority=self._signer))
            return Ok(stored)

        result = self._run("deposit", address, body)
        if isinstance(result, Err):
            return self._reject("deposit", result.error)

        self._accepted("deposit", depositor, {"amount": amount, "balance": result.value.balance})
        return result

    def withdraw(self, depositor: str, amount: int, *, request: SignedRequest) -> Result[DepositorLedger, VaultError]:
        auth = self._authorizer.authorize(request, depositor, "withdraw", {"amount": amount})
        if isinstance(auth, Err):
            return self._reject("withdraw", auth.error)

        vault = self.vault_ledger()
        if vault is None or not vault.initialized:
            return self._reject("withdraw", errors.not_initialized())
        if not is_valid_amount(amount):
            return self._reject("withdraw", errors.invalid_amount(amount))

        address = self.depositor_address(depositor)
        asset = vault.accepted_asset

        def body(tx: LedgerTransaction, moves: List[_Move]) -> Result[DepositorLedger, VaultError]:
            current = tx.get_depositor(address)
            if current is None:
                tx.rollback()
                return Err(errors.insufficient_balance(depositor, 0, amount))
            if current.owner != depositor:
                tx.rollback()
                return Err(errors.unauthorized("ledger record belongs to another depositor", address=address))

            # checked against the ledger, not the pool: the pool also holds other depositors' funds
            debited = current.debited(amount)
            if debited is None:
                tx.rollback()
                return Err(errors.insufficient_balance(depositor, current.balance, amount))

            pooled = self._bank.balance(self._vault_address, asset)
            if pooled < amount:
                tx.rollback()
                return Err(errors.insufficient_vault_balance(pooled, amount))

            self._bank.create_account(depositor, asset)
            stored = tx.put_depositor(debited)
            moved = self._bank.transfer(self._vault_address, depositor, asset, amount, authority=self._signer)
            if isinstance(moved, Err):
                tx.rollback()
                return Err(moved.error)
            moves.append(_Move(self._vault_address, depositor, asset, amount, reverse_authority=VerifiedSigner(depositor)))
            return Ok(stored)

        result = self._run("withdraw", address, body)
        if isinstance(result, Err):
            return self._reject("withdraw", result.error)

        self._accepted("withdraw", depositor, {"amount": amount, "balance": result.value.balance})
        return result

    # ----------------------
    # INTERNOS
    # ----------------------

    def _run(self, op: str, address: str, body: TxBody) -> Result[DepositorLedger, VaultError]:
        attempts = 0
        while True:
            attempts += 1
            moves: List[_Move] = []
            try:
                with self._store.transaction(address) as tx:
                    result = body(tx, moves)
                return result
            except ConflictError as exc:
                self._compensate(op, moves)
                if attempts > self._max_conflict_retries:
                    return Err(errors.conflict(address, attempts))
                log_kv(logger, "Ledger conflict, retrying", logging.WARNING, op=op, attempt=attempts, error=str(exc))
            except Exception:
                self._compensate(op, moves)
                raise

    def _compensate(self, op: str, moves: List[_Move]) -> None:
        for m in reversed(moves):
            undo = self._bank.transfer(m.destination, m.source, m.asset, m.amount, authority=m.reverse_authority)
            if isinstance(undo, Err):
                logger.critical(
                    "Compensating transfer failed",
                    extra={"extra_data": {"op": op, "amount": m.amount, "error": str(undo.error)}},
                )
                raise RuntimeError(f"COMPENSATION_FAILED:{op}:{undo.error}")
            log_kv(logger, "Transfer reverted after failed commit", logging.WARNING, op=op, amount=m.amount)

    def _reject(self, op: str, error: VaultError) -> Err:
        log_kv(logger, "Custody operation rejected", logging.WARNING, op=op, code=error.code.value, **error.context)
        return Err(error)

    def _accepted(self, op: str, actor: str, data: Dict[str, Any]) -> None:
        log_kv(logger, "Custody operation committed", op=op, actor=actor, **data)
        if self._journal is None:
            return
        # the operation is already committed at this point
        try:
            self._journal.append(op, actor, data)
        except OSError as exc:
            logger.error(
                "Custody journal append failed",
                extra={"extra_data": {"op": op, "actor": actor, "error": str(exc), **data}},
            )


def build_engine(settings: Settings, bank: Optional[HoldingBank] = None) -> CustodyEngine:
    """Wire store/bank/journal from settings. Without a bank, an in-memory one is used."""
    setup_logging(settings)

    if settings.storage.backend == "sqlite":
        store: LedgerStore = SqliteLedgerStore(settings.storage.sqlite_path, busy_timeout_s=settings.storage.busy_timeout_s)
    else:
        store = MemoryLedgerStore(lock_timeout_s=settings.storage.busy_timeout_s)

    journal = CustodyJournal(settings.journal_path) if settings.journal_path else None

    return CustodyEngine(
        store=store,
        bank=bank if bank is not None else InMemoryHoldingBank(),
        program_id=settings.program_id,
        vault_seed=settings.vault_seed,
        depositor_seed=settings.depositor_seed,
        journal=journal,
        max_conflict_retries=settings.max_conflict_retries,
    )
