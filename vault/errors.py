from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict


class VaultErrorCode(str, Enum):
    ALREADY_INITIALIZED = "ALREADY_INITIALIZED"
    VAULT_NOT_INITIALIZED = "VAULT_NOT_INITIALIZED"
    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_ASSET = "INVALID_ASSET"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    INSUFFICIENT_VAULT_BALANCE = "INSUFFICIENT_VAULT_BALANCE"
    MATH_OVERFLOW = "MATH_OVERFLOW"
    CONFLICT = "CONFLICT"
    LEDGER_DESYNC = "LEDGER_DESYNC"


@dataclass(frozen=True)
class VaultError:
    """
    Rechazo de una operación de custodia.

    Todos son terminales para el engine: el caller corrige el request
    (firma, monto, espera) y lo reenvía. `context` lleva los datos que
    explican el rechazo (montos, direcciones) para logs.
    """
    code: VaultErrorCode
    message: str
    context: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


def already_initialized(address: str) -> VaultError:
    return VaultError(VaultErrorCode.ALREADY_INITIALIZED, "vault ledger is already initialized", {"vault": address})


def not_initialized() -> VaultError:
    return VaultError(VaultErrorCode.VAULT_NOT_INITIALIZED, "vault has not been initialized")


def unauthorized(reason: str, **context: Any) -> VaultError:
    return VaultError(VaultErrorCode.UNAUTHORIZED, reason, dict(context))


def invalid_amount(amount: Any) -> VaultError:
    return VaultError(VaultErrorCode.INVALID_AMOUNT, "amount must be an integer in 1..2**64-1", {"amount": repr(amount)})


def invalid_asset(expected: str, got: str) -> VaultError:
    return VaultError(VaultErrorCode.INVALID_ASSET, "asset does not match the vault's accepted asset", {"expected": expected, "got": got})


def insufficient_funds(owner: str, available: int, requested: int) -> VaultError:
    return VaultError(
        VaultErrorCode.INSUFFICIENT_FUNDS,
        "source holding account balance is below the requested amount",
        {"owner": owner, "available": available, "requested": requested},
    )


def insufficient_balance(owner: str, balance: int, requested: int) -> VaultError:
    return VaultError(
        VaultErrorCode.INSUFFICIENT_BALANCE,
        "insufficient balance to withdraw",
        {"owner": owner, "balance": balance, "requested": requested},
    )


def insufficient_vault_balance(available: int, requested: int) -> VaultError:
    return VaultError(
        VaultErrorCode.INSUFFICIENT_VAULT_BALANCE,
        "vault does not have enough tokens",
        {"available": available, "requested": requested},
    )


def math_overflow(balance: int, amount: int) -> VaultError:
    return VaultError(VaultErrorCode.MATH_OVERFLOW, "balance would exceed the u64 range", {"balance": balance, "amount": amount})


def conflict(address: str, attempts: int) -> VaultError:
    return VaultError(VaultErrorCode.CONFLICT, "ledger record kept changing underneath the operation", {"address": address, "attempts": attempts})


def ledger_desync(entitlements: int, pooled: int) -> VaultError:
    return VaultError(
        VaultErrorCode.LEDGER_DESYNC,
        "sum of depositor balances differs from the pooled holding account",
        {"entitlements": entitlements, "pooled": pooled},
    )
