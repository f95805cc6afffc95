"""
Deterministic addresses for ledger records.

address = sha256( len(seed_i) || seed_i ... || program_id || marker ).hex()

The same (program_id, seeds) always maps to the same 64-hex address, so a
depositor's ledger is found from the depositor identity alone, without a
registry. Seeds are length-prefixed: ("ab", "c") and ("a", "bc") differ.
"""
from __future__ import annotations

import hashlib
from typing import Union

import deal

Seed = Union[str, bytes]

MAX_SEEDS = 16
MAX_SEED_LEN = 64
_MARKER = b"DerivedLedgerAddress"


def _seed_bytes(seed: Seed) -> bytes:
    return seed if isinstance(seed, bytes) else seed.encode("utf-8")


def _seeds_ok(seeds: tuple) -> bool:
    if not 1 <= len(seeds) <= MAX_SEEDS:
        return False
    for s in seeds:
        if not isinstance(s, (str, bytes)):
            return False
        if not 0 < len(_seed_bytes(s)) <= MAX_SEED_LEN:
            return False
    return True


@deal.pre(lambda program_id, *seeds: isinstance(program_id, str) and program_id.strip() != "", message="program_id required")
@deal.pre(lambda program_id, *seeds: _seeds_ok(seeds), message="1..16 non-empty seeds of at most 64 bytes")
@deal.post(lambda result: isinstance(result, str) and len(result) == 64, message="address must be 64 hex chars")
def derive_address(program_id: str, *seeds: Seed) -> str:
    h = hashlib.sha256()
    for s in seeds:
        b = _seed_bytes(s)
        h.update(len(b).to_bytes(1, "big"))
        h.update(b)
    h.update(program_id.encode("utf-8"))
    h.update(_MARKER)
    return h.hexdigest()


def vault_address(program_id: str, vault_seed: str = "vault") -> str:
    return derive_address(program_id, vault_seed)


def depositor_ledger_address(program_id: str, owner: str, depositor_seed: str = "user_account") -> str:
    return derive_address(program_id, depositor_seed, owner)
