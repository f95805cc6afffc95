"""
Authorization layer.

- Keypair: Ed25519 identity; identity string = hex of the raw 32-byte public key.
- SignedRequest: operation + params + nonce signed by the caller.
- Authorizer: verifies the signature, that the signer is the claimed principal,
  that the request is for this operation/params, and that the nonce is fresh.
- ProgramSigner: the engine's own capability over addresses it derives
  (the pooled holding account). It is re-derived from seeds, never from a key.
"""
from __future__ import annotations

import json
import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Protocol, Tuple, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from infra.logging_config import get_logger
from infra.result import Err, Ok, Result
from vault import errors
from vault.addressing import derive_address
from vault.errors import VaultError
from vault.store import ConflictError, MemoryLedgerStore

logger = get_logger(__name__)


def _canonical(obj: Dict[str, Any]) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _public_key_from_identity(identity: str) -> Ed25519PublicKey:
    raw = bytes.fromhex(identity)
    if len(raw) != 32:
        raise ValueError("identity must be a 32-byte Ed25519 public key")
    return Ed25519PublicKey.from_public_bytes(raw)


@dataclass(frozen=True)
class SignedRequest:
    program_id: str
    operation: str
    signer: str
    params: Dict[str, Any]
    nonce: str
    signature: str

    def message(self) -> bytes:
        return signing_message(self.program_id, self.operation, self.signer, self.params, self.nonce)


def signing_message(program_id: str, operation: str, signer: str, params: Mapping[str, Any], nonce: str) -> bytes:
    return _canonical(
        {
            "program_id": program_id,
            "operation": operation,
            "signer": signer,
            "params": dict(params),
            "nonce": nonce,
        }
    )


class Keypair:
    """Ed25519 key pair for a user or an authority."""

    def __init__(self, private_key: Ed25519PrivateKey) -> None:
        self._private_key = private_key
        raw = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self.identity = raw.hex()

    @classmethod
    def generate(cls) -> "Keypair":
        return cls(Ed25519PrivateKey.generate())

    def sign_request(self, program_id: str, operation: str, *, nonce: str | None = None, **params: Any) -> SignedRequest:
        n = nonce or secrets.token_hex(16)
        msg = signing_message(program_id, operation, self.identity, params, n)
        sig = self._private_key.sign(msg)
        return SignedRequest(
            program_id=program_id,
            operation=operation,
            signer=self.identity,
            params=dict(params),
            nonce=n,
            signature=sig.hex(),
        )

    def __repr__(self) -> str:
        return f"Keypair(identity={self.identity[:12]}...)"


@dataclass(frozen=True)
class VerifiedSigner:
    """An identity whose signature the Authorizer has checked for one request."""
    address: str


@dataclass(frozen=True)
class ProgramSigner:
    program_id: str
    seeds: Tuple[str, ...]

    @property
    def address(self) -> str:
        return derive_address(self.program_id, *self.seeds)


Authority = Union[VerifiedSigner, ProgramSigner]


class NonceRegistry(Protocol):
    def consume_nonce(self, signer: str, nonce: str) -> bool: ...


@dataclass
class Authorizer:
    """
    Consumed (signer, nonce) pairs live in `nonces`, normally the engine's
    LedgerStore, so a restarted engine over the same store still rejects replays.
    """
    program_id: str
    nonces: NonceRegistry = field(default_factory=MemoryLedgerStore)

    def verify_signer(self, request: SignedRequest, claimed_identity: str) -> bool:
        if request.program_id != self.program_id:
            return False
        if request.signer != claimed_identity:
            return False
        try:
            public_key = _public_key_from_identity(claimed_identity)
            public_key.verify(bytes.fromhex(request.signature), request.message())
        except (ValueError, TypeError, InvalidSignature):
            return False
        return True

    def authorize(
        self,
        request: SignedRequest,
        claimed_identity: str,
        operation: str,
        params: Mapping[str, Any],
    ) -> Result[VerifiedSigner, VaultError]:
        """
        Gate for every mutating operation.

        The nonce is consumed only when everything else checks out, so a
        forged request cannot burn a legitimate signer's nonce.
        """
        if not isinstance(request, SignedRequest):
            return Err(errors.unauthorized("request is not a signed request"))
        if not self.verify_signer(request, claimed_identity):
            return Err(errors.unauthorized("signature does not belong to the claimed identity", signer=request.signer))
        if request.operation != operation:
            return Err(errors.unauthorized("request was signed for a different operation", operation=request.operation))
        if dict(request.params) != dict(params):
            return Err(errors.unauthorized("request was signed for different parameters"))

        try:
            fresh = self.nonces.consume_nonce(request.signer, request.nonce)
        except ConflictError:
            return Err(errors.conflict(request.signer, 1))
        if not fresh:
            logger.warning(
                "Replayed request rejected",
                extra={"extra_data": {"signer": request.signer, "operation": operation}},
            )
            return Err(errors.unauthorized("request nonce was already used", nonce=request.nonce))
        return Ok(VerifiedSigner(address=claimed_identity))
