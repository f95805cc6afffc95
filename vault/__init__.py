from .authorization import Authorizer, Keypair, ProgramSigner, SignedRequest, VerifiedSigner
from .custody import CustodyEngine, build_engine
from .errors import VaultError, VaultErrorCode
from .holding import HoldingAccount, HoldingBank, InMemoryHoldingBank
from .journal import CustodyEvent, CustodyJournal
from .ledger import U64_MAX, DepositorLedger, VaultLedger
from .store import ConflictError, MemoryLedgerStore, SqliteLedgerStore

__all__ = [
    "Authorizer",
    "Keypair",
    "ProgramSigner",
    "SignedRequest",
    "VerifiedSigner",
    "CustodyEngine",
    "build_engine",
    "VaultError",
    "VaultErrorCode",
    "HoldingAccount",
    "HoldingBank",
    "InMemoryHoldingBank",
    "CustodyEvent",
    "CustodyJournal",
    "U64_MAX",
    "DepositorLedger",
    "VaultLedger",
    "ConflictError",
    "MemoryLedgerStore",
    "SqliteLedgerStore",
]
