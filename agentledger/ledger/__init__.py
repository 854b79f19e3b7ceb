from agentledger.ledger.gateway import (
    FeedbackEntry,
    LedgerError,
    LedgerGateway,
    LedgerNotFound,
    LedgerRejected,
    LedgerTimeout,
    RegistryEntry,
    ReputationTally,
    call_with_timeout,
)
from agentledger.ledger.memory import InMemoryLedger
from agentledger.ledger.http import HttpLedgerGateway

__all__ = [
    "FeedbackEntry",
    "HttpLedgerGateway",
    "InMemoryLedger",
    "LedgerError",
    "LedgerGateway",
    "LedgerNotFound",
    "LedgerRejected",
    "LedgerTimeout",
    "RegistryEntry",
    "ReputationTally",
    "call_with_timeout",
]
