"""Token ledger services."""

from .ledger import (
    BalanceAudit,
    ExpiredTokenRecord,
    ExpiringTokenEntry,
    ExpiringTokensSummary,
    TokenBalance,
    TokenExpirationWindow,
    TokenLedgerService,
)

__all__ = [
    "BalanceAudit",
    "ExpiredTokenRecord",
    "ExpiringTokenEntry",
    "ExpiringTokensSummary",
    "TokenBalance",
    "TokenExpirationWindow",
    "TokenLedgerService",
]
