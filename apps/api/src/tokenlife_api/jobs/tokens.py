"""Token expiration sweep job."""

from __future__ import annotations

from typing import Any, Dict

from loguru import logger

from tokenlife_api.core.clock import Clock
from tokenlife_api.db.session import SessionFactory, ensure_session
from tokenlife_api.services.tokens import TokenLedgerService


async def run_token_expiration_sweep(
    *,
    session_factory: SessionFactory,
    clock: Clock | None = None,
) -> Dict[str, Any]:
    """Compensate subscription token credits whose expiry has passed."""

    session = await ensure_session(session_factory)
    async with session as managed_session:
        ledger = TokenLedgerService(managed_session, clock=clock)
        try:
            records = await ledger.sweep_expired()
            await managed_session.commit()
        except Exception:
            await managed_session.rollback()
            raise

    summary = {
        "entries_expired": len(records),
        "tokens_removed": sum(record.compensated_amount for record in records),
        "users_affected": len({record.user_id for record in records}),
    }
    logger.bind(summary=summary).info("Token expiration sweep completed")
    return summary


__all__ = ["run_token_expiration_sweep"]
