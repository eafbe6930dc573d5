"""Run the subscription expiration sweep once.

Intended usage: manual invocation during incident response, or from an
external cron when the in-process scheduler is disabled.

Example:
    python tooling/scripts/run_subscription_sweep.py --include-tokens
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Any

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Expire due subscriptions once")
    parser.add_argument(
        "--include-tokens",
        action="store_true",
        help="Also compensate expired subscription tokens after the sweep.",
    )
    parser.add_argument(
        "--reconcile-rewards",
        action="store_true",
        help="Also activate queued invitation rewards for users left without a paid plan.",
    )
    return parser.parse_args()


async def _run(include_tokens: bool, reconcile_rewards: bool) -> dict[str, Any]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from tokenlife_api.db.session import async_session  # type: ignore import-position
    from tokenlife_api.jobs.invitations import run_queued_reward_reconciliation  # type: ignore import-position
    from tokenlife_api.jobs.subscriptions import run_subscription_expiration_sweep  # type: ignore import-position
    from tokenlife_api.jobs.tokens import run_token_expiration_sweep  # type: ignore import-position

    summary: dict[str, Any] = {
        "subscriptions": await run_subscription_expiration_sweep(session_factory=async_session),
    }
    if include_tokens:
        summary["tokens"] = await run_token_expiration_sweep(session_factory=async_session)
    if reconcile_rewards:
        summary["rewards"] = await run_queued_reward_reconciliation(session_factory=async_session)
    return summary


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.include_tokens, args.reconcile_rewards))
    subscriptions = summary["subscriptions"]
    logger.success(
        "Subscription sweep completed",
        processed=subscriptions.get("processed", 0),
        failed=subscriptions.get("failed", 0),
        tokens_removed=subscriptions.get("tokens_removed", 0),
    )
    return 1 if subscriptions.get("failed", 0) else 0


if __name__ == "__main__":
    sys.exit(main())
