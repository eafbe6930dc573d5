"""Invitation and deferred reward services."""

from .reward_queue import InvitationRewardQueue, QueuedRewardSummary, ReconcileResult, RewardGrantOutcome
from .service import InvitationAcceptance, InvitationService, generate_invitation_code

__all__ = [
    "InvitationAcceptance",
    "InvitationRewardQueue",
    "InvitationService",
    "QueuedRewardSummary",
    "ReconcileResult",
    "RewardGrantOutcome",
    "generate_invitation_code",
]
