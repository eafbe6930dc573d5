"""SQLAlchemy models package."""

from .activity import UserActivity  # noqa: F401
from .invitation import (  # noqa: F401
    Invitation,
    InvitationStatus,
    QueuedInvitationReward,
    QueuedRewardStatus,
)
from .plan import Plan  # noqa: F401
from .subscription import Subscription, SubscriptionProvider, SubscriptionStatus  # noqa: F401
from .task_execution import (  # noqa: F401
    SERVICE_START_TASK_ID,
    SchedulerLease,
    TaskExecutionRecord,
    TaskExecutionStatus,
)
from .token_ledger import TokenLedgerEntry, TokenType  # noqa: F401
from .user import User, UserStatusEnum  # noqa: F401
