"""Recurring job entrypoints for the subscription and token lifecycle."""

__all__ = [
    "invitations",
    "maintenance",
    "subscriptions",
    "tokens",
]
