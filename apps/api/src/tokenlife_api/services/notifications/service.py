"""Notification sender used by lifecycle services."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Optional, Protocol
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from tokenlife_api.core.settings import get_settings
from tokenlife_api.models.user import User

from .backend import EmailBackend, InMemoryEmailBackend, SMTPEmailBackend
from .templates import TEMPLATE_RENDERERS

NotificationPriority = Literal["low", "normal", "high"]


class NotificationSender(Protocol):
    """Fire-and-forget delivery contract consumed by the lifecycle engine."""

    async def send(
        self,
        user_id: UUID,
        template: str,
        data: dict[str, Any],
        *,
        priority: NotificationPriority = "normal",
    ) -> bool:
        ...


@dataclass
class NotificationEvent:
    """Representation of a notification that was sent."""

    user_id: UUID
    recipient: str
    template: str
    subject: str
    body_text: str
    priority: str
    data: dict[str, Any]


class NotificationService:
    """Render lifecycle templates and deliver them through an email backend."""

    def __init__(
        self,
        db_session: AsyncSession,
        backend: Optional[EmailBackend] = None,
    ) -> None:
        self._db = db_session
        self._backend = backend or self._build_default_backend()
        self._events: list[NotificationEvent] = []

    @property
    def sent_events(self) -> list[NotificationEvent]:
        """Expose events (useful for tests when using in-memory backend)."""
        return self._events

    def use_in_memory_backend(self) -> InMemoryEmailBackend:
        """Replace backend with in-memory implementation (useful for tests)."""
        backend = InMemoryEmailBackend()
        self._backend = backend
        return backend

    async def send(
        self,
        user_id: UUID,
        template: str,
        data: dict[str, Any],
        *,
        priority: NotificationPriority = "normal",
    ) -> bool:
        """Deliver a templated notification; failures are logged and reported as ``False``."""

        if self._backend is None:
            return False

        renderer = TEMPLATE_RENDERERS.get(template)
        if renderer is None:
            logger.warning("Unknown notification template", template=template, user_id=str(user_id))
            return False

        user = await self._db.get(User, user_id)
        if user is None or not user.email:
            logger.warning("Notification recipient missing", template=template, user_id=str(user_id))
            return False

        rendered = renderer(user.display_name, data)
        try:
            await self._backend.send_email(
                user.email,
                rendered.subject,
                rendered.text_body,
                body_html=rendered.html_body,
                headers={"X-Priority": priority},
            )
        except Exception as exc:
            logger.exception(
                "Notification delivery failed",
                template=template,
                user_id=str(user_id),
                error=str(exc),
            )
            return False

        self._events.append(
            NotificationEvent(
                user_id=user_id,
                recipient=user.email,
                template=template,
                subject=rendered.subject,
                body_text=rendered.text_body,
                priority=priority,
                data=dict(data),
            )
        )
        logger.info("Notification sent", template=template, user_id=str(user_id), priority=priority)
        return True

    def _build_default_backend(self) -> Optional[EmailBackend]:
        settings = get_settings()
        if not settings.smtp_host or not settings.smtp_sender_email:
            return None

        return SMTPEmailBackend(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            sender_email=settings.smtp_sender_email,
        )


__all__ = ["NotificationEvent", "NotificationPriority", "NotificationSender", "NotificationService"]
