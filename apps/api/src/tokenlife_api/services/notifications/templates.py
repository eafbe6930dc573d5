"""Notification templates for subscription and token lifecycle events."""

from __future__ import annotations

import html
from dataclasses import dataclass
from typing import Any, Callable, Mapping


@dataclass
class RenderedTemplate:
    subject: str
    text_body: str
    html_body: str


def _greeting(name: str | None) -> str:
    return f"Hi {name or 'there'},"


def _html_from_lines(lines: list[str]) -> str:
    paragraphs = "".join(f"<p>{html.escape(line)}</p>" for line in lines if line)
    return f"<html><body>{paragraphs}</body></html>"


def _render(subject: str, lines: list[str]) -> RenderedTemplate:
    footer = ["", "Thanks,", "The Tokenlife Team"]
    text_lines = lines + footer
    return RenderedTemplate(
        subject=subject,
        text_body="\n".join(text_lines),
        html_body=_html_from_lines(text_lines),
    )


def render_subscription_expired(name: str | None, data: Mapping[str, Any]) -> RenderedTemplate:
    plan_name = data.get("plan_name") or "your plan"
    lines = [
        _greeting(name),
        "",
        f"Your {plan_name} subscription ended on {data.get('period_end', 'its renewal date')}.",
        f"{data.get('removed_tokens', 0)} subscription tokens were removed from your balance.",
    ]
    if data.get("fallback_plan_name"):
        lines.append(f"Your account is now on the {data['fallback_plan_name']} plan.")
    if data.get("reward_days"):
        lines.append(f"Your queued invitation rewards started a new {data['reward_days']}-day subscription.")
    return _render(f"Your {plan_name} subscription has ended", lines)


def render_subscription_canceled(name: str | None, data: Mapping[str, Any]) -> RenderedTemplate:
    plan_name = data.get("plan_name") or "your plan"
    if data.get("at_period_end"):
        body = f"Your {plan_name} subscription will not renew after {data.get('period_end')}."
    else:
        body = f"Your {plan_name} subscription was canceled and its remaining tokens were removed."
    return _render(f"{plan_name} subscription canceled", [_greeting(name), "", body])


def render_invitation_reward_queued(name: str | None, data: Mapping[str, Any]) -> RenderedTemplate:
    lines = [
        _greeting(name),
        "",
        f"You earned {data.get('days_to_add', 0)} days of {data.get('plan_name', 'premium access')}.",
        "It will start automatically when your current subscription ends.",
        f"Queued reward days: {data.get('total_days', data.get('days_to_add', 0))}.",
    ]
    return _render("Invitation reward saved for later", lines)


def render_invitation_subscription_granted(name: str | None, data: Mapping[str, Any]) -> RenderedTemplate:
    lines = [
        _greeting(name),
        "",
        f"Your {data.get('plan_name', 'invitation')} subscription is active for {data.get('days', 0)} days.",
        f"{data.get('tokens_granted', 0)} tokens were added to your balance.",
    ]
    return _render("Your invitation reward is active", lines)


def render_trial_started(name: str | None, data: Mapping[str, Any]) -> RenderedTemplate:
    lines = [
        _greeting(name),
        "",
        f"Your {data.get('days', 0)}-day {data.get('plan_name', 'trial')} trial has started.",
        f"It ends on {data.get('period_end')}; {data.get('tokens_granted', 0)} trial tokens are available until then.",
    ]
    return _render("Your trial has started", lines)


TemplateRenderer = Callable[[str | None, Mapping[str, Any]], RenderedTemplate]

TEMPLATE_RENDERERS: dict[str, TemplateRenderer] = {
    "subscription_expired": render_subscription_expired,
    "subscription_canceled": render_subscription_canceled,
    "invitation_reward_queued": render_invitation_reward_queued,
    "invitation_subscription_granted": render_invitation_subscription_granted,
    "trial_started": render_trial_started,
}


__all__ = ["RenderedTemplate", "TEMPLATE_RENDERERS", "TemplateRenderer"]
