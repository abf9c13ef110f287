"""
Message template variable substitution

Renders ``{{token}}`` placeholders against client, org and appointment data.
Rendering is total: missing data falls back to a safe default and tokens
that cannot be resolved are left in the text exactly as written.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..models.crm import Client, Org, Appointment


logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"\{\{([A-Za-z0-9_]+)\}\}")

DEFAULT_BUSINESS_NAME = "our clinic"
DEFAULT_BUSINESS_PHONE = "(555) 123-4567"
DEFAULT_BOOKING_LINK = "https://book.example-clinic.com"
DEFAULT_REVIEW_LINK = "https://g.page/r/YourBusinessReviewLink"

APPOINTMENT_TOKENS = ("appointment_date", "appointment_time", "appointment_type")


@dataclass
class RenderContext:
    """Data a template is rendered against"""
    client: Optional[Client] = None
    org: Optional[Org] = None
    appointment: Optional[Appointment] = None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = value if isinstance(value, str) else str(value)
    return value.strip() or None


def _org_timezone(org: Optional[Org]):
    name = getattr(org, "timezone", None) or "UTC"
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.debug(f"Unknown org timezone '{name}', rendering in UTC")
        return timezone.utc


def _local_time(moment: datetime, org: Optional[Org]) -> datetime:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(_org_timezone(org))


def client_variables(client: Optional[Client]) -> Dict[str, str]:
    full_name = _text(getattr(client, "full_name", None)) or ""
    name_parts = full_name.split()
    phones = getattr(client, "phones", None) or []

    return {
        "first_name": (
            _text(getattr(client, "first_name", None))
            or (name_parts[0] if name_parts else None)
            or "there"
        ),
        "last_name": (
            _text(getattr(client, "last_name", None))
            or " ".join(name_parts[1:])
        ),
        "client_name": full_name or "there",
        "phone": (_text(phones[0]) if phones else None) or "your phone",
        "email": _text(getattr(client, "email", None)) or "your email",
    }


def appointment_variables(
    appointment: Optional[Appointment],
    org: Optional[Org] = None
) -> Dict[str, str]:
    """Appointment tokens; empty when there is no appointment in context"""
    if appointment is None:
        return {}

    variables = {
        "appointment_type": _text(getattr(appointment, "type", None)) or "appointment",
    }
    moment = getattr(appointment, "date_time", None)
    if isinstance(moment, datetime):
        local = _local_time(moment, org)
        variables["appointment_date"] = f"{local.month}/{local.day}/{local.year}"
        variables["appointment_time"] = local.strftime("%I:%M %p")
    return variables


def org_variables(org: Optional[Org]) -> Dict[str, str]:
    return {
        "business_name": _text(getattr(org, "name", None)) or DEFAULT_BUSINESS_NAME,
        "business_phone": _text(getattr(org, "phone", None)) or DEFAULT_BUSINESS_PHONE,
        "booking_link": _text(getattr(org, "booking_link", None)) or DEFAULT_BOOKING_LINK,
        "google_review_link": (
            _text(getattr(org, "google_review_link", None)) or DEFAULT_REVIEW_LINK
        ),
    }


def build_variables(ctx: Optional[RenderContext]) -> Dict[str, str]:
    """Resolve every token available for this context"""
    ctx = ctx or RenderContext()
    variables: Dict[str, str] = {}

    # org-defined tokens never shadow the built-in vocabulary
    custom = getattr(ctx.org, "custom_variables", None) or {}
    if isinstance(custom, dict):
        for key, value in custom.items():
            if isinstance(key, str) and value is not None:
                variables[key] = value if isinstance(value, str) else str(value)

    variables.update(client_variables(ctx.client))
    variables.update(appointment_variables(ctx.appointment, ctx.org))
    variables.update(org_variables(ctx.org))
    return variables


def render(template: Any, ctx: Optional[RenderContext] = None) -> str:
    """
    Substitute template tokens.

    Args:
        template: message template, e.g. "Hi {{first_name}}!"
        ctx: client/org/appointment context

    Returns:
        Rendered text. Unknown tokens are reproduced verbatim.
    """
    if template is None:
        return ""
    text = template if isinstance(template, str) else str(template)
    if "{{" not in text:
        return text

    variables = build_variables(ctx)

    def _replace(match: "re.Match") -> str:
        value = variables.get(match.group(1))
        return match.group(0) if value is None else value

    return TOKEN_PATTERN.sub(_replace, text)
