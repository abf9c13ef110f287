"""
Read models of the surrounding CRM (orgs, clients, appointments, messages)
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from enum import Enum
from uuid import uuid4
from datetime import datetime

from ..clock import utcnow


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class ClientPortalStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING = "pending"


@dataclass
class Org:
    """Clinic organization"""
    id: str = field(default_factory=lambda: str(uuid4()))
    name: str = ""
    phone: Optional[str] = None
    booking_link: Optional[str] = None
    google_review_link: Optional[str] = None
    timezone: str = "UTC"
    # org-defined template tokens, e.g. {"promo_code": "GLOW20"}
    custom_variables: Dict[str, str] = field(default_factory=dict)
    active: bool = True


@dataclass
class Client:
    """Clinic client"""
    id: str = field(default_factory=lambda: str(uuid4()))
    org_id: str = ""
    full_name: str = ""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phones: List[str] = field(default_factory=list)
    email: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    portal_status: str = ClientPortalStatus.ACTIVE.value
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def primary_phone(self) -> Optional[str]:
        return self.phones[0] if self.phones else None


@dataclass
class Appointment:
    """Appointment as exposed by the appointment source"""
    id: str = field(default_factory=lambda: str(uuid4()))
    org_id: str = ""
    client_id: str = ""
    type: str = ""
    date_time: datetime = field(default_factory=utcnow)
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    provider: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Message:
    """Record of a message accepted for delivery"""
    org_id: str
    client_id: str
    channel: str
    recipient: str
    content: str
    delivery_ref: Optional[str] = None
    status: str = "sent"
    sent_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid4()))
