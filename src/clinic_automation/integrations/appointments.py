"""
Appointment source: read access to the CRM's appointment records
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from ..clock import utcnow
from ..models.crm import Appointment, AppointmentStatus


class AppointmentSource(ABC):
    """Appointment source interface"""

    @abstractmethod
    async def get(self, appointment_id: str) -> Optional[Appointment]:
        pass

    @abstractmethod
    async def list_created_since(
        self,
        org_id: str,
        since: datetime,
        until: datetime
    ) -> List[Appointment]:
        """Scheduled appointments with since < created_at <= until, oldest first"""
        pass

    @abstractmethod
    async def list_due_for_completion(
        self,
        org_id: str,
        started_after: datetime,
        started_before: datetime
    ) -> List[Appointment]:
        """Scheduled appointments whose start time falls in the window"""
        pass

    @abstractmethod
    async def mark_completed(self, appointment_id: str) -> bool:
        """Transition scheduled -> completed; False if it was not scheduled"""
        pass

    @abstractmethod
    async def count_for_client(self, org_id: str, client_id: str) -> int:
        pass

    @abstractmethod
    async def last_appointment_date(self, org_id: str, client_id: str) -> Optional[datetime]:
        """Start time of the client's most recent completed appointment"""
        pass


class InMemoryAppointmentSource(AppointmentSource):
    """In-memory appointment source (tests and demos)"""

    def __init__(self):
        self.appointments: Dict[str, Appointment] = {}

    def add(self, appointment: Appointment) -> Appointment:
        self.appointments[appointment.id] = appointment
        return appointment

    async def get(self, appointment_id: str) -> Optional[Appointment]:
        return self.appointments.get(appointment_id)

    async def list_created_since(
        self,
        org_id: str,
        since: datetime,
        until: datetime
    ) -> List[Appointment]:
        result = [
            a for a in self.appointments.values()
            if a.org_id == org_id
            and a.status == AppointmentStatus.SCHEDULED
            and since < a.created_at <= until
        ]
        return sorted(result, key=lambda a: a.created_at)

    async def list_due_for_completion(
        self,
        org_id: str,
        started_after: datetime,
        started_before: datetime
    ) -> List[Appointment]:
        result = [
            a for a in self.appointments.values()
            if a.org_id == org_id
            and a.status == AppointmentStatus.SCHEDULED
            and started_after < a.date_time <= started_before
        ]
        return sorted(result, key=lambda a: a.date_time)

    async def mark_completed(self, appointment_id: str) -> bool:
        appointment = self.appointments.get(appointment_id)
        if appointment is None or appointment.status != AppointmentStatus.SCHEDULED:
            return False
        appointment.status = AppointmentStatus.COMPLETED
        appointment.updated_at = utcnow()
        return True

    async def count_for_client(self, org_id: str, client_id: str) -> int:
        return sum(
            1 for a in self.appointments.values()
            if a.org_id == org_id and a.client_id == client_id
        )

    async def last_appointment_date(self, org_id: str, client_id: str) -> Optional[datetime]:
        dates = [
            a.date_time for a in self.appointments.values()
            if a.org_id == org_id
            and a.client_id == client_id
            and a.status == AppointmentStatus.COMPLETED
        ]
        return max(dates) if dates else None
