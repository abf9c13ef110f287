"""
Load orgs, clients and appointments into the in-memory CRM stores

Used by the development server and the CLI when no CRM backend is wired in.
"""
import logging
from dataclasses import fields
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Union

import yaml

from ..clock import as_naive_utc
from ..models.crm import Org, Client, Appointment, AppointmentStatus
from .appointments import InMemoryAppointmentSource
from .clients import InMemoryClientStore, InMemoryOrgStore


logger = logging.getLogger(__name__)


def _datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return as_naive_utc(value)
    return as_naive_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


def _build(cls, data: Dict[str, Any]):
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        logger.warning(f"Ignoring unknown {cls.__name__} fields: {', '.join(sorted(unknown))}")
    return cls(**{k: v for k, v in data.items() if k in known})


def load_crm_fixtures(
    source: Union[str, Path],
    orgs: InMemoryOrgStore,
    clients: InMemoryClientStore,
    appointments: InMemoryAppointmentSource
) -> Dict[str, int]:
    """
    Read a YAML file with ``orgs``, ``clients`` and ``appointments`` lists.

    Returns:
        Number of records loaded per collection
    """
    with open(source, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    for item in data.get("orgs", []):
        orgs.add(_build(Org, item))

    for item in data.get("clients", []):
        item = dict(item)
        if isinstance(item.get("phones"), str):
            item["phones"] = [item["phones"]]
        clients.add(_build(Client, item))

    for item in data.get("appointments", []):
        item = dict(item)
        for key in ("date_time", "created_at", "updated_at"):
            if key in item:
                item[key] = _datetime(item[key])
        if "status" in item:
            item["status"] = AppointmentStatus(item["status"])
        appointments.add(_build(Appointment, item))

    counts = {
        "orgs": len(data.get("orgs", [])),
        "clients": len(data.get("clients", [])),
        "appointments": len(data.get("appointments", [])),
    }
    logger.info(f"Loaded CRM fixtures from {source}: {counts}")
    return counts
