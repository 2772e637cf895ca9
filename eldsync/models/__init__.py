"""ORM models; importing this package registers every table on Base.metadata."""

from .base import Base
from .eld import (
    EldConnection, EntityMapping, FaultCode, HosDailyLog, HosLogEvent, IftaMileage,
    SyncJob, VehicleLocation,
)
from .notification import Notification
from .tenant import Driver, Tenant, Vehicle

__all__ = [
    "Base",
    "Tenant", "Vehicle", "Driver",
    "EldConnection", "SyncJob", "EntityMapping",
    "HosLogEvent", "HosDailyLog", "VehicleLocation", "FaultCode", "IftaMileage",
    "Notification",
]
