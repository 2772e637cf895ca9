"""Closed vocabularies shared by models, services and routers."""

from __future__ import annotations

from enum import StrEnum


class ConnectionStatus(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    ERROR = "error"
    DISCONNECTED = "disconnected"
    DELETED = "deleted"


LIVE_CONNECTION_STATUSES = (ConnectionStatus.PENDING, ConnectionStatus.ACTIVE, ConnectionStatus.ERROR)
SYNCABLE_CONNECTION_STATUSES = (ConnectionStatus.ACTIVE, ConnectionStatus.ERROR)


class DataType(StrEnum):
    VEHICLES = "vehicles"
    DRIVERS = "drivers"
    HOS = "hos"
    IFTA = "ifta"
    LOCATIONS = "locations"
    FAULTS = "faults"
    ALL = "all"


class JobStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncTrigger(StrEnum):
    MANUAL = "manual"
    SCHEDULER = "scheduler"
    WEBHOOK = "webhook"


class EntityType(StrEnum):
    VEHICLE = "vehicle"
    DRIVER = "driver"


class MatchSource(StrEnum):
    MANUAL = "manual"
    AUTO = "auto"


class Tier(StrEnum):
    BASIC = "basic"
    PREMIUM = "premium"
    FLEET = "fleet"
    ENTERPRISE = "enterprise"


class NotificationType(StrEnum):
    HOS_VIOLATION_OCCURRED = "HOS_VIOLATION_OCCURRED"
    VEHICLE_FAULT_CODE = "VEHICLE_FAULT_CODE"
    ELD_SYNC_COMPLETED = "ELD_SYNC_COMPLETED"
    ELD_SYNC_FAILED = "ELD_SYNC_FAILED"
    ELD_CONNECTION_ERROR = "ELD_CONNECTION_ERROR"
    ELD_DISCONNECTED = "ELD_DISCONNECTED"
    SAFETY_EVENT = "SAFETY_EVENT"
