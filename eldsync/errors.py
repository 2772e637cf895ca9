"""Domain errors raised by the connection, reconciliation and sync services."""

from __future__ import annotations

import uuid


class EldError(Exception):
    """Base exception for ELD service errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ConnectionNotFound(EldError):
    pass


class ConnectionNotActive(EldError):
    def __init__(self, message: str, status: str | None = None):
        super().__init__(message)
        self.status = status


class FeatureNotEntitled(EldError):
    def __init__(self, message: str, data_type: str, tier: str | None = None):
        super().__init__(message)
        self.data_type = data_type
        self.tier = tier


class SyncInProgress(EldError):
    """A running job already covers this (connection, data type)."""

    def __init__(self, job_id: uuid.UUID | None, data_type: str):
        super().__init__(f"A {data_type} sync is already running")
        self.job_id = job_id
        self.data_type = data_type


class InvalidSyncWindow(EldError):
    """A requested date or month range is malformed or runs backwards."""


class IllegalTransition(EldError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Illegal connection transition {current} -> {target}")
        self.current = current
        self.target = target


class InvalidOAuthState(EldError):
    pass


class MappingConflict(EldError):
    pass


class InvalidSignature(EldError):
    pass
