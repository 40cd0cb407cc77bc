from __future__ import annotations


class TenantWatchError(Exception):
    """Base error for tenantwatch."""


class ConfigurationError(TenantWatchError):
    """Missing or invalid monitoring configuration."""


class DetectionError(TenantWatchError):
    """A detector could not produce a result: timeout, driver failure or missing monitored table."""

    def __init__(self, category: str, message: str, *, code: str = "DETECTION_QUERY_FAILED") -> None:
        super().__init__(message)
        self.category = category
        self.code = code
        self.message = message

    def as_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class SchemaAbsentError(TenantWatchError):
    """An optional supporting table does not exist; callers treat this as an empty result."""

    def __init__(self, table: str) -> None:
        super().__init__(f"table {table!r} does not exist")
        self.table = table


class UnknownAlertError(TenantWatchError):
    """Alert id is not present in the registry."""

    def __init__(self, alert_id: str) -> None:
        super().__init__(f"alert {alert_id!r} not found")
        self.alert_id = alert_id
