"""Pydantic schemas for storage usage monitoring."""

from pydantic import BaseModel


class TenantUsage(BaseModel):
    """Stored objects and bytes under one tenant prefix."""

    tenant: str
    objects: int
    bytes: int


class UsageReport(BaseModel):
    """Usage of one storage provider aggregated by tenant."""

    provider: str
    total_objects: int
    total_bytes: int
    tenants: list[TenantUsage]
    truncated: bool = False
