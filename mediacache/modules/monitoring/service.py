"""Storage usage monitoring.

Reads object listings and aggregates them by tenant prefix (the first path
segment of each key). Never writes to storage.
"""

import hmac
import logging
from typing import Optional

from mediacache.core.providers import ProviderSelector
from mediacache.core.storage import ObjectInfo
from mediacache.modules.monitoring.schemas import TenantUsage, UsageReport

logger = logging.getLogger(__name__)

ROOT_PREFIX = "(root)"


class MonitorAccessError(Exception):
    """Raised when the monitor is disabled or the access code is wrong."""

    def __init__(self, message: str, disabled: bool = False):
        super().__init__(message)
        self.disabled = disabled


def aggregate_by_tenant(objects: list[ObjectInfo]) -> list[TenantUsage]:
    """Group object counts and sizes by the first key segment.

    Args:
        objects: Object listing

    Returns:
        Per-tenant usage, largest first
    """
    totals: dict[str, list[int]] = {}
    for obj in objects:
        tenant = obj.key.split("/", 1)[0] if "/" in obj.key else ROOT_PREFIX
        entry = totals.setdefault(tenant, [0, 0])
        entry[0] += 1
        entry[1] += obj.size

    usage = [
        TenantUsage(tenant=tenant, objects=count, bytes=size)
        for tenant, (count, size) in totals.items()
    ]
    usage.sort(key=lambda u: (-u.bytes, u.tenant))
    return usage


class UsageMonitor:
    """Read-only usage dashboard backed by storage listings."""

    def __init__(
        self,
        selector: ProviderSelector,
        access_code: Optional[str],
        max_keys: int = 10000,
    ):
        self.selector = selector
        self.access_code = access_code
        self.max_keys = max_keys

    @property
    def enabled(self) -> bool:
        return bool(self.access_code)

    def check_access(self, presented: Optional[str]) -> None:
        """Verify a presented access code in constant time.

        Raises:
            MonitorAccessError: If monitoring is disabled or the code is wrong
        """
        if not self.enabled:
            raise MonitorAccessError("Monitoring is disabled", disabled=True)
        if not presented or not hmac.compare_digest(
            presented.encode("utf-8"), self.access_code.encode("utf-8")
        ):
            raise MonitorAccessError("Invalid access code")

    async def report(self, provider: Optional[str] = None) -> UsageReport:
        """Aggregate usage for a provider.

        Args:
            provider: Provider override; defaults to the selector's choice

        Returns:
            UsageReport: Totals per tenant
        """
        name, store = self.selector.select(provider)
        objects = await store.list_objects("", limit=self.max_keys + 1)

        truncated = len(objects) > self.max_keys
        if truncated:
            objects = objects[: self.max_keys]
            logger.warning(f"Usage listing for {name} truncated at {self.max_keys} objects")

        return UsageReport(
            provider=name,
            total_objects=len(objects),
            total_bytes=sum(obj.size for obj in objects),
            tenants=aggregate_by_tenant(objects),
            truncated=truncated,
        )
