"""Tenant namespace resolution."""

import logging
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


class TenantResolver:
    """Maps an untrusted client token to a storage namespace.

    Unknown or missing tokens fall back to the default namespace instead of
    failing the request. No other component re-validates tenants.
    """

    def __init__(self, allowed: Iterable[str], default: str = "default"):
        self.allowed = frozenset(allowed)
        self.default = default

    def resolve(self, token: Optional[str]) -> str:
        if token and token in self.allowed:
            return token
        if token:
            logger.debug(f"Unknown tenant {token!r}, using {self.default!r}")
        return self.default
