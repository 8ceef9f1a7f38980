"""API router for the usage monitor."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from mediacache.modules.monitoring.schemas import UsageReport
from mediacache.modules.monitoring.service import MonitorAccessError, UsageMonitor

router = APIRouter(tags=["monitoring"])


def get_usage_monitor(request: Request) -> UsageMonitor:
    return request.app.state.usage_monitor


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


@router.get("/monitor", response_model=UsageReport, summary="Storage usage by tenant")
async def monitor(
    code: Optional[str] = Query(None, description="Access code"),
    provider: Optional[str] = Query(None, description="Storage provider to inspect"),
    authorization: Optional[str] = Header(None),
    usage_monitor: UsageMonitor = Depends(get_usage_monitor),
) -> UsageReport:
    """Aggregate stored objects by tenant.

    Access requires ``Authorization: Bearer <code>`` or ``?code=<code>``.
    """
    try:
        usage_monitor.check_access(_bearer_token(authorization) or code)
    except MonitorAccessError as e:
        if e.disabled:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )

    return await usage_monitor.report(provider)
