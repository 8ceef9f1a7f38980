"""API router for media transforms.

Implements the optimize, upload and srcset endpoints. ``/api/...`` aliases are
kept for clients configured against the older paths.
"""

from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from fastapi.responses import RedirectResponse, Response

from mediacache.core.exceptions import ValidationError
from mediacache.core.storage import IMMUTABLE_CACHE_CONTROL
from mediacache.modules.optimize.delivery import DEFAULT_BREAKPOINTS, build_srcset
from mediacache.modules.optimize.schemas import (
    SrcSetResponse,
    TransformRequest,
    UploadResponse,
)
from mediacache.modules.optimize.service import TransformCacheService

router = APIRouter(tags=["optimize"])


def get_transform_service(request: Request) -> TransformCacheService:
    """Get the transform service built at startup."""
    return request.app.state.transform_service


@router.get("/optimize", summary="Serve an optimized rendition of a remote source")
@router.get("/api/optimize", include_in_schema=False)
async def optimize(
    request: Request,
    url: Optional[str] = Query(None, description="Source media URL"),
    w: Optional[str] = Query(None, description="Target width in pixels"),
    q: Optional[str] = Query(None, description="Quality 0-100 or tier name"),
    f: Optional[str] = Query(None, description="Output format"),
    client: Optional[str] = Query(None, description="Tenant token"),
    provider: Optional[str] = Query(None, description="Storage provider override"),
    service: TransformCacheService = Depends(get_transform_service),
) -> Response:
    """Redirect to a cached rendition, or compute and serve it.

    A cache hit answers 301 to the stored object's public URL. A miss returns
    the encoded bytes directly, with the stored object's URL in ``X-Object-Url``.
    """
    result = await service.transform(TransformRequest(
        source=url,
        width=w,
        quality=q,
        format=f,
        tenant=client,
        provider=provider,
        accept=request.headers.get("accept"),
    ))

    headers = {"Cache-Control": IMMUTABLE_CACHE_CONTROL}
    if f and f.strip().lower() == "auto":
        headers["Vary"] = "Accept"

    if result.cache_hit:
        headers["X-Cache"] = "HIT"
        return RedirectResponse(result.stored.url, status_code=301, headers=headers)

    headers["X-Cache"] = "MISS"
    headers["X-Object-Url"] = result.stored.url
    return Response(
        content=result.data,
        media_type=result.stored.content_type,
        headers=headers,
    )


async def _read_upload(image: UploadFile, limit: Optional[int]) -> bytes:
    """Read an uploaded file, never holding more than ``limit + 1`` bytes."""
    if limit is None:
        return await image.read()
    if image.size is not None and image.size > limit:
        raise ValidationError(f"Upload exceeds the {limit} byte limit")
    data = await image.read(limit + 1)
    if len(data) > limit:
        raise ValidationError(f"Upload exceeds the {limit} byte limit")
    return data


@router.post("/upload", response_model=UploadResponse, summary="Transform an uploaded file")
@router.post("/api/upload", response_model=UploadResponse, include_in_schema=False)
async def upload(
    request: Request,
    image: Optional[UploadFile] = File(None),
    client: Optional[str] = Form(None),
    w: Optional[str] = Form(None),
    q: Optional[str] = Form(None),
    f: Optional[str] = Form(None),
    provider: Optional[str] = Form(None),
    service: TransformCacheService = Depends(get_transform_service),
) -> UploadResponse:
    """Transform and store an uploaded image or video.

    Identical bytes uploaded with identical options resolve to the same
    stored object.
    """
    if image is None:
        raise ValidationError("No image file provided")

    data = await _read_upload(image, service.max_upload_bytes)

    result = await service.transform(
        TransformRequest(
            width=w,
            quality=q,
            format=f,
            tenant=client,
            provider=provider,
            accept=request.headers.get("accept"),
        ),
        upload=data,
    )

    stored = result.stored
    return UploadResponse(
        url=stored.url,
        size=stored.size,
        format=result.format.value,
        width=stored.width,
        height=stored.height,
        key=stored.key,
        cached=result.cache_hit,
    )


def _parse_widths(raw: Optional[str], service: TransformCacheService) -> list[int]:
    if not raw:
        return list(DEFAULT_BREAKPOINTS)
    widths = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        width = service.normalizer.resolve_width(part)
        if width not in widths:
            widths.append(width)
    if not widths:
        raise ValidationError("No widths given")
    return sorted(widths)


@router.get("/srcset", response_model=SrcSetResponse, summary="Build a responsive srcset")
async def srcset(
    request: Request,
    url: str = Query(..., description="Source media URL"),
    widths: Optional[str] = Query(None, description="Comma separated widths"),
    q: Optional[str] = Query(None),
    f: Optional[str] = Query(None),
    client: Optional[str] = Query(None),
    service: TransformCacheService = Depends(get_transform_service),
) -> SrcSetResponse:
    """Build srcset candidates pointing at the optimize endpoint."""
    if not url.startswith("data:"):
        service.fetcher.validate_source_url(url)

    candidate_widths = _parse_widths(widths, service)
    base_url = str(request.url_for("optimize"))

    return SrcSetResponse(
        srcset=build_srcset(base_url, url, candidate_widths, quality=q, format=f, client=client),
        widths=candidate_widths,
    )
