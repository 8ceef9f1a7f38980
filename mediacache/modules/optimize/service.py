"""Transform cache orchestration.

A transform walks RESOLVING_TENANT -> DERIVING_KEY -> CHECKING_CACHE and then
either finishes on a cache hit or continues FETCHING_SOURCE -> ENCODING ->
PERSISTING. Any stage error ends in FAILED; no stage is retried and nothing is
persisted unless encoding succeeded.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from mediacache.core.exceptions import MediaCacheError, ValidationError
from mediacache.core.logging import log_error, log_info, log_warning
from mediacache.core.metrics import (
    CACHE_LOOKUPS_TOTAL,
    COALESCED_REQUESTS_TOTAL,
    TRANSFORMS_TOTAL,
)
from mediacache.core.providers import ProviderSelector
from mediacache.core.storage import AsyncObjectStore
from mediacache.core.tracing import create_span
from mediacache.modules.notification.service import AlertNotifier
from mediacache.modules.optimize.fetcher import OriginFetcher
from mediacache.modules.optimize.keys import KeyDeriver, upload_reference
from mediacache.modules.optimize.schemas import (
    CacheKey,
    NormalizedTransform,
    PipelineState,
    TransformOptionsNormalizer,
    TransformRequest,
    TransformResult,
)
from mediacache.modules.optimize.tenants import TenantResolver
from mediacache.modules.transcoding.service import MediaEncoder

logger = logging.getLogger(__name__)


class PipelineRun:
    """Tracks the state of one transform for logging and failure reports."""

    def __init__(self, context: dict[str, Any]):
        self.state = PipelineState.RESOLVING_TENANT
        self.context = context

    def advance(self, state: PipelineState) -> None:
        logger.debug(f"Pipeline {self.state.value} -> {state.value}", extra=self.context)
        self.state = state


class TransformCacheService:
    """Resolves a transform request to a stored object, computing it on a miss."""

    def __init__(
        self,
        selector: ProviderSelector,
        encoder: MediaEncoder,
        fetcher: OriginFetcher,
        tenants: TenantResolver,
        keys: KeyDeriver,
        normalizer: TransformOptionsNormalizer,
        notifier: Optional[AlertNotifier] = None,
        coalesce: bool = True,
        max_upload_bytes: Optional[int] = None,
    ):
        self.selector = selector
        self.encoder = encoder
        self.fetcher = fetcher
        self.tenants = tenants
        self.keys = keys
        self.normalizer = normalizer
        self.notifier = notifier
        self.coalesce = coalesce
        self.max_upload_bytes = max_upload_bytes
        self._inflight: dict[tuple[str, str], asyncio.Future] = {}

    async def transform(
        self,
        request: TransformRequest,
        upload: Optional[bytes] = None,
    ) -> TransformResult:
        """Serve a transform from cache or compute and persist it.

        Args:
            request: Raw transform request
            upload: Uploaded source bytes; when given, ``request.source`` is ignored

        Returns:
            TransformResult: Stored object, hit flag and, on a miss, the bytes

        Raises:
            ValidationError: Bad input or disallowed source
            OriginFetchError: Origin timed out, was oversized or failed
            EncodingError: Transcode failed
            StorageError: Storage lookup or write failed
        """
        run = PipelineRun({"source": request.source if upload is None else "upload"})

        try:
            tenant = self.tenants.resolve(request.tenant)
            run.context["tenant"] = tenant

            run.advance(PipelineState.DERIVING_KEY)
            options = self.normalizer.normalize(request)
            source = self._source_reference(request, upload)
            cache_key = self.keys.build(tenant, source, options)
            provider, store = self.selector.select(request.provider)
            run.context.update(storage_key=cache_key.storage_key, provider=provider)

            run.advance(PipelineState.CHECKING_CACHE)
            with create_span("media.cache_lookup", {"media.key": cache_key.storage_key, "media.provider": provider}):
                existing = await store.describe(cache_key.storage_key)
        except MediaCacheError as e:
            await self._fail(run, e)
            raise

        if existing is not None:
            CACHE_LOOKUPS_TOTAL.labels(result="hit").inc()
            run.advance(PipelineState.DONE)
            log_info(logger, "Cache hit", **run.context)
            return TransformResult(
                stored=existing,
                cache_hit=True,
                tenant=tenant,
                format=options.format,
                state=run.state,
            )

        CACHE_LOOKUPS_TOTAL.labels(result="miss").inc()

        def compute() -> Awaitable[TransformResult]:
            return self._compute(run, request, upload, options, cache_key, store, tenant)

        if not self.coalesce:
            return await compute()
        return await self._coalesced((provider, cache_key.storage_key), compute)

    def _source_reference(self, request: TransformRequest, upload: Optional[bytes]) -> str:
        if upload is not None:
            if not upload:
                raise ValidationError("Uploaded file is empty")
            if self.max_upload_bytes is not None and len(upload) > self.max_upload_bytes:
                raise ValidationError(f"Upload exceeds the {self.max_upload_bytes} byte limit")
            return upload_reference(upload)

        # Reject disallowed sources before storage is consulted
        self.fetcher.validate_source_url(request.source)
        return request.source

    async def _compute(
        self,
        run: PipelineRun,
        request: TransformRequest,
        upload: Optional[bytes],
        options: NormalizedTransform,
        cache_key: CacheKey,
        store: AsyncObjectStore,
        tenant: str,
    ) -> TransformResult:
        fmt = options.format.value
        try:
            run.advance(PipelineState.FETCHING_SOURCE)
            with create_span("media.fetch", {"media.source_kind": "upload" if upload is not None else "url"}):
                data = upload if upload is not None else await self.fetcher.fetch(request.source)

            run.advance(PipelineState.ENCODING)
            with create_span("media.encode", {"media.format": fmt, "media.width": options.width or 0}):
                encoded = await self.encoder.encode(data, options.encode_options())

            run.advance(PipelineState.PERSISTING)
            with create_span("media.persist", {"media.key": cache_key.storage_key}):
                stored = await store.put(
                    cache_key.storage_key,
                    encoded.data,
                    encoded.content_type,
                    {
                        "width": encoded.width,
                        "height": encoded.height,
                        "format": fmt,
                        "tenant": tenant,
                    },
                )
        except MediaCacheError as e:
            TRANSFORMS_TOTAL.labels(format=fmt, outcome="failed").inc()
            await self._fail(run, e)
            raise

        TRANSFORMS_TOTAL.labels(format=fmt, outcome="success").inc()
        run.advance(PipelineState.DONE)
        log_info(logger, "Transform persisted", size=stored.size, **run.context)

        return TransformResult(
            stored=stored,
            cache_hit=False,
            tenant=tenant,
            format=options.format,
            data=encoded.data,
            state=run.state,
        )

    async def _coalesced(
        self,
        inflight_key: tuple[str, str],
        compute: Callable[[], Awaitable[TransformResult]],
    ) -> TransformResult:
        """Share one in-flight computation among identical concurrent misses.

        The computation runs as its own task. A cancelled caller only stops
        waiting; the task keeps running for the remaining callers.
        """
        task = self._inflight.get(inflight_key)
        if task is not None:
            COALESCED_REQUESTS_TOTAL.inc()
            logger.debug(f"Joining in-flight transform for {inflight_key[1]}")
        else:
            task = asyncio.ensure_future(compute())
            self._inflight[inflight_key] = task
            task.add_done_callback(lambda done: self._finish_inflight(inflight_key, done))
        return await asyncio.shield(task)

    def _finish_inflight(self, inflight_key: tuple[str, str], task: asyncio.Future) -> None:
        if self._inflight.get(inflight_key) is task:
            del self._inflight[inflight_key]
        # Mark retrieved so a failure nobody awaited is not reported as unhandled
        if not task.cancelled():
            task.exception()

    async def _fail(self, run: PipelineRun, error: MediaCacheError) -> None:
        stage = run.state
        run.advance(PipelineState.FAILED)

        if error.client_fault:
            log_warning(logger, f"Transform rejected at {stage.value}: {error.message}", **run.context)
            return

        log_error(logger, f"Transform failed at {stage.value}", exception=error, **run.context)
        if self.notifier is not None:
            await self.notifier.notify_failure(error, {**run.context, "stage": stage.value})
