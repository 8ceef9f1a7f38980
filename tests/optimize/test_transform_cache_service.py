"""Tests for the transform cache pipeline.

**Feature: mediacache, Property 5: Cache Idempotence**

A stored transform is never recomputed: a second identical request never
invokes the encoder and returns the same public URL.
"""

import asyncio
from typing import Optional
from unittest.mock import AsyncMock

import httpx
import pytest
from hypothesis import HealthCheck, given, settings, strategies as st

from mediacache.core.config import DEFAULT_QUALITY_TIERS
from mediacache.core.exceptions import (
    EncodingError,
    OriginFetchError,
    StorageError,
    ValidationError,
)
from mediacache.core.metrics import REGISTRY
from mediacache.core.providers import ProviderSelector
from mediacache.core.storage import InMemoryStore, ObjectStore
from mediacache.modules.optimize.fetcher import OriginFetcher
from mediacache.modules.optimize.keys import KeyDeriver, derive
from mediacache.modules.optimize.schemas import (
    PipelineState,
    TransformOptionsNormalizer,
    TransformRequest,
)
from mediacache.modules.optimize.service import TransformCacheService
from mediacache.modules.optimize.tenants import TenantResolver

SOURCE = "https://example.com/a.png"


class CountingTransport(httpx.MockTransport):

    def __init__(self, body: bytes = b"source-bytes", status_code: int = 200):
        self.count = 0

        def handler(request: httpx.Request) -> httpx.Response:
            self.count += 1
            return httpx.Response(status_code, content=body)

        super().__init__(handler)


class BrokenStore(InMemoryStore):
    """Store whose existence check fails with a permissions problem."""

    def stat(self, key):
        raise StorageError("AccessDenied")


def build_service(
    encoder,
    store: Optional[ObjectStore] = None,
    transport: Optional[httpx.MockTransport] = None,
    notifier=None,
    coalesce: bool = True,
    max_bytes: int = 1024 * 1024,
) -> TransformCacheService:
    store = store if store is not None else InMemoryStore()
    transport = transport or CountingTransport()
    fetcher = OriginFetcher(
        httpx.AsyncClient(transport=transport),
        max_bytes=max_bytes,
        timeout=2.0,
        resolve_hosts=False,
    )
    return TransformCacheService(
        selector=ProviderSelector({"memory": store}),
        encoder=encoder,
        fetcher=fetcher,
        tenants=TenantResolver(["acme", "globex"], default="default"),
        keys=KeyDeriver(),
        normalizer=TransformOptionsNormalizer(DEFAULT_QUALITY_TIERS, max_width=3840),
        notifier=notifier,
        coalesce=coalesce,
        max_upload_bytes=max_bytes,
    )


def coalesced_count() -> float:
    return REGISTRY.get_sample_value("mediacache_coalesced_requests_total") or 0.0


async def wait_until(condition, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        assert asyncio.get_running_loop().time() < deadline, "condition not reached"
        await asyncio.sleep(0.005)


def scenario_a_request(**overrides) -> TransformRequest:
    fields = {"source": SOURCE, "width": "800", "quality": "80", "format": "webp", "tenant": "acme"}
    fields.update(overrides)
    return TransformRequest(**fields)


class TestCacheIdempotence:
    """
    **Feature: mediacache, Property 5: Cache Idempotence**
    """

    @given(
        width=st.integers(min_value=1, max_value=3840),
        quality=st.integers(min_value=0, max_value=100),
        fmt=st.sampled_from(["webp", "jpeg", "png", "avif"]),
        tenant=st.sampled_from(["acme", "globex", "unknown", None]),
    )
    @settings(max_examples=50, suppress_health_check=[HealthCheck.function_scoped_fixture])
    @pytest.mark.asyncio
    async def test_repeat_request_never_invokes_encoder(
        self, encoder_factory, width, quality, fmt, tenant
    ):
        """
        For any transform, a second identical request SHALL be a cache hit,
        SHALL NOT invoke the encoder and SHALL return the same URL.
        """
        encoder = encoder_factory()
        service = build_service(encoder)
        request = TransformRequest(
            source=SOURCE, width=str(width), quality=str(quality), format=fmt, tenant=tenant
        )

        first = await service.transform(request)
        second = await service.transform(request)

        assert first.cache_hit is False
        assert second.cache_hit is True
        assert len(encoder.calls) == 1
        assert second.stored.url == first.stored.url
        assert second.data is None


class TestScenarios:

    @pytest.mark.asyncio
    async def test_scenario_a_miss_then_hit(self, counting_encoder, memory_store):
        transport = CountingTransport()
        service = build_service(counting_encoder, store=memory_store, transport=transport)

        first = await service.transform(scenario_a_request())

        digest = derive(SOURCE, 800, "80", "webp")
        assert first.stored.key == f"acme/{digest}.webp"
        assert first.state == PipelineState.DONE
        assert first.data == memory_store.read(first.stored.key)
        assert len(counting_encoder.calls) == 1
        assert transport.count == 1

        second = await service.transform(scenario_a_request())

        assert second.cache_hit is True
        assert second.stored.url == first.stored.url
        assert len(counting_encoder.calls) == 1
        assert transport.count == 1

    @pytest.mark.asyncio
    async def test_scenario_b_localhost_is_rejected(self, counting_encoder, memory_store):
        transport = CountingTransport()
        service = build_service(counting_encoder, store=memory_store, transport=transport)

        with pytest.raises(ValidationError):
            await service.transform(TransformRequest(source="http://localhost/evil", tenant="acme"))

        assert transport.count == 0
        assert counting_encoder.calls == []
        assert memory_store.list_objects() == []

    @pytest.mark.asyncio
    async def test_scenario_c_oversized_origin(self, counting_encoder, memory_store):
        transport = CountingTransport(body=b"x" * 4096)
        service = build_service(counting_encoder, store=memory_store, transport=transport, max_bytes=1024)

        with pytest.raises(OriginFetchError):
            await service.transform(scenario_a_request())

        assert counting_encoder.calls == []
        assert memory_store.list_objects() == []


class TestTenantIsolation:

    @pytest.mark.asyncio
    async def test_tenants_do_not_share_objects(self, counting_encoder, memory_store):
        service = build_service(counting_encoder, store=memory_store)

        acme = await service.transform(scenario_a_request(tenant="acme"))
        globex = await service.transform(scenario_a_request(tenant="globex"))

        assert globex.cache_hit is False
        assert acme.stored.key != globex.stored.key
        assert acme.stored.key.split("/")[1] == globex.stored.key.split("/")[1]
        assert len(counting_encoder.calls) == 2

    @pytest.mark.asyncio
    async def test_unknown_tenant_uses_default_namespace(self, counting_encoder):
        service = build_service(counting_encoder)

        result = await service.transform(scenario_a_request(tenant="evil/../acme"))

        assert result.tenant == "default"
        assert result.stored.key.startswith("default/")


class TestFailureSemantics:

    @pytest.mark.asyncio
    async def test_exists_failure_is_not_a_miss(self, counting_encoder):
        transport = CountingTransport()
        service = build_service(counting_encoder, store=BrokenStore(), transport=transport)

        with pytest.raises(StorageError):
            await service.transform(scenario_a_request())

        assert transport.count == 0
        assert counting_encoder.calls == []

    @pytest.mark.asyncio
    async def test_failed_encode_is_never_persisted(self, encoder_factory, memory_store):
        encoder = encoder_factory(fail=True)
        service = build_service(encoder, store=memory_store)

        with pytest.raises(EncodingError):
            await service.transform(scenario_a_request())

        assert memory_store.list_objects() == []

    @pytest.mark.asyncio
    async def test_failed_encode_is_not_retried(self, encoder_factory):
        encoder = encoder_factory(fail=True)
        service = build_service(encoder)

        with pytest.raises(EncodingError):
            await service.transform(scenario_a_request())

        assert len(encoder.calls) == 1

    @pytest.mark.asyncio
    async def test_server_faults_alert(self, encoder_factory):
        notifier = AsyncMock()
        service = build_service(encoder_factory(fail=True), notifier=notifier)

        with pytest.raises(EncodingError):
            await service.transform(scenario_a_request())

        notifier.notify_failure.assert_awaited_once()
        error, context = notifier.notify_failure.await_args.args
        assert isinstance(error, EncodingError)
        assert context["stage"] == PipelineState.ENCODING.value
        assert context["tenant"] == "acme"

    @pytest.mark.asyncio
    async def test_client_faults_do_not_alert(self, counting_encoder):
        notifier = AsyncMock()
        service = build_service(counting_encoder, notifier=notifier)

        with pytest.raises(ValidationError):
            await service.transform(scenario_a_request(width="0"))

        notifier.notify_failure.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_origin_errors_do_not_alert(self, counting_encoder):
        notifier = AsyncMock()
        service = build_service(
            counting_encoder,
            transport=CountingTransport(status_code=500),
            notifier=notifier,
        )

        with pytest.raises(OriginFetchError):
            await service.transform(scenario_a_request())

        notifier.notify_failure.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_provider_override_is_rejected(self, counting_encoder):
        service = build_service(counting_encoder)

        with pytest.raises(ValidationError):
            await service.transform(scenario_a_request(provider="cloudinary"))


class TestUploads:

    @pytest.mark.asyncio
    async def test_identical_upload_is_a_cache_hit(self, counting_encoder):
        transport = CountingTransport()
        service = build_service(counting_encoder, transport=transport)
        request = TransformRequest(width="320", format="png", tenant="acme")

        first = await service.transform(request, upload=b"raw-upload")
        second = await service.transform(request, upload=b"raw-upload")

        assert first.cache_hit is False
        assert second.cache_hit is True
        assert len(counting_encoder.calls) == 1
        assert counting_encoder.calls[0][0] == b"raw-upload"
        assert transport.count == 0

    @pytest.mark.asyncio
    async def test_empty_upload_is_rejected(self, counting_encoder):
        service = build_service(counting_encoder)

        with pytest.raises(ValidationError):
            await service.transform(TransformRequest(), upload=b"")

    @pytest.mark.asyncio
    async def test_oversized_upload_is_rejected(self, counting_encoder):
        service = build_service(counting_encoder, max_bytes=10)

        with pytest.raises(ValidationError):
            await service.transform(TransformRequest(), upload=b"x" * 11)

        assert counting_encoder.calls == []


class TestCoalescing:

    @pytest.mark.asyncio
    async def test_concurrent_identical_misses_share_one_encode(self, encoder_factory, memory_store):
        encoder = encoder_factory(delay=0.05)
        transport = CountingTransport()
        service = build_service(encoder, store=memory_store, transport=transport)

        results = await asyncio.gather(*(service.transform(scenario_a_request()) for _ in range(5)))

        assert len(encoder.calls) == 1
        assert transport.count == 1
        assert len({r.stored.url for r in results}) == 1
        assert len(memory_store.list_objects()) == 1

    @pytest.mark.asyncio
    async def test_coalesced_waiters_receive_the_error(self, encoder_factory):
        encoder = encoder_factory(fail=True, delay=0.05)
        service = build_service(encoder)

        results = await asyncio.gather(
            *(service.transform(scenario_a_request()) for _ in range(3)),
            return_exceptions=True,
        )

        assert all(isinstance(r, EncodingError) for r in results)
        assert len(encoder.calls) == 1

    @pytest.mark.asyncio
    async def test_cancelled_leader_does_not_fail_waiters(self, encoder_factory, memory_store):
        encoder = encoder_factory(delay=0.3)
        service = build_service(encoder, store=memory_store)
        joined_before = coalesced_count()

        leader = asyncio.create_task(service.transform(scenario_a_request()))
        await wait_until(lambda: encoder.calls)
        waiter = asyncio.create_task(service.transform(scenario_a_request()))
        await wait_until(lambda: coalesced_count() > joined_before)
        leader.cancel()

        result = await waiter

        assert leader.cancelled()
        assert result.cache_hit is False
        assert len(encoder.calls) == 1
        assert len(memory_store.list_objects()) == 1

    @pytest.mark.asyncio
    async def test_without_coalescing_each_miss_encodes(self, encoder_factory):
        encoder = encoder_factory(delay=0.05)
        service = build_service(encoder, coalesce=False)

        await asyncio.gather(*(service.transform(scenario_a_request()) for _ in range(3)))

        assert len(encoder.calls) == 3

    @pytest.mark.asyncio
    async def test_different_keys_are_not_coalesced(self, encoder_factory):
        encoder = encoder_factory(delay=0.05)
        service = build_service(encoder)

        await asyncio.gather(
            service.transform(scenario_a_request(width="100")),
            service.transform(scenario_a_request(width="200")),
        )

        assert len(encoder.calls) == 2
