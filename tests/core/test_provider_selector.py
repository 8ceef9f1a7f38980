"""Tests for storage provider selection."""

import pytest

from mediacache.core.config import Settings
from mediacache.core.exceptions import ConfigurationError, ValidationError
from mediacache.core.providers import ProviderSelector, build_stores
from mediacache.core.storage import (
    CloudinaryStore,
    InMemoryStore,
    LocalFilesystemStore,
    RemoteBucketStore,
)


class TestProviderSelector:

    def stores(self, *names):
        return {name: InMemoryStore() for name in names}

    def test_priority_order_wins_over_registration_order(self):
        selector = ProviderSelector(self.stores("local", "s3"))

        name, store = selector.select()

        assert name == "s3"
        assert store.name == "memory"
        assert selector.names == ["s3", "local"]

    def test_unlisted_providers_come_last(self):
        selector = ProviderSelector(self.stores("memory", "local"))

        assert selector.names == ["local", "memory"]
        assert selector.select()[0] == "local"

    def test_cloudinary_is_tried_after_bucket_and_local(self):
        selector = ProviderSelector(self.stores("memory", "cloudinary", "local", "s3"))

        assert selector.names == ["s3", "local", "cloudinary", "memory"]

    def test_cloudinary_is_used_when_it_is_the_only_remote(self):
        selector = ProviderSelector(self.stores("memory", "cloudinary"))

        assert selector.select()[0] == "cloudinary"

    def test_request_override_wins(self):
        selector = ProviderSelector(self.stores("s3", "local"))

        assert selector.select("local")[0] == "local"
        assert selector.select(" LOCAL ")[0] == "local"

    def test_blank_override_falls_back(self):
        selector = ProviderSelector(self.stores("s3", "local"))

        assert selector.select("  ")[0] == "s3"

    def test_process_default_overrides_priority(self):
        selector = ProviderSelector(self.stores("s3", "local"), default="local")

        assert selector.select()[0] == "local"
        assert selector.select("s3")[0] == "s3"

    def test_unknown_override_is_rejected(self):
        selector = ProviderSelector(self.stores("s3"))

        with pytest.raises(ValidationError):
            selector.select("cloudinary")

    def test_unconfigured_default_fails_at_startup(self):
        with pytest.raises(ConfigurationError):
            ProviderSelector(self.stores("local"), default="s3")

    def test_no_providers_is_configuration_error(self):
        selector = ProviderSelector({})

        with pytest.raises(ConfigurationError):
            selector.select()


class TestBuildStores:

    def test_builds_enabled_backends(self, tmp_path):
        settings = Settings(
            STORAGE_BUCKET="media",
            LOCAL_STORAGE_PATH=str(tmp_path),
            CLOUDINARY_CLOUD_NAME="demo",
            CLOUDINARY_API_KEY="key",
            CLOUDINARY_API_SECRET="secret",
            CLOUDINARY_FOLDER="/renditions/",
            MEMORY_STORAGE_ENABLED=True,
        )

        stores = build_stores(settings)

        assert isinstance(stores["s3"], RemoteBucketStore)
        assert isinstance(stores["local"], LocalFilesystemStore)
        assert isinstance(stores["cloudinary"], CloudinaryStore)
        assert stores["cloudinary"].folder == "renditions"
        assert isinstance(stores["memory"], InMemoryStore)

    def test_nothing_enabled(self):
        settings = Settings(STORAGE_BUCKET="", LOCAL_STORAGE_PATH=None, CLOUDINARY_CLOUD_NAME="")

        assert build_stores(settings) == {}

    def test_from_settings_uses_process_default(self, tmp_path):
        settings = Settings(
            STORAGE_BUCKET="media",
            LOCAL_STORAGE_PATH=str(tmp_path),
            STORAGE_PROVIDER="local",
        )

        selector = ProviderSelector.from_settings(settings)

        assert selector.select()[0] == "local"
