import pytest

from strata.BUILDERS.image_builder import ImageBuilder
from strata.MODELS.settings import StrataSettings
from strata.REGISTRY.image_store import ImageStore
from strata.REGISTRY.layer_cache import LayerCache
from strata.REGISTRY.registry_client import DirectoryRegistry


@pytest.fixture
def settings(tmp_path):
    return StrataSettings(state_dir=tmp_path / "state", registry_dir=tmp_path / "registry")


@pytest.fixture
def layer_cache(settings):
    return LayerCache(str(settings.cache_dir))


@pytest.fixture
def image_store(settings):
    return ImageStore(str(settings.cache_dir))


@pytest.fixture
def registry(settings, layer_cache, image_store):
    return DirectoryRegistry(str(settings.resolved_registry_dir), layer_cache, image_store)


@pytest.fixture
def builder(settings, layer_cache, image_store, registry):
    return ImageBuilder(settings, layer_cache, image_store, registry=registry)


@pytest.fixture
def context(tmp_path):
    """A build context with a tiny node-style app."""
    ctx = tmp_path / "context"
    ctx.mkdir()
    (ctx / "package.json").write_text('{"name": "hello-node"}\n')
    (ctx / "app.js").write_text("console.log('Hello World!')\n")
    (ctx / "README.md").write_text("docs\n")
    return ctx
