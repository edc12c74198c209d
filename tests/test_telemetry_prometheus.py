import faker
import pytest

from prometheus_client import REGISTRY

from batchloader import AsyncLoader, Loader
from batchloader.telemetry.prometheus import LoaderMetrics

from tests.base import UserFetcher, user


fake = faker.Faker()


@pytest.fixture(name="loader_name")
def loader_name_fixture():
    return fake.pystr()


@pytest.fixture(name="sample_value")
def sample_value_fixture(loader_name):
    def sample_value(name):
        return REGISTRY.get_sample_value(name, dict(loader=loader_name))

    return sample_value


def test_sync(loader_name, sample_value):
    fetcher = UserFetcher()
    loader = Loader(fetcher, wait=0, metrics=LoaderMetrics(loader_name))

    assert sample_value("batchloader_cache_hits_total") is None
    assert sample_value("batchloader_cache_misses_total") is None
    assert sample_value("batchloader_batch_size_count") is None

    loader.load_all(["U1", "U2", "E1"])
    assert loader.load("U1") == user("U1")

    assert sample_value("batchloader_cache_hits_total") == 1.0
    assert sample_value("batchloader_cache_misses_total") == 3.0
    assert sample_value("batchloader_batch_size_count") == 1.0
    assert sample_value("batchloader_batch_size_sum") == 3.0
    assert sample_value("batchloader_fetch_time_count") == 1.0


@pytest.mark.asyncio
async def test_async(loader_name, sample_value):
    fetcher = UserFetcher()
    loader = AsyncLoader(
        fetcher.fetch_async,
        batch_capacity=2,
        wait=0,
        metrics=LoaderMetrics(loader_name),
    )

    await loader.load_all(["U1", "U2", "U3"])
    await loader.load_all(["U1", "U2"])

    assert sample_value("batchloader_cache_hits_total") == 2.0
    assert sample_value("batchloader_cache_misses_total") == 3.0
    assert sample_value("batchloader_batch_size_count") == 2.0
    assert sample_value("batchloader_batch_size_sum") == 3.0
    assert sample_value("batchloader_fetch_time_count") == 2.0
