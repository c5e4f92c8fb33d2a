import pytest
from tenacity import wait_none

from fakes import InMemoryRepository, RecordingPublisher
from smfg_inventory.engine import AllocationEngine
from smfg_inventory.models import Product
from smfg_inventory.publisher import OutboxPublisher


@pytest.fixture
def repo():
    return InMemoryRepository()


@pytest.fixture
def engine(repo):
    return AllocationEngine(repo, OutboxPublisher(repo), retry_wait=wait_none())


@pytest.fixture
def broker():
    return RecordingPublisher()


@pytest.fixture
def add_product(repo):
    async def _add(sku="SSPROCK01", available=0, reserved=0, **overrides):
        product = Product(
            sku=sku,
            upc=overrides.pop("upc", "10235668"),
            name=overrides.pop("name", "Small Basic Sprocket"),
            available=available,
            reserved=reserved,
        )
        await repo.save_product(product)
        return product

    return _add
