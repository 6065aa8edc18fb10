from __future__ import annotations

import pytest

from sqla_batchloads import LoaderScope, UserError

from ..models import Base, Brand, Product, Store


pytestmark = pytest.mark.anyio


class TestInsert:
    async def test_sets_timestamps(self, seed_data: dict[str, list[Base]]) -> None:
        store = await Store.insert({"id": 20, "name": "West", "region": "us", "brand_id": 3})

        assert store.id == 20
        assert store.created_at is not None
        assert store.updated_at == store.created_at

    async def test_visible_to_loaders(self, seed_data: dict[str, list[Base]], scope: LoaderScope) -> None:
        await Store.insert({"id": 20, "name": "West", "region": "us", "brand_id": 3})
        initech = await Brand.load_by_id(3, scope=scope)

        stores = await initech.load_relation("stores", scope=scope)

        assert [store.name for store in stores] == ["West"]

    async def test_model_without_timestamps(self, seed_data: dict[str, list[Base]]) -> None:
        product = await Product.insert({"id": 10, "name": "Sprocket", "price": 5, "store_id": 2})

        assert product.active is True
        assert (await Product.load_by_id(10)).name == "Sprocket"


class TestSave:
    async def test_with_id_patches(self, seed_data: dict[str, list[Base]]) -> None:
        assert await Store.save({"id": 2, "name": "South Side"}) == 1

        assert (await Store.load_by_id(2)).name == "South Side"

    async def test_without_id_inserts(self, seed_data: dict[str, list[Base]], db_backend: str) -> None:
        if db_backend != "sqlite":
            pytest.skip("seeded rows use explicit ids, the postgres sequence still starts at 1")

        brand = await Brand.save({"id": None, "name": "Umbrella"})

        assert isinstance(brand, Brand)
        assert brand.id is not None
        assert (await Brand.load_by_id(brand.id)).name == "Umbrella"


class TestModelErrors:
    def test_per_model_error_type(self) -> None:
        error = Store.Error({"name": "already taken"})

        assert isinstance(error, UserError)
        assert type(error).__name__ == "StoreError"
        assert Store.Error is not Brand.Error
        assert error.data == {"name": "already taken"}
