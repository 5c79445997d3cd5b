"""
KeyValueStore のテスト

実際の SQLAlchemy (async) エンジンを一時ファイルの SQLite に向けて使う。
"""

import asyncio

import pytest

from services.shared.errors import (
    ConditionFailed,
    ConfigurationError,
    DependencyFailure,
    ValidationError,
)
from services.shared.store import KeyValueStore


class TestGetAndPut:
    async def test_get_missing_returns_none(self, product_store):
        assert await product_store.get("missing") is None

    async def test_put_then_get(self, product_store):
        record = {"id": "p1", "name": "Widget", "price": 9.99, "tags": ["a", "b"]}
        await product_store.put(record)

        assert await product_store.get("p1") == record

    async def test_put_replaces_whole_record(self, product_store):
        await product_store.put({"id": "p1", "name": "Widget", "price": 9.99})
        await product_store.put({"id": "p1", "name": "Gadget"})

        assert await product_store.get("p1") == {"id": "p1", "name": "Gadget"}

    async def test_put_requires_key_attribute(self, product_store):
        with pytest.raises(ValidationError):
            await product_store.put({"name": "no id"})

    async def test_put_requires_sort_key_when_table_has_one(self, order_store):
        with pytest.raises(ValidationError):
            await order_store.put({"userName": "alice"})

    async def test_conditional_put_rejects_existing_key(self, order_store):
        record = {"userName": "alice", "orderDate": "2026-01-01T00:00:00.000000Z", "totalPrice": 1}
        await order_store.put(record, overwrite=False)

        with pytest.raises(ConditionFailed):
            await order_store.put({**record, "totalPrice": 2}, overwrite=False)

        stored = await order_store.get("alice", "2026-01-01T00:00:00.000000Z")
        assert stored["totalPrice"] == 1


class TestUpdate:
    async def test_merges_only_supplied_fields(self, product_store):
        await product_store.put({"id": "p1", "name": "Widget", "price": 9.99, "category": "Tools"})

        merged = await product_store.update("p1", {"price": 42})

        assert merged == {"id": "p1", "name": "Widget", "price": 42, "category": "Tools"}
        assert await product_store.get("p1") == merged

    async def test_creates_missing_record(self, product_store):
        await product_store.update("p2", {"name": "New"})

        assert await product_store.get("p2") == {"id": "p2", "name": "New"}

    async def test_key_attribute_is_immutable(self, product_store):
        await product_store.put({"id": "p1", "name": "Widget"})

        await product_store.update("p1", {"id": "hijacked", "name": "Renamed"})

        assert await product_store.get("p1") == {"id": "p1", "name": "Renamed"}
        assert await product_store.get("hijacked") is None

    async def test_reserved_and_odd_field_names(self, product_store):
        fields = {
            "select": 1,
            "order": "desc",
            "name with space": True,
            "'; DROP TABLE products; --": "x",
        }
        await product_store.put({"id": "p1"})

        merged = await product_store.update("p1", fields)

        assert merged == {"id": "p1", **fields}
        assert await product_store.get("p1") == merged

    async def test_rejects_empty_update(self, product_store):
        with pytest.raises(ValidationError):
            await product_store.update("p1", {})

    async def test_rejects_update_with_only_key(self, product_store):
        with pytest.raises(ValidationError):
            await product_store.update("p1", {"id": "p1"})

    async def test_concurrent_updates_keep_every_field(self, product_store):
        await product_store.put({"id": "p1", "name": "Widget"})

        await asyncio.gather(*(product_store.update("p1", {f"f{i}": i}) for i in range(8)))

        stored = await product_store.get("p1")
        assert stored == {"id": "p1", "name": "Widget", **{f"f{i}": i for i in range(8)}}

    async def test_concurrent_updates_of_missing_record(self, product_store):
        await asyncio.gather(*(product_store.update("p1", {f"f{i}": i}) for i in range(8)))

        stored = await product_store.get("p1")
        assert stored == {"id": "p1", **{f"f{i}": i for i in range(8)}}

    async def test_update_after_put_sees_replaced_record(self, product_store):
        await product_store.put({"id": "p1", "name": "Widget", "price": 1})
        await product_store.update("p1", {"price": 2})
        await product_store.put({"id": "p1", "name": "Gadget"})

        merged = await product_store.update("p1", {"stock": None})

        assert merged == {"id": "p1", "name": "Gadget", "stock": None}
        assert await product_store.get("p1") == merged


class TestDelete:
    async def test_delete_is_idempotent(self, basket_store):
        await basket_store.put({"userName": "alice", "items": []})

        await basket_store.delete("alice")
        await basket_store.delete("alice")

        assert await basket_store.get("alice") is None


class TestScanAndQuery:
    async def test_scan_returns_everything_in_key_order(self, product_store):
        for pid in ["c", "a", "b"]:
            await product_store.put({"id": pid})

        page = await product_store.scan()

        assert [item["id"] for item in page.items] == ["a", "b", "c"]
        assert page.last_evaluated_key is None

    async def test_scan_pages_with_exclusive_start_key(self, product_store):
        for pid in ["a", "b", "c"]:
            await product_store.put({"id": pid})

        first = await product_store.scan(limit=2)
        second = await product_store.scan(limit=2, exclusive_start_key=first.last_evaluated_key)

        assert [item["id"] for item in first.items] == ["a", "b"]
        assert first.last_evaluated_key == {"id": "b"}
        assert [item["id"] for item in second.items] == ["c"]
        assert second.last_evaluated_key is None

    async def test_scan_pages_over_composite_keys(self, order_store):
        for date in ["2026-01-01", "2026-01-02", "2026-01-03"]:
            await order_store.put({"userName": "alice", "orderDate": date})

        first = await order_store.scan(limit=1)
        rest = await order_store.scan(exclusive_start_key=first.last_evaluated_key)

        assert first.last_evaluated_key == {"userName": "alice", "orderDate": "2026-01-01"}
        assert [item["orderDate"] for item in rest.items] == ["2026-01-02", "2026-01-03"]

    async def test_query_by_partition_key(self, order_store):
        await order_store.put({"userName": "alice", "orderDate": "2026-01-02"})
        await order_store.put({"userName": "alice", "orderDate": "2026-01-01"})
        await order_store.put({"userName": "bob", "orderDate": "2026-01-01"})

        orders = await order_store.query("alice")

        assert [o["orderDate"] for o in orders] == ["2026-01-01", "2026-01-02"]

    async def test_query_with_exact_sort_key(self, order_store):
        await order_store.put({"userName": "alice", "orderDate": "2026-01-01"})
        await order_store.put({"userName": "alice", "orderDate": "2026-01-01T10"})

        orders = await order_store.query("alice", "2026-01-01")

        assert orders == [{"userName": "alice", "orderDate": "2026-01-01"}]

    async def test_query_contains_filter(self, product_store):
        await product_store.put({"id": "p1", "category": "Power Tools", "tags": ["sale"]})

        assert await product_store.query("p1", contains={"category": "Tools"})
        assert await product_store.query("p1", contains={"tags": "sale"})
        assert await product_store.query("p1", contains={"category": "Garden"}) == []
        assert await product_store.query("p1", contains={"color": "red"}) == []


class TestFailures:
    def test_invalid_table_name(self, session_factory):
        with pytest.raises(ConfigurationError):
            KeyValueStore(session_factory, "products; DROP TABLE x", partition_key="id")

    async def test_store_errors_become_dependency_failures(self, session_factory):
        store = KeyValueStore(session_factory, "never_created", partition_key="id")

        with pytest.raises(DependencyFailure) as excinfo:
            await store.get("p1")

        assert excinfo.value.__cause__ is not None
