"""
Basket Service — クエリハンドラ (CQRS Read 側)
"""

from ...shared.store import KeyValueStore


async def get_basket(store: KeyValueStore, user_name: str) -> dict | None:
    return await store.get(user_name)


async def list_baskets(store: KeyValueStore) -> list[dict]:
    page = await store.scan()
    return page.items
