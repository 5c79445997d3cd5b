"""
Product Service — クエリハンドラ (CQRS Read 側)
"""

from ...shared.store import KeyValueStore


async def get_product(store: KeyValueStore, product_id: str) -> dict | None:
    return await store.get(product_id)


async def list_products(store: KeyValueStore) -> list[dict]:
    """
    全商品を返す。

    テーブル全体のスキャンで O(n)。
    大きなカタログではページング付きの store.scan(limit, exclusive_start_key) を使うこと。
    """
    page = await store.scan()
    return page.items


async def list_products_by_category(
    store: KeyValueStore, product_id: str, category: str
) -> list[dict]:
    """
    id で引き、category に部分一致するものだけ返す。

    id の完全一致 + category の部分一致、という組み合わせは互換性のために残している。
    """
    return await store.query(product_id, contains={"category": category})
