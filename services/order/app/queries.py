"""
Order Service — クエリハンドラ (CQRS Read 側)

注文テーブルはパーティションキー userName、ソートキー orderDate。
"""

from ...shared.store import KeyValueStore


async def get_all_orders(store: KeyValueStore) -> list[dict]:
    """全注文（テーブル全体のスキャン、O(n)）"""
    page = await store.scan()
    return page.items


async def get_orders_by_user(store: KeyValueStore, user_name: str) -> list[dict]:
    """指定ユーザーの注文（orderDate の昇順）"""
    return await store.query(user_name)


async def get_orders_by_user_and_date(
    store: KeyValueStore, user_name: str, order_date: str
) -> list[dict]:
    """
    userName と orderDate の完全一致。範囲検索ではないので、
    呼び出し側は orderDate の文字列をそのまま渡す必要がある。
    """
    return await store.query(user_name, order_date)
