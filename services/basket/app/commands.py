"""
Basket Service — コマンドハンドラ (CQRS Write 側)

バスケットはクライアントが持つ状態。クライアントは常にバスケット全体を送る。
そのため put はマージせず、アイテム一覧ごと置き換える。
"""

import logging

from ...shared.errors import ValidationError
from ...shared.store import KeyValueStore

logger = logging.getLogger(__name__)


async def put_basket(store: KeyValueStore, basket: dict) -> dict:
    """
    バスケット作成・置き換えコマンド

    userName ごとにバスケットは 1 つだけ。既存のものは丸ごと上書きする。
    """
    if not isinstance(basket, dict):
        raise ValidationError("Basket must be a JSON object")
    user_name = basket.get("userName")
    if not isinstance(user_name, str) or not user_name:
        raise ValidationError("userName is required")
    items = basket.get("items")
    if items is None:
        items = []
    if not isinstance(items, list):
        raise ValidationError("items must be a list")

    record = {**basket, "userName": user_name, "items": items}
    await store.put(record)

    logger.info("Stored basket for %s (%d items)", user_name, len(items))
    return record


async def delete_basket(store: KeyValueStore, user_name: str) -> dict:
    """バスケット削除コマンド（無条件・冪等）"""
    await store.delete(user_name)

    logger.info("Deleted basket for %s", user_name)
    return {"userName": user_name, "deleted": True}
