"""
Product Service — コマンドハンドラ (CQRS Write 側)

商品の作成・部分更新・削除を処理する。
商品のスキーマは閉じておらず、任意のフィールドを持てる。
ID は常にサーバー側で採番し、入力の id は信用しない。
"""

import logging
from uuid import uuid4

from ...shared.errors import ValidationError
from ...shared.store import KeyValueStore

logger = logging.getLogger(__name__)


async def create_product(store: KeyValueStore, fields: dict) -> dict:
    """
    商品作成コマンド

    1. 新しい UUID を採番（入力に id があっても上書き）
    2. レコード全体を保存
    3. 保存したレコードを返す
    """
    if not isinstance(fields, dict):
        raise ValidationError("Product must be a JSON object")

    product = {**fields, "id": str(uuid4())}
    await store.put(product)

    logger.info("Created product %s", product["id"])
    return product


async def update_product(store: KeyValueStore, product_id: str, fields: dict) -> dict:
    """
    商品更新コマンド

    指定されたフィールドだけをマージする（指定の無いフィールドはそのまま）。
    商品が無ければ作成する（upsert）。id は変更できない。
    """
    if not isinstance(fields, dict):
        raise ValidationError("Product fields must be a JSON object")
    if "id" in fields and fields["id"] != product_id:
        logger.warning("Ignoring id in update body for product %s", product_id)

    product = await store.update(product_id, fields)

    logger.info("Updated product %s: %s", product_id, sorted(fields))
    return product


async def delete_product(store: KeyValueStore, product_id: str) -> dict:
    """商品削除コマンド（無条件・冪等）"""
    await store.delete(product_id)

    logger.info("Deleted product %s", product_id)
    return {"id": product_id, "deleted": True}
