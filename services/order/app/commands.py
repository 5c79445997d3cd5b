"""
Order Service — コマンドハンドラ (CQRS Write 側)

チェックアウトイベントから注文レコードを作成する。

注文の識別子は (userName, orderDate)。orderDate は取り込み時刻で、
発行側ではなくここで付与する。そのため同じイベントが再配信されると
別の orderDate を持つ新しい注文になる（重複排除はしない）。
"""

import logging
from datetime import datetime, timedelta, timezone

from pydantic import ValidationError as PydanticValidationError

from ...shared.errors import ConditionFailed, ValidationError
from ...shared.events import CheckoutEvent
from ...shared.store import KeyValueStore

logger = logging.getLogger(__name__)

# 固定幅の ISO-8601 (UTC)。文字列の辞書順 = 時刻順になる。
ORDER_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
MAX_STAMP_ATTEMPTS = 10


def format_order_date(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime(ORDER_DATE_FORMAT)


async def create_order(
    store: KeyValueStore,
    event: CheckoutEvent | dict,
    now: datetime | None = None,
) -> dict:
    """
    注文作成コマンド

    1. 取り込み時刻を orderDate として付与
    2. 「キーが存在しないこと」を条件に 1 回の put で保存
    3. 同じ時刻の注文が既にあれば 1 マイクロ秒ずらして保存し直す
       （2 つの注文が 1 レコードに上書きされることは無い）
    """
    if not isinstance(event, CheckoutEvent):
        try:
            event = CheckoutEvent.model_validate(event)
        except PydanticValidationError as e:
            raise ValidationError(f"Malformed checkout event: {e}") from e

    stamp = now or datetime.now(timezone.utc)
    for _ in range(MAX_STAMP_ATTEMPTS):
        order = {
            "userName": event.userName,
            "orderDate": format_order_date(stamp),
            "totalPrice": event.totalPrice,
            "firstName": event.firstName,
            "lastName": event.lastName,
            "email": event.email,
            "address": event.address,
            "paymentMethod": event.paymentMethod,
            "items": event.items,
        }
        try:
            await store.put(order, overwrite=False)
        except ConditionFailed:
            stamp += timedelta(microseconds=1)
            continue

        logger.info("Created order %s/%s", order["userName"], order["orderDate"])
        return order

    raise ConditionFailed(f"Could not assign a unique orderDate for {event.userName}")
