"""
共通 — イベント定義とイベントバス

チェックアウトで発行するイベントと、その発行者(Publisher)。

イベントバスには Redis Streams を使う。
Pub/Sub と違い、XADD したエントリはストリームに残るので
コンシューマグループ経由で少なくとも 1 回(at-least-once)配信される。

ストリームのエントリ (バスのエンベロープ):
    source       発行元の識別子 (EVENT_SOURCE)
    detail-type  イベント種別 (EVENT_DETAILTYPE)
    detail       イベント本体 (JSON)
"""

import json
import logging
from typing import Any

import redis.asyncio as aioredis
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError

from .errors import DependencyFailure, ValidationError

logger = logging.getLogger(__name__)


class CheckoutEvent(BaseModel):
    """バスケットがチェックアウトされた（注文作成の唯一の入力）"""

    model_config = ConfigDict(extra="ignore")

    userName: str
    firstName: str | None = None
    lastName: str | None = None
    email: str | None = None
    address: Any = None
    paymentMethod: str | None = None
    totalPrice: float
    items: list[dict]


def encode_envelope(source: str, detail_type: str, detail: dict) -> dict:
    return {
        "source": source,
        "detail-type": detail_type,
        "detail": json.dumps(detail, default=str),
    }


def decode_checkout_event(envelope: dict) -> CheckoutEvent:
    """バスのエンベロープから CheckoutEvent を取り出す。壊れていれば ValidationError。"""
    detail = envelope.get("detail")
    try:
        if isinstance(detail, (str, bytes)):
            detail = json.loads(detail)
        return CheckoutEvent.model_validate(detail)
    except (json.JSONDecodeError, PydanticValidationError) as e:
        raise ValidationError(f"Malformed checkout event: {e}") from e


class EventPublisher:
    """Redis Streams へイベントを発行する"""

    def __init__(self, redis: aioredis.Redis):
        self.redis = redis

    async def publish(
        self,
        bus_name: str,
        source: str,
        detail_type: str,
        detail: dict,
    ) -> str:
        """
        イベントを発行し、ストリームのエントリ ID を返す。

        失敗した場合は DependencyFailure を送出する。
        ここではリトライしない。
        """
        try:
            event_id = await self.redis.xadd(
                bus_name, encode_envelope(source, detail_type, detail)
            )
        except (RedisError, OSError) as e:
            raise DependencyFailure(f"Failed to publish event to {bus_name}: {e}") from e

        logger.info("Published %s event to %s: %s", detail_type, bus_name, event_id)
        return event_id
