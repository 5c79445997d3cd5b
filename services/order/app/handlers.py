"""
Order Service — 受信メッセージのディスパッチ

Order Service に届くメッセージの形は 3 種類ある。
形の判定は入口で 1 回だけ行い、それぞれ専用のハンドラに振り分ける。

  HTTP_REQUEST  {"httpMethod": "GET", "pathParameters": ..., "queryStringParameters": ...}
                → 注文のクエリ
  QUEUE_BATCH   {"Records": [{"messageId": ..., "body": <バスのエンベロープ>}, ...]}
                → 1 件ずつ独立に注文を作成し、失敗したものだけ報告する
  BUS_EVENT     {"source": ..., "detail-type": ..., "detail": {...}}
                → 注文を 1 件作成する（失敗は呼び出し元へそのまま送出）
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ...shared.errors import ValidationError
from ...shared.events import decode_checkout_event
from ...shared.store import KeyValueStore
from . import commands, queries

logger = logging.getLogger(__name__)


class InboundShape(str, Enum):
    HTTP_REQUEST = "HTTP_REQUEST"
    QUEUE_BATCH = "QUEUE_BATCH"
    BUS_EVENT = "BUS_EVENT"


@dataclass
class QueueRecord:
    message_id: str
    body: dict


@dataclass
class BatchResult:
    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def to_response(self) -> dict:
        """再配信すべきレコードだけを batchItemFailures として返す。"""
        return {"batchItemFailures": [{"itemIdentifier": mid} for mid in self.failed]}


def classify(event: Any) -> InboundShape:
    if not isinstance(event, dict):
        raise ValidationError("Inbound message must be a JSON object")
    if isinstance(event.get("Records"), list):
        return InboundShape.QUEUE_BATCH
    if "detail-type" in event and "detail" in event:
        return InboundShape.BUS_EVENT
    if "httpMethod" in event:
        return InboundShape.HTTP_REQUEST
    raise ValidationError("Unrecognized inbound message shape")


def records_from_batch(event: dict) -> list[QueueRecord]:
    """QUEUE_BATCH の Records を QueueRecord に変換する。body は JSON 文字列でもよい。"""
    records = []
    for index, raw in enumerate(event["Records"]):
        raw = raw if isinstance(raw, dict) else {}
        message_id = str(raw.get("messageId") or index)
        body = raw.get("body")
        if isinstance(body, str):
            try:
                body = json.loads(body)
            except json.JSONDecodeError:
                body = {"detail": body}
        records.append(QueueRecord(message_id=message_id, body=body if isinstance(body, dict) else {}))
    return records


async def handle_bus_event(store: KeyValueStore, envelope: dict) -> dict:
    event = decode_checkout_event(envelope)
    return await commands.create_order(store, event)


async def handle_queue_batch(store: KeyValueStore, records: list[QueueRecord]) -> BatchResult:
    """
    キューから受け取ったレコードを 1 件ずつ処理する。

    1 件の失敗で残りの処理を止めない。失敗したレコードは BatchResult.failed に入れ、
    トランスポート側がそれだけを再配信する。
    """
    result = BatchResult()
    for record in records:
        try:
            await handle_bus_event(store, record.body)
            result.succeeded.append(record.message_id)
        except Exception:
            logger.exception("Failed to create order from message %s", record.message_id)
            result.failed.append(record.message_id)
    return result


async def handle_http_request(store: KeyValueStore, event: dict) -> Any:
    """
    注文のクエリ

      GET                                       全注文
      GET  pathParameters.userName              ユーザーの注文
      GET  + queryStringParameters.orderDate    ユーザー + 注文日時の完全一致
    """
    method = event.get("httpMethod")
    if method != "GET":
        raise ValidationError(f'Unsupported route: "{method}"')

    user_name = (event.get("pathParameters") or {}).get("userName")
    order_date = (event.get("queryStringParameters") or {}).get("orderDate")
    if user_name and order_date:
        return await queries.get_orders_by_user_and_date(store, user_name, order_date)
    if user_name:
        return await queries.get_orders_by_user(store, user_name)
    return await queries.get_all_orders(store)


async def dispatch(store: KeyValueStore, event: dict) -> Any:
    shape = classify(event)
    logger.debug("Dispatching %s message", shape.value)

    if shape is InboundShape.QUEUE_BATCH:
        result = await handle_queue_batch(store, records_from_batch(event))
        return result.to_response()
    if shape is InboundShape.BUS_EVENT:
        return await handle_bus_event(store, event)
    return await handle_http_request(store, event)
