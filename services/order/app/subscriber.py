"""
Order Service — Redis Streams コンシューマ

チェックアウトイベントのストリームをコンシューマグループで購読し、
受け取ったイベントから注文を作成する。

Pub/Sub と違い、Streams は ACK されるまでエントリを保留リスト(PEL)に残す。
  - 成功したエントリだけ XACK する
  - 失敗したエントリは保留のまま残り、visibility timeout を過ぎたら XCLAIM で再配信する
  - max_receive_count 回配信しても失敗するエントリはデッドレターストリームへ移す
"""

import asyncio
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from ...shared.config import OrderSettings
from ...shared.errors import DependencyFailure
from ...shared.store import KeyValueStore
from . import handlers
from .handlers import BatchResult, QueueRecord

logger = logging.getLogger(__name__)

BLOCK_MS = 1000
ERROR_BACKOFF_SECONDS = 1.0


async def ensure_consumer_group(redis: aioredis.Redis, settings: OrderSettings) -> None:
    """コンシューマグループを作成する（ストリームが無ければ作る。既存のグループはそのまま）。"""
    try:
        await redis.xgroup_create(
            settings.event_bus_name, settings.consumer_group, id="0", mkstream=True
        )
    except ResponseError as e:
        if "BUSYGROUP" not in str(e):
            raise


async def consume_batch(
    redis: aioredis.Redis,
    store: KeyValueStore,
    settings: OrderSettings,
) -> BatchResult:
    """新しいエントリを最大 batch_size 件読み、注文を作成する。"""
    response = await redis.xreadgroup(
        settings.consumer_group,
        settings.consumer_name,
        {settings.event_bus_name: ">"},
        count=settings.batch_size,
        block=BLOCK_MS,
    )
    return await _process(redis, store, settings, _records_from_response(response))


async def reclaim_stale(
    redis: aioredis.Redis,
    store: KeyValueStore,
    settings: OrderSettings,
) -> BatchResult:
    """
    visibility timeout を過ぎた保留エントリを再配信する。

    配信回数が max_receive_count に達したものは再配信せずデッドレターへ移す。
    """
    pending = await redis.xpending_range(
        settings.event_bus_name,
        settings.consumer_group,
        min="-",
        max="+",
        count=settings.batch_size,
        idle=settings.visibility_timeout_ms,
    )
    if not pending:
        return BatchResult()

    exhausted = [
        p["message_id"] for p in pending if p["times_delivered"] >= settings.max_receive_count
    ]
    retry = [
        p["message_id"] for p in pending if p["times_delivered"] < settings.max_receive_count
    ]

    for message_id in exhausted:
        await _dead_letter(redis, settings, message_id)

    if not retry:
        return BatchResult()

    claimed = await redis.xclaim(
        settings.event_bus_name,
        settings.consumer_group,
        settings.consumer_name,
        min_idle_time=settings.visibility_timeout_ms,
        message_ids=retry,
    )
    records = [
        QueueRecord(message_id=message_id, body=fields)
        for message_id, fields in claimed or []
        if fields
    ]
    logger.info("Redelivering %d pending checkout events", len(records))
    return await _process(redis, store, settings, records)


async def run_subscriber(
    redis: aioredis.Redis,
    store: KeyValueStore,
    settings: OrderSettings,
    shutdown_event: asyncio.Event,
) -> None:
    """
    チェックアウトイベントのストリームを購読し、注文を作成する。
    shutdown_event がセットされるまで無限ループで待機する。

    どんな例外でもループは止めない（ログを出して少し待ってから続ける）。
    Redis のエラーの後はコンシューマグループを作り直してから読む。
    """
    group_ready = False
    while not shutdown_event.is_set():
        try:
            if not group_ready:
                await ensure_consumer_group(redis, settings)
                group_ready = True
                logger.info(
                    "Consuming %s as %s/%s",
                    settings.event_bus_name,
                    settings.consumer_group,
                    settings.consumer_name,
                )
            await reclaim_stale(redis, store, settings)
            await consume_batch(redis, store, settings)
        except RedisError:
            logger.exception("Failed to poll checkout events")
            group_ready = False
            await asyncio.sleep(ERROR_BACKOFF_SECONDS)
        except (OSError, DependencyFailure):
            logger.exception("Failed to poll checkout events")
            await asyncio.sleep(ERROR_BACKOFF_SECONDS)
        except Exception:
            logger.exception("Unexpected error while consuming checkout events")
            await asyncio.sleep(ERROR_BACKOFF_SECONDS)

    logger.info("Stopped consuming %s", settings.event_bus_name)


async def _process(
    redis: aioredis.Redis,
    store: KeyValueStore,
    settings: OrderSettings,
    records: list[QueueRecord],
) -> BatchResult:
    if not records:
        return BatchResult()

    result = await handlers.handle_queue_batch(store, records)
    if result.succeeded:
        await redis.xack(settings.event_bus_name, settings.consumer_group, *result.succeeded)
    if result.failed:
        logger.warning("Left %d checkout events pending for redelivery", len(result.failed))
    return result


async def _dead_letter(redis: aioredis.Redis, settings: OrderSettings, message_id: str) -> None:
    entries = await redis.xrange(settings.event_bus_name, min=message_id, max=message_id)
    for _, fields in entries:
        await redis.xadd(
            settings.dead_letter_stream, {**fields, "original-id": message_id}
        )
    await redis.xack(settings.event_bus_name, settings.consumer_group, message_id)

    if not entries:
        # ストリームから切り詰められていて、デッドレターへ写す内容が無い
        logger.error(
            "Checkout event %s exhausted its deliveries but was no longer in %s; dropped",
            message_id,
            settings.event_bus_name,
        )
        return
    logger.error("Moved checkout event %s to %s", message_id, settings.dead_letter_stream)


def _records_from_response(response) -> list[QueueRecord]:
    if not response:
        return []
    streams = response.items() if isinstance(response, dict) else response
    records = []
    for _stream, entries in streams:
        for message_id, fields in entries:
            records.append(QueueRecord(message_id=message_id, body=fields or {}))
    return records
