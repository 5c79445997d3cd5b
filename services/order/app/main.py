"""
Order Service — FastAPI エントリーポイント

チェックアウトイベントを取り込んで注文を作成し、注文のクエリ API を提供する。

イベントの受け取り方は 2 通り（どちらも同じ create_order に行き着く）:
  - キュー: Redis Streams のコンシューマグループ（lifespan でバックグラウンド起動）
  - 直接配信: POST /events にバスのエンベロープ（またはバッチ）を送る

┌───────────────┐  checkout events  ┌───────────────┐
│ Basket Service │ ── Redis Stream ─▶│ Order Service │
│  (checkout)    │   (at-least-once) │  (ingest)     │
└───────────────┘                   └───────┬───────┘
                                            │
                                    ┌───────▼───────┐
                                    │  Order table  │
                                    └───────────────┘

  GET  /order                          全注文
  GET  /order/{userName}               ユーザーの注文
  GET  /order/{userName}?orderDate=X   ユーザー + 注文日時の完全一致
  POST /events                         イベントの直接配信

起動:
  uvicorn services.order.app.main:create_app --factory
"""

import asyncio
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from ...shared.config import OrderSettings, configure_logging
from ...shared.errors import ValidationError
from ...shared.http import read_json, register_exception_handlers, success
from ...shared.store import KeyValueStore
from . import handlers, queries
from .subscriber import run_subscriber


def create_app(
    settings: OrderSettings | None = None,
    redis: aioredis.Redis | None = None,
) -> FastAPI:
    settings = settings or OrderSettings.from_env()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """起動時に注文ストアを用意し、キューコンシューマをバックグラウンドタスクとして開始する。"""
        engine = create_async_engine(settings.database_url, echo=False)
        async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        app.state.order_store = KeyValueStore(
            async_session,
            settings.order_table,
            partition_key="userName",
            sort_key="orderDate",
        )
        await app.state.order_store.create_table()

        redis_pool = None
        subscriber_task = None
        shutdown_event = asyncio.Event()
        if settings.consumer_enabled:
            redis_pool = redis or aioredis.from_url(settings.redis_url, decode_responses=True)
            subscriber_task = asyncio.create_task(
                run_subscriber(redis_pool, app.state.order_store, settings, shutdown_event)
            )
        yield
        shutdown_event.set()
        if subscriber_task is not None:
            subscriber_task.cancel()
            try:
                await subscriber_task
            except asyncio.CancelledError:
                pass
        if redis_pool is not None and redis is None:
            await redis_pool.aclose()
        await engine.dispose()

    app = FastAPI(title="Order Service", lifespan=lifespan)
    register_exception_handlers(app)

    # ── Query Endpoints (Read 側) ────────────────────

    @app.get("/order")
    async def query_list_orders(request: Request):
        """全注文を取得"""
        store = request.app.state.order_store
        return success("GET", await queries.get_all_orders(store))

    @app.get("/order/{user_name}")
    async def query_user_orders(user_name: str, request: Request, orderDate: str | None = None):
        """指定ユーザーの注文を取得。orderDate があれば完全一致で絞り込む"""
        store = request.app.state.order_store
        if orderDate is not None:
            body = await queries.get_orders_by_user_and_date(store, user_name, orderDate)
        else:
            body = await queries.get_orders_by_user(store, user_name)
        return success("GET", body)

    # ── Event Endpoint (直接配信) ────────────────────

    @app.post("/events")
    async def receive_events(request: Request):
        """
        バスからの直接配信を受け取る。

        単一のイベントなら作成した注文を、バッチなら batchItemFailures を返す。
        """
        payload = await read_json(request)
        shape = handlers.classify(payload)
        if shape is handlers.InboundShape.HTTP_REQUEST:
            raise ValidationError("HTTP requests are not accepted on /events")
        store = request.app.state.order_store
        return success("POST", await handlers.dispatch(store, payload))

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "order-service"}

    return app
