"""
Basket Service — FastAPI エントリーポイント

バスケットの CRUD と、チェックアウト（バスケット → チェックアウトイベント）を提供する。
データベースエンジンと Redis 接続は lifespan で 1 度だけ作り、
ストア・Publisher・オーケストレーターに注入する。

  GET    /basket                 全バスケット
  GET    /basket/{userName}      バスケット 1 件
  POST   /basket                 作成・置き換え
  DELETE /basket/{userName}      削除
  POST   /basket/checkout        チェックアウト

起動:
  uvicorn services.basket.app.main:create_app --factory
"""

from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from ...shared.config import BasketSettings, configure_logging
from ...shared.events import EventPublisher
from ...shared.http import read_json, register_exception_handlers, success
from ...shared.store import KeyValueStore
from . import commands, queries
from .orchestrator import CheckoutOrchestrator


def create_app(
    settings: BasketSettings | None = None,
    redis: aioredis.Redis | None = None,
) -> FastAPI:
    settings = settings or BasketSettings.from_env()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = create_async_engine(settings.database_url, echo=False)
        async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        redis_pool = redis or aioredis.from_url(settings.redis_url, decode_responses=True)

        app.state.basket_store = KeyValueStore(
            async_session, settings.basket_table, partition_key="userName"
        )
        await app.state.basket_store.create_table()
        app.state.orchestrator = CheckoutOrchestrator(
            app.state.basket_store,
            EventPublisher(redis_pool),
            bus_name=settings.event_bus_name,
            source=settings.event_source,
            detail_type=settings.event_detail_type,
        )
        yield
        if redis is None:
            await redis_pool.aclose()
        await engine.dispose()

    app = FastAPI(title="Basket Service", lifespan=lifespan)
    register_exception_handlers(app)

    # ── Query Endpoints (Read 側) ────────────────────

    @app.get("/basket")
    async def query_list_baskets(request: Request):
        """全バスケットを取得"""
        store = request.app.state.basket_store
        return success("GET", await queries.list_baskets(store))

    @app.get("/basket/{user_name}")
    async def query_get_basket(user_name: str, request: Request):
        """指定ユーザーのバスケットを取得"""
        store = request.app.state.basket_store
        return success("GET", await queries.get_basket(store, user_name) or {})

    # ── Command Endpoints (Write 側) ─────────────────

    @app.post("/basket/checkout")
    async def cmd_checkout(request: Request):
        """
        チェックアウトコマンド

        イベント発行に成功すればバスケットは削除される。
        削除だけ失敗した場合も成功として返し、warnings に理由を入れる。
        """
        payload = await read_json(request)
        result = await request.app.state.orchestrator.execute(payload)
        return success("POST", result.model_dump(mode="json"))

    @app.post("/basket")
    async def cmd_put_basket(request: Request):
        """バスケット作成・置き換えコマンド"""
        payload = await read_json(request)
        store = request.app.state.basket_store
        return success("POST", await commands.put_basket(store, payload))

    @app.delete("/basket/{user_name}")
    async def cmd_delete_basket(user_name: str, request: Request):
        """バスケット削除コマンド"""
        store = request.app.state.basket_store
        return success("DELETE", await commands.delete_basket(store, user_name))

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "basket-service"}

    return app
