"""
Product Service — FastAPI エントリーポイント

商品カタログの CRUD を提供する。
データベースエンジンはアプリケーションごとに 1 つだけ作り、
lifespan の間ストアに注入して使い回す（リクエストごとに作り直さない）。

  GET    /product                    全商品
  GET    /product/{id}               商品 1 件
  GET    /product/{id}?category=X    id + カテゴリ部分一致
  POST   /product                    作成 (id はサーバーで採番)
  PUT    /product/{id}               部分更新 (upsert)
  DELETE /product/{id}               削除

起動:
  uvicorn services.product.app.main:create_app --factory
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from ...shared.config import ProductSettings, configure_logging
from ...shared.http import read_json, register_exception_handlers, success
from ...shared.store import KeyValueStore
from . import commands, queries


def create_app(settings: ProductSettings | None = None) -> FastAPI:
    settings = settings or ProductSettings.from_env()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = create_async_engine(settings.database_url, echo=False)
        async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        app.state.product_store = KeyValueStore(
            async_session, settings.product_table, partition_key="id"
        )
        await app.state.product_store.create_table()
        yield
        await engine.dispose()

    app = FastAPI(title="Product Service", lifespan=lifespan)
    register_exception_handlers(app)

    # ── Query Endpoints (Read 側) ────────────────────

    @app.get("/product")
    async def query_list_products(request: Request):
        """全商品を取得"""
        store = request.app.state.product_store
        return success("GET", await queries.list_products(store))

    @app.get("/product/{product_id}")
    async def query_get_product(product_id: str, request: Request, category: str | None = None):
        """指定商品を取得。category があればカテゴリで絞り込む"""
        store = request.app.state.product_store
        if category is not None:
            body = await queries.list_products_by_category(store, product_id, category)
        else:
            body = await queries.get_product(store, product_id) or {}
        return success("GET", body)

    # ── Command Endpoints (Write 側) ─────────────────

    @app.post("/product")
    async def cmd_create_product(request: Request):
        """商品作成コマンド"""
        payload = await read_json(request)
        store = request.app.state.product_store
        return success("POST", await commands.create_product(store, payload))

    @app.put("/product/{product_id}")
    async def cmd_update_product(product_id: str, request: Request):
        """商品更新コマンド（部分更新）"""
        payload = await read_json(request)
        store = request.app.state.product_store
        return success("PUT", await commands.update_product(store, product_id, payload))

    @app.delete("/product/{product_id}")
    async def cmd_delete_product(product_id: str, request: Request):
        """商品削除コマンド"""
        store = request.app.state.product_store
        return success("DELETE", await commands.delete_product(store, product_id))

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "product-service"}

    return app
