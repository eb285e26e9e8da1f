"""
Storefront — FastAPI エントリーポイント

注文処理バックエンド。Command (POST/PATCH) と Query (GET) のエンドポイントを分離。
認証はゲートウェイで済んでいる前提で、X-User-Id / X-User-Role ヘッダから
リクエスト主体を受け取る。

リポジトリ・トランザクション調整・イベント発行は起動時 (lifespan) に
組み立てて app.state.services に保持し、各エンドポイントへ注入する。
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from . import config
from .catalog import CatalogService
from .commands import OrderLifecycleController
from .errors import StorefrontError
from .inventory import ReservationEngine
from .memory import (
    MemoryOrderRepository,
    MemoryProductRepository,
    MemoryStore,
    MemoryTransactionContext,
)
from .models import Actor, Order, Product, Role
from .publisher import EventPublisher, NullPublisher, RedisEventPublisher
from .repositories import SqlOrderRepository, SqlProductRepository
from .transaction import SqlTransactionContext, TransactionCoordinator

logger = logging.getLogger(__name__)


# ── Wiring ───────────────────────────────────────


@dataclass
class Services:
    orders: OrderLifecycleController
    catalog: CatalogService
    engine: AsyncEngine | None = None
    redis: aioredis.Redis | None = None

    async def aclose(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
        if self.engine is not None:
            await self.engine.dispose()


def build_memory_services(
    store: MemoryStore | None = None,
    publisher: EventPublisher | None = None,
    timeout: float | None = None,
) -> Services:
    store = store or MemoryStore()
    products = MemoryProductRepository(store)
    controller = OrderLifecycleController(
        MemoryOrderRepository(store),
        ReservationEngine(products),
        TransactionCoordinator(MemoryTransactionContext(store), timeout=timeout),
        publisher,
    )
    return Services(orders=controller, catalog=CatalogService(products))


def build_sql_services(
    engine: AsyncEngine,
    publisher: EventPublisher | None = None,
    timeout: float | None = None,
) -> Services:
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    products = SqlProductRepository(session_factory)
    controller = OrderLifecycleController(
        SqlOrderRepository(session_factory),
        ReservationEngine(products),
        TransactionCoordinator(SqlTransactionContext(session_factory), timeout=timeout),
        publisher,
    )
    return Services(orders=controller, catalog=CatalogService(products), engine=engine)


def open_services() -> Services:
    """環境変数の設定に従ってサービス一式を組み立てる。"""
    redis_pool = None
    publisher: EventPublisher = NullPublisher()
    if config.EVENTS_ENABLED:
        redis_pool = aioredis.from_url(config.REDIS_URL, decode_responses=True)
        publisher = RedisEventPublisher(redis_pool, config.ORDER_EVENTS_CHANNEL)

    if config.STORE_BACKEND == "memory":
        services = build_memory_services(
            publisher=publisher, timeout=config.TRANSACTION_TIMEOUT
        )
    elif config.STORE_BACKEND == "sql":
        engine = create_async_engine(config.DATABASE_URL, echo=False)
        services = build_sql_services(
            engine, publisher=publisher, timeout=config.TRANSACTION_TIMEOUT
        )
    else:
        raise RuntimeError(f"Unknown STORE_BACKEND: {config.STORE_BACKEND}")
    services.redis = redis_pool
    logger.info("Storefront services ready: backend=%s", config.STORE_BACKEND)
    return services


# ── Request Models ───────────────────────────────


class OrderLineRequest(BaseModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(ge=1)


class CreateOrderRequest(BaseModel):
    items: list[OrderLineRequest] = Field(min_length=1)


class CreateProductRequest(BaseModel):
    name: str = Field(min_length=1)
    price: int = Field(ge=0)
    stock: int = Field(ge=0)


class UpdateProductRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    price: int | None = Field(default=None, ge=0)
    stock: int | None = Field(default=None, ge=0)


# ── Dependencies ─────────────────────────────────


def get_services(request: Request) -> Services:
    return request.app.state.services


def current_actor(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> Actor:
    if not x_user_id or not x_user_role:
        raise HTTPException(401, "Not authenticated")
    try:
        role = Role(x_user_role)
    except ValueError:
        raise HTTPException(401, f"Unknown role: {x_user_role}") from None
    return Actor(user_id=x_user_id, role=role)


def require_role(role: Role):
    def dependency(actor: Actor = Depends(current_actor)) -> Actor:
        if actor.role != role:
            raise HTTPException(403, "Insufficient permissions")
        return actor

    return dependency


async def handle_storefront_error(request: Request, exc: StorefrontError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# デッドロック検出 (40P01) とシリアライズ失敗 (40001) は再試行可能な競合
RETRYABLE_SQLSTATES = {"40P01", "40001"}


async def handle_database_error(request: Request, exc: DBAPIError):
    sqlstate = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    if sqlstate in RETRYABLE_SQLSTATES:
        logger.warning(
            "Database conflict on %s %s: %s", request.method, request.url.path, sqlstate
        )
        return JSONResponse(
            status_code=409,
            content={"detail": "Concurrent update conflict, retry the request"},
        )
    logger.error(
        "Database error on %s %s", request.method, request.url.path, exc_info=exc
    )
    return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


# ── Application ──────────────────────────────────


def create_app(services: Services | None = None) -> FastAPI:
    """
    services を渡すとそれを使う（テスト用）。
    渡さなければ lifespan で環境変数から組み立て、終了時に閉じる。
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(
            level=config.LOG_LEVEL,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        owned = services is None
        app.state.services = open_services() if owned else services
        yield
        if owned:
            await app.state.services.aclose()

    app = FastAPI(title="Storefront Order Service", lifespan=lifespan)
    app.add_exception_handler(StorefrontError, handle_storefront_error)
    app.add_exception_handler(DBAPIError, handle_database_error)

    # ── Command Endpoints (Write 側) ─────────────

    @app.post("/orders", status_code=201)
    async def cmd_create_order(
        req: CreateOrderRequest,
        actor: Actor = Depends(require_role(Role.CUSTOMER)),
        svc: Services = Depends(get_services),
    ) -> Order:
        """注文作成（customer のみ）"""
        return await svc.orders.create(
            actor.user_id, [(line.product_id, line.quantity) for line in req.items]
        )

    @app.post("/orders/{order_id}/pay")
    async def cmd_pay_order(
        order_id: str,
        actor: Actor = Depends(current_actor),
        svc: Services = Depends(get_services),
    ) -> Order:
        return await svc.orders.pay(order_id, actor)

    @app.post("/orders/{order_id}/cancel")
    async def cmd_cancel_order(
        order_id: str,
        actor: Actor = Depends(current_actor),
        svc: Services = Depends(get_services),
    ) -> Order:
        return await svc.orders.cancel(order_id, actor)

    @app.post("/products", status_code=201)
    async def cmd_create_product(
        req: CreateProductRequest,
        actor: Actor = Depends(require_role(Role.ADMIN)),
        svc: Services = Depends(get_services),
    ) -> Product:
        return await svc.catalog.create_product(req.name, req.price, req.stock)

    @app.patch("/products/{product_id}")
    async def cmd_update_product(
        product_id: str,
        req: UpdateProductRequest,
        actor: Actor = Depends(require_role(Role.ADMIN)),
        svc: Services = Depends(get_services),
    ) -> Product:
        return await svc.catalog.update_product(
            product_id, req.model_dump(exclude_unset=True, exclude_none=True)
        )

    # ── Query Endpoints (Read 側) ────────────────

    @app.get("/orders")
    async def query_orders(
        actor: Actor = Depends(current_actor),
        svc: Services = Depends(get_services),
    ) -> list[Order]:
        """admin は全注文、customer は自分の注文のみ"""
        return await svc.orders.get(actor)

    @app.get("/products/{product_id}")
    async def query_product(
        product_id: str, svc: Services = Depends(get_services)
    ) -> Product:
        return await svc.catalog.get_product(product_id)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "storefront"}

    return app


app = create_app()
