"""
Order Service: FastAPI エントリポイント

カート、チェックアウト、注文のライフサイクルを扱う。在庫は Inventory
Service から HTTP で読み、チェックアウト/キャンセル後の在庫変動は
イベントで伝える。
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Annotated

import httpx
import redis.asyncio as aioredis
from fastapi import FastAPI, Query, Request
from pydantic import BaseModel, PlainSerializer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from services.common.bus import EventBus, RedisStreamEventBus
from services.common.errors import error_response, install_error_handlers
from services.common.results import Failure

from . import config, queries
from .aggregate import Cart, OrderAggregate, OrderStatus
from .cart import CartService
from .checkout import CheckoutOrchestrator
from .client import InventoryClient
from .commands import OrderCommands
from .db import init_schema
from .errors import ErrorKind
from .events import OrderEventPublisher
from .payment import PaymentSimulator

logger = logging.getLogger(__name__)


def install_services(
    app: FastAPI,
    session_factory: async_sessionmaker[AsyncSession],
    inventory: InventoryClient,
    payments: PaymentSimulator,
    bus: EventBus,
    payment_timeout: float = config.PAYMENT_TIMEOUT_MS / 1000,
) -> None:
    publisher = OrderEventPublisher(bus)
    app.state.session_factory = session_factory
    app.state.carts = CartService(session_factory, inventory)
    app.state.checkout = CheckoutOrchestrator(
        session_factory, inventory, payments, publisher, payment_timeout
    )
    app.state.orders = OrderCommands(session_factory, payments, publisher)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    engine = create_async_engine(config.DATABASE_URL, echo=False)
    await init_schema(engine)
    http = httpx.AsyncClient(
        base_url=config.INVENTORY_SERVICE_URL,
        timeout=config.INVENTORY_TIMEOUT_MS / 1000,
    )
    redis = aioredis.from_url(config.REDIS_URL, decode_responses=True)
    bus = RedisStreamEventBus(redis, group=config.SERVICE_NAME)

    install_services(
        app,
        async_sessionmaker(engine, expire_on_commit=False),
        InventoryClient(http),
        PaymentSimulator(config.PAYMENT_SUCCESS_RATE, config.REFUND_SUCCESS_RATE),
        bus,
    )
    voided = await app.state.orders.void_stale_pending_orders(
        timedelta(seconds=config.PENDING_ORDER_TTL_SECONDS)
    )
    logger.info("Order service ready (%d stale orders voided)", voided)

    yield

    await http.aclose()
    await bus.close()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)
install_error_handlers(app, ErrorKind.INVALID_REQUEST_DATA)


# ── Request / Response Models ────────────────────

Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class AddItemRequest(BaseModel):
    book_id: int
    quantity: int


class UpdateQuantityRequest(BaseModel):
    quantity: int


class UpdateStatusRequest(BaseModel):
    status: OrderStatus


class CartItemResponse(BaseModel):
    book_id: int
    quantity: int
    unit_price: Money
    subtotal: Money


class CartResponse(BaseModel):
    customer_id: str
    items: list[CartItemResponse]
    total_amount: Money

    @classmethod
    def from_cart(cls, cart: Cart) -> "CartResponse":
        return cls(
            customer_id=cart.customer_id,
            items=[
                CartItemResponse(
                    book_id=item.book_id,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    subtotal=item.subtotal,
                )
                for item in cart.items
            ],
            total_amount=cart.total_amount,
        )


class OrderItemResponse(BaseModel):
    book_id: int
    quantity: int
    unit_price: Money
    subtotal: Money


class OrderResponse(BaseModel):
    id: str
    customer_id: str
    status: OrderStatus
    total_amount: Money
    items: list[OrderItemResponse]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_order(cls, order: OrderAggregate) -> "OrderResponse":
        return cls(
            id=order.id,
            customer_id=order.customer_id,
            status=order.status,
            total_amount=order.total_amount,
            items=[
                OrderItemResponse(
                    book_id=item.book_id,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    subtotal=item.subtotal,
                )
                for item in order.items
            ],
            created_at=order.created_at,
            updated_at=order.updated_at,
        )


# ── Cart Endpoints ───────────────────────────────

@app.get("/carts/{customer_id}", response_model=CartResponse)
async def get_cart(customer_id: str, request: Request):
    cart = await request.app.state.carts.get_or_create(customer_id)
    return CartResponse.from_cart(cart)


@app.post("/carts/{customer_id}/items", response_model=CartResponse)
async def add_cart_item(customer_id: str, req: AddItemRequest, request: Request):
    result = await request.app.state.carts.add_item(customer_id, req.book_id, req.quantity)
    if isinstance(result, Failure):
        return error_response(result, request)
    return CartResponse.from_cart(result)


@app.patch("/carts/{customer_id}/items/{book_id}", response_model=CartResponse)
async def update_cart_item(
    customer_id: str, book_id: int, req: UpdateQuantityRequest, request: Request
):
    """数量が 0 以下なら行を削除する。"""
    result = await request.app.state.carts.update_quantity(customer_id, book_id, req.quantity)
    if isinstance(result, Failure):
        return error_response(result, request)
    return CartResponse.from_cart(result)


@app.delete("/carts/{customer_id}/items/{book_id}", response_model=CartResponse)
async def remove_cart_item(customer_id: str, book_id: int, request: Request):
    result = await request.app.state.carts.remove_item(customer_id, book_id)
    if isinstance(result, Failure):
        return error_response(result, request)
    return CartResponse.from_cart(result)


@app.delete("/carts/{customer_id}", response_model=CartResponse)
async def clear_cart(customer_id: str, request: Request):
    cart = await request.app.state.carts.clear(customer_id)
    return CartResponse.from_cart(cart)


@app.post("/carts/{customer_id}/checkout", response_model=OrderResponse)
async def checkout(customer_id: str, request: Request):
    result = await request.app.state.checkout.checkout(customer_id)
    if isinstance(result, Failure):
        return error_response(result, request)
    return OrderResponse.from_order(result)


# ── Order Endpoints ──────────────────────────────

@app.get("/orders/{order_id}", response_model=OrderResponse)
async def get_order(order_id: str, request: Request):
    async with request.app.state.session_factory() as session:
        result = await queries.get_order(session, order_id)
    if isinstance(result, Failure):
        return error_response(result, request)
    return OrderResponse.from_order(result)


@app.get("/orders", response_model=list[OrderResponse])
async def list_orders(
    request: Request,
    customer_id: str = Query(...),
    status: OrderStatus | None = None,
):
    async with request.app.state.session_factory() as session:
        orders = await queries.list_orders(session, customer_id, status)
    return [OrderResponse.from_order(order) for order in orders]


@app.patch("/orders/{order_id}", response_model=OrderResponse)
async def update_order_status(order_id: str, req: UpdateStatusRequest, request: Request):
    result = await request.app.state.orders.update_status(order_id, req.status)
    if isinstance(result, Failure):
        return error_response(result, request)
    return OrderResponse.from_order(result)


@app.get("/health")
async def health():
    return {"status": "ok", "service": config.SERVICE_NAME}
