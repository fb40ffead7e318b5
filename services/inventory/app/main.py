"""
Inventory Service: FastAPI エントリポイント

書籍の在庫を HTTP で提供し、Order Service からの在庫調整イベントを
バックグラウンドタスクで消費する。

┌──────────────┐  order.placed     ┌───────────────────┐
│ Order Service│ ── Redis Stream ▶ │ Inventory Service │
│              │  order.cancelled  │ (consumer group)  │
└──────┬───────┘                   └────────┬──────────┘
       │  GET /books/{id}                   │
       └──────────── HTTP ─────────────────▶│
                                   ┌────────▼──────────┐
                                   │  Inventory DB     │
                                   └───────────────────┘
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Annotated

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from pydantic import BaseModel, PlainSerializer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from services.common.bus import RedisStreamEventBus
from services.common.errors import error_response, install_error_handlers
from services.common.results import Failure

from . import commands, config, queries
from .aggregate import Book
from .consumer import StockAdjustmentConsumer
from .db import init_schema
from .errors import ErrorKind

logger = logging.getLogger(__name__)


def install_services(app: FastAPI, session_factory: async_sessionmaker[AsyncSession]) -> None:
    app.state.session_factory = session_factory
    app.state.consumer = StockAdjustmentConsumer(session_factory)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """在庫調整コンシューマをバックグラウンドタスクとして起動する。"""
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    engine = create_async_engine(config.DATABASE_URL, echo=False)
    await init_schema(engine)
    install_services(app, async_sessionmaker(engine, expire_on_commit=False))

    redis = aioredis.from_url(config.REDIS_URL, decode_responses=True)
    bus = RedisStreamEventBus(
        redis,
        group=config.SERVICE_NAME,
        max_deliveries=config.EVENT_MAX_DELIVERIES,
        claim_idle_ms=config.EVENT_CLAIM_IDLE_MS,
    )
    app.state.consumer.register(bus)

    shutdown_event = asyncio.Event()
    consumer_task = asyncio.create_task(bus.run(shutdown_event))
    yield
    shutdown_event.set()
    consumer_task.cancel()
    try:
        await consumer_task
    except asyncio.CancelledError:
        pass
    await bus.close()
    await engine.dispose()


app = FastAPI(title="Inventory Service", lifespan=lifespan)
install_error_handlers(app, ErrorKind.INVALID_REQUEST_DATA)


# ── Response Models ──────────────────────────────

Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class BookResponse(BaseModel):
    id: int
    title: str
    author: str
    price: Money
    quantity: int
    updated_at: datetime

    @classmethod
    def from_book(cls, book: Book) -> "BookResponse":
        return cls(
            id=book.id,
            title=book.title,
            author=book.author,
            price=book.price,
            quantity=book.quantity,
            updated_at=book.updated_at,
        )


# ── Endpoints (Read / Write) ─────────────────────

@app.get("/books/{book_id}", response_model=BookResponse)
async def get_book(book_id: int, request: Request):
    async with request.app.state.session_factory() as session:
        result = await queries.get_book(session, book_id)
    if isinstance(result, Failure):
        return error_response(result, request)
    return BookResponse.from_book(result)


@app.patch("/books/{book_id}/inventory", response_model=BookResponse)
async def update_inventory(book_id: int, quantity: int, request: Request):
    """在庫数を絶対値で設定する (差分ではない)。"""
    async with request.app.state.session_factory() as session:
        result = await commands.update_inventory(session, book_id, quantity)
    if isinstance(result, Failure):
        return error_response(result, request)
    return BookResponse.from_book(result)


@app.get("/health")
async def health():
    return {"status": "ok", "service": config.SERVICE_NAME}
