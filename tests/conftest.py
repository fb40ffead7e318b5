import datetime as dt
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from services.common.bus import InMemoryEventBus
from services.inventory.app import db as inventory_db_schema
from services.order.app import db as order_db_schema
from services.order.app.cart import CartService
from services.order.app.checkout import CheckoutOrchestrator
from services.order.app.client import InventoryClient
from services.order.app.commands import OrderCommands
from services.order.app.events import OrderEventPublisher
from services.order.app.payment import PaymentSimulator


class InventoryStub:
    """Answers the Inventory Service endpoints the order side calls."""

    def __init__(self) -> None:
        self.books: dict[int, dict] = {}
        self.down = False
        self.calls: list[str] = []

    def add_book(self, book_id: int, price: str, quantity: int, title: str = "") -> None:
        self.books[book_id] = {
            "id": book_id,
            "title": title or f"Book {book_id}",
            "author": "Anon",
            "price": float(price),
            "quantity": quantity,
            "updated_at": "2026-01-01T00:00:00",
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(f"{request.method} {request.url.path}")
        if self.down:
            raise httpx.ConnectError("connection refused", request=request)

        parts = request.url.path.strip("/").split("/")
        book = self.books.get(int(parts[1]))
        if book is None:
            return httpx.Response(404, json={"status": 404, "message": "Book not found"})

        if request.method == "PATCH":
            quantity = int(request.url.params["quantity"])
            if quantity < 0:
                return httpx.Response(400, json={"status": 400, "message": "negative"})
            book["quantity"] = quantity
        return httpx.Response(200, json=book)


@pytest.fixture
def inventory_stub():
    stub = InventoryStub()
    stub.add_book(1, "19.99", 10, "Dune")
    stub.add_book(5, "7.50", 20, "Emma")
    return stub


@pytest_asyncio.fixture
async def inventory_client(inventory_stub):
    http = httpx.AsyncClient(
        transport=httpx.MockTransport(inventory_stub.handler),
        base_url="http://inventory",
    )
    yield InventoryClient(http)
    await http.aclose()


@pytest_asyncio.fixture
async def order_sessions(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await order_db_schema.init_schema(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def inventory_sessions(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'inventory.db'}")
    await inventory_db_schema.init_schema(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def seed_book(inventory_sessions):
    async def seed(book_id: int, price: str, quantity: int, title: str = "") -> None:
        async with inventory_sessions() as session:
            await session.execute(
                insert(inventory_db_schema.books).values(
                    id=book_id,
                    title=title or f"Book {book_id}",
                    author="Anon",
                    price=Decimal(price),
                    quantity=quantity,
                    updated_at=dt.datetime(2026, 1, 1, tzinfo=dt.timezone.utc),
                )
            )
            await session.commit()

    return seed


@pytest.fixture
def bus():
    return InMemoryEventBus(max_deliveries=3)


@pytest.fixture
def payments():
    return PaymentSimulator(success_rate=1.0, refund_success_rate=1.0)


@pytest.fixture
def carts(order_sessions, inventory_client):
    return CartService(order_sessions, inventory_client)


@pytest.fixture
def orchestrator(order_sessions, inventory_client, payments, bus):
    return CheckoutOrchestrator(
        order_sessions, inventory_client, payments, OrderEventPublisher(bus), payment_timeout=1.0
    )


@pytest.fixture
def order_commands(order_sessions, payments, bus):
    return OrderCommands(order_sessions, payments, OrderEventPublisher(bus))
