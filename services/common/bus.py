"""
イベントバス: publish(topic, payload) / subscribe(topic, handler)

Redis Pub/Sub は投げっぱなしで、購読側が落ちている間の発行は失われる。
在庫調整には at-least-once 配信が必要なので、本番のバスはサービスごとの
consumer group を使った Redis Streams で実装する:

  ┌──────────────┐  XADD order.placed   ┌──────────────┐
  │ Order        │ ──────────────────▶  │ Redis Stream │
  │ Service      │                      └──────┬───────┘
  └──────────────┘                             │ XREADGROUP (group=inventory)
                                        ┌──────▼───────┐
                                        │ Inventory    │  ハンドラが返ってから XACK。
                                        │ Service      │  失敗は pending に残り、
                                        └──────────────┘  後で再 claim される

  ``max_deliveries`` 回失敗したメッセージは ``<topic>.dlq`` に退避する。
  ハンドラが ``PoisonMessage`` を投げた場合は初回で退避する。

したがってハンドラは冪等でなければならない。
"""

import asyncio
import json
import logging
import os
import socket
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Awaitable[None]]

DEAD_LETTER_SUFFIX = ".dlq"


def dead_letter_topic(topic: str) -> str:
    return f"{topic}{DEAD_LETTER_SUFFIX}"


class PoisonMessage(Exception):
    """決して成功しないメッセージに対してハンドラが投げる。即座に dead letter へ送られる。"""


class EventBus(ABC):
    """Redis Streams 版とプロセス内版に共通のインターフェース。"""

    def __init__(self, max_deliveries: int = 5) -> None:
        self.max_deliveries = max_deliveries
        self._handlers: dict[str, Handler] = {}

    def subscribe(self, topic: str, handler: Handler) -> None:
        self._handlers[topic] = handler

    @abstractmethod
    async def publish(self, topic: str, payload: dict) -> None:
        ...

    @abstractmethod
    async def run(self, shutdown_event: asyncio.Event) -> None:
        """shutdown_event がセットされるまで、購読中のハンドラへ配信し続ける。"""

    async def close(self) -> None:
        return None


class RedisStreamEventBus(EventBus):
    def __init__(
        self,
        redis: aioredis.Redis,
        group: str,
        consumer: str | None = None,
        max_deliveries: int = 5,
        claim_idle_ms: int = 30_000,
        block_ms: int = 1_000,
        batch_size: int = 10,
    ) -> None:
        super().__init__(max_deliveries)
        self.redis = redis
        self.group = group
        self.consumer = consumer or f"{group}-{socket.gethostname()}-{os.getpid()}"
        self.claim_idle_ms = claim_idle_ms
        self.block_ms = block_ms
        self.batch_size = batch_size

    async def publish(self, topic: str, payload: dict) -> None:
        await self.redis.xadd(topic, {"payload": json.dumps(payload, default=str)})

    async def run(self, shutdown_event: asyncio.Event) -> None:
        if not self._handlers:
            logger.warning("Event bus started with no subscriptions")
            return

        groups_ready = False
        while not shutdown_event.is_set():
            try:
                if not groups_ready:
                    await self._ensure_groups()
                    groups_ready = True
                    logger.info(
                        "Consuming %s as group=%s consumer=%s",
                        ", ".join(self._handlers), self.group, self.consumer,
                    )
                await self._reclaim_stale()
                await self._read_new()
            except RedisConnectionError:
                logger.warning("Lost connection to Redis, retrying in 5s...")
                await asyncio.sleep(5)

    async def close(self) -> None:
        await self.redis.aclose()

    # ── 内部処理 ───────────────────────────────────

    async def _ensure_groups(self) -> None:
        for topic in self._handlers:
            try:
                await self.redis.xgroup_create(topic, self.group, id="0", mkstream=True)
            except ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise

    async def _read_new(self) -> None:
        response = await self.redis.xreadgroup(
            self.group,
            self.consumer,
            {topic: ">" for topic in self._handlers},
            count=self.batch_size,
            block=self.block_ms,
        )
        for topic, messages in response or []:
            for message_id, fields in messages:
                await self._dispatch(topic, message_id, fields)

    async def _reclaim_stale(self) -> None:
        """ハンドラが失敗したメッセージ (claim_idle_ms 以上 pending) を再配信する。"""
        for topic in self._handlers:
            pending = await self.redis.xpending_range(
                topic, self.group, min="-", max="+",
                count=self.batch_size, idle=self.claim_idle_ms,
            )
            for entry in pending:
                message_id = entry["message_id"]
                if entry["times_delivered"] >= self.max_deliveries:
                    found = await self.redis.xrange(topic, min=message_id, max=message_id)
                    raw = found[0][1].get("payload", "") if found else ""
                    await self._dead_letter(
                        topic, message_id, raw,
                        f"gave up after {entry['times_delivered']} deliveries",
                    )
                    continue

                claimed = await self.redis.xclaim(
                    topic, self.group, self.consumer,
                    min_idle_time=self.claim_idle_ms,
                    message_ids=[message_id],
                )
                for claimed_id, fields in claimed:
                    logger.info(
                        "Redelivering %s on %s (attempt %d)",
                        claimed_id, topic, entry["times_delivered"] + 1,
                    )
                    await self._dispatch(topic, claimed_id, fields)

    async def _dispatch(self, topic: str, message_id: str, fields: dict) -> None:
        raw = fields.get("payload")
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError):
            await self._dead_letter(topic, message_id, raw or "", "undecodable payload")
            return

        try:
            await self._handlers[topic](payload)
        except PoisonMessage as e:
            await self._dead_letter(topic, message_id, raw, str(e))
            return
        except Exception:
            logger.exception(
                "Handler for %s failed on message %s, left pending for redelivery",
                topic, message_id,
            )
            return

        await self.redis.xack(topic, self.group, message_id)

    async def _dead_letter(self, topic: str, message_id: str, raw: str, reason: str) -> None:
        await self.redis.xadd(
            dead_letter_topic(topic),
            {"payload": raw, "error": reason, "source_id": message_id},
        )
        await self.redis.xack(topic, self.group, message_id)
        logger.error("Message %s on %s routed to %s: %s",
                     message_id, topic, dead_letter_topic(topic), reason)


@dataclass
class _Envelope:
    topic: str
    raw: str
    deliveries: int = 0


class InMemoryEventBus(EventBus):
    """
    Redis 版と同じ配信セマンティクスのプロセス内バス。
    ハンドラが失敗するとキューに戻し、max_deliveries 回で dead_letters へ。
    """

    def __init__(self, max_deliveries: int = 5, poll_interval: float = 0.05) -> None:
        super().__init__(max_deliveries)
        self.poll_interval = poll_interval
        self.published: list[tuple[str, dict]] = []
        self.dead_letters: list[tuple[str, str, str]] = []
        self._queue: deque[_Envelope] = deque()

    async def publish(self, topic: str, payload: dict) -> None:
        raw = json.dumps(payload, default=str)
        self.published.append((topic, json.loads(raw)))
        self._queue.append(_Envelope(topic, raw))

    def publish_raw(self, topic: str, raw: str) -> None:
        self._queue.append(_Envelope(topic, raw))

    async def deliver_pending(self) -> int:
        """購読中のトピックに溜まった分をすべて処理し、成功した件数を返す。"""
        delivered = 0
        waiting: deque[_Envelope] = deque()
        while self._queue:
            envelope = self._queue.popleft()
            handler = self._handlers.get(envelope.topic)
            if handler is None:
                waiting.append(envelope)
                continue

            try:
                payload = json.loads(envelope.raw)
            except ValueError:
                self._dead_letter(envelope, "undecodable payload")
                continue

            envelope.deliveries += 1
            try:
                await handler(payload)
            except PoisonMessage as e:
                self._dead_letter(envelope, str(e))
                continue
            except Exception:
                logger.exception(
                    "Handler for %s failed (attempt %d)", envelope.topic, envelope.deliveries
                )
                if envelope.deliveries >= self.max_deliveries:
                    self._dead_letter(
                        envelope, f"gave up after {envelope.deliveries} deliveries"
                    )
                else:
                    self._queue.append(envelope)
                continue
            delivered += 1

        self._queue.extend(waiting)
        return delivered

    async def run(self, shutdown_event: asyncio.Event) -> None:
        while not shutdown_event.is_set():
            await self.deliver_pending()
            await asyncio.sleep(self.poll_interval)

    def _dead_letter(self, envelope: _Envelope, reason: str) -> None:
        self.dead_letters.append((dead_letter_topic(envelope.topic), envelope.raw, reason))
        logger.error("Message on %s dead-lettered: %s", envelope.topic, reason)
