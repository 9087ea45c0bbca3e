"""
Checkout Service — リポジトリ (Cart / Order Repository)

カートと注文の保存先を抽象化する。インメモリ実装と SQL 実装は
同じ契約を満たす差し替え可能な実装であり、並行するコードパスではない。

同時書き込みはバージョン番号による楽観的ロックで検出する:
  - 保存時に「読み込んだときの version」と一致する行だけを更新する
  - 一致しなければ ConcurrencyConflict → 呼び出し側が読み直してリトライ

Webhook の冪等性:
  適用済みイベント ID の記録と注文の状態更新は save_transition で
  1つのトランザクションとして行う。イベント ID は一意制約で守られるため、
  「記録だけ済んで遷移していない」「遷移したのに未記録」という窓は存在しない。
"""

import copy
import json
import logging
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .cart import CartAggregate, Pricing
from .errors import ConcurrencyConflict, DuplicateOrderNumber
from .events import PaymentEvent
from .order import OrderAggregate

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# ── 契約 ─────────────────────────────────────────


class CartRepository(Protocol):
    async def get(self, cart_key: str) -> CartAggregate | None: ...

    async def save(self, cart: CartAggregate) -> None: ...

    async def delete(self, cart_key: str) -> None: ...

    async def delete_expired(self, now: datetime | None = None) -> int: ...


class OrderRepository(Protocol):
    async def add(self, order: OrderAggregate) -> None: ...

    async def get(self, order_id: str) -> OrderAggregate | None: ...

    async def get_by_number(self, order_number: str) -> OrderAggregate | None: ...

    async def get_by_payment_ref(self, payment_ref: str) -> OrderAggregate | None: ...

    async def list_by_owner(self, owner_id: str) -> list[OrderAggregate]: ...

    async def save(self, order: OrderAggregate) -> None: ...

    async def save_transition(self, order: OrderAggregate, event: PaymentEvent) -> bool: ...

    async def is_event_applied(self, event_id: str) -> bool: ...


# ── インメモリ実装 ───────────────────────────────


class MemoryCartRepository:
    """開発・テスト用。ドキュメントをコピーして保持し、集約との参照共有を避ける。"""

    def __init__(self, pricing: Pricing) -> None:
        self.pricing = pricing
        self._rows: dict[str, dict] = {}

    async def get(self, cart_key: str) -> CartAggregate | None:
        row = self._rows.get(cart_key)
        if row is None:
            return None
        if row["expires_at"] and row["expires_at"] <= _now():
            del self._rows[cart_key]
            return None
        return CartAggregate.from_document(
            copy.deepcopy(row["document"]),
            self.pricing,
            version=row["version"],
            expires_at=row["expires_at"],
            updated_at=row["updated_at"],
        )

    async def save(self, cart: CartAggregate) -> None:
        current = self._rows.get(cart.key)
        current_version = current["version"] if current else 0
        if current_version != cart.version:
            raise ConcurrencyConflict(f"Cart {cart.key} was modified concurrently")
        cart.updated_at = _now()
        self._rows[cart.key] = {
            "document": copy.deepcopy(cart.to_document()),
            "version": cart.version + 1,
            "expires_at": cart.expires_at,
            "updated_at": cart.updated_at,
        }
        cart.version += 1

    async def delete(self, cart_key: str) -> None:
        self._rows.pop(cart_key, None)

    async def delete_expired(self, now: datetime | None = None) -> int:
        now = now or _now()
        expired = [k for k, r in self._rows.items() if r["expires_at"] and r["expires_at"] <= now]
        for key in expired:
            del self._rows[key]
        return len(expired)


class MemoryOrderRepository:
    def __init__(self) -> None:
        self._rows: dict[str, dict] = {}
        self._numbers: dict[str, str] = {}
        self._applied_events: dict[str, str] = {}

    def _load(self, order_id: str | None) -> OrderAggregate | None:
        row = self._rows.get(order_id) if order_id else None
        if row is None:
            return None
        return OrderAggregate.from_document(copy.deepcopy(row["document"]), version=row["version"])

    async def add(self, order: OrderAggregate) -> None:
        if order.order_number in self._numbers:
            raise DuplicateOrderNumber(order.order_number)
        self._rows[str(order.id)] = {"document": copy.deepcopy(order.to_document()), "version": 1}
        self._numbers[order.order_number] = str(order.id)
        order.version = 1

    async def get(self, order_id: str) -> OrderAggregate | None:
        return self._load(str(order_id))

    async def get_by_number(self, order_number: str) -> OrderAggregate | None:
        return self._load(self._numbers.get(order_number))

    async def get_by_payment_ref(self, payment_ref: str) -> OrderAggregate | None:
        for order_id, row in self._rows.items():
            if payment_ref in row["document"].get("payment_refs", []):
                return self._load(order_id)
        return None

    async def list_by_owner(self, owner_id: str) -> list[OrderAggregate]:
        orders = [
            self._load(order_id)
            for order_id, row in self._rows.items()
            if row["document"]["owner_id"] == owner_id
        ]
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    def _check_version(self, order: OrderAggregate) -> None:
        row = self._rows.get(str(order.id))
        if row is None or row["version"] != order.version:
            raise ConcurrencyConflict(f"Order {order.order_number} was modified concurrently")

    async def save(self, order: OrderAggregate) -> None:
        self._check_version(order)
        self._rows[str(order.id)] = {
            "document": copy.deepcopy(order.to_document()),
            "version": order.version + 1,
        }
        order.version += 1

    async def save_transition(self, order: OrderAggregate, event: PaymentEvent) -> bool:
        # await を挟まないため、イベントループ上ではこの区間全体が原子的
        if event.event_id in self._applied_events:
            return False
        self._check_version(order)
        self._applied_events[event.event_id] = str(order.id)
        self._rows[str(order.id)] = {
            "document": copy.deepcopy(order.to_document()),
            "version": order.version + 1,
        }
        order.version += 1
        return True

    async def is_event_applied(self, event_id: str) -> bool:
        return event_id in self._applied_events


# ── SQL 実装 ─────────────────────────────────────

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS carts (
        cart_key VARCHAR(255) PRIMARY KEY,
        is_anonymous BOOLEAN NOT NULL,
        document TEXT NOT NULL,
        version INTEGER NOT NULL,
        expires_at VARCHAR(64),
        updated_at VARCHAR(64) NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id VARCHAR(36) PRIMARY KEY,
        order_number VARCHAR(32) NOT NULL UNIQUE,
        owner_id VARCHAR(255) NOT NULL,
        payment_ref VARCHAR(255),
        order_status VARCHAR(32) NOT NULL,
        payment_status VARCHAR(32) NOT NULL,
        document TEXT NOT NULL,
        version INTEGER NOT NULL,
        created_at VARCHAR(64) NOT NULL,
        updated_at VARCHAR(64) NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_orders_owner_id ON orders (owner_id)",
    "CREATE INDEX IF NOT EXISTS ix_orders_payment_ref ON orders (payment_ref)",
    """
    CREATE TABLE IF NOT EXISTS order_payment_refs (
        payment_ref VARCHAR(255) PRIMARY KEY,
        order_id VARCHAR(36) NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS applied_payment_events (
        event_id VARCHAR(255) PRIMARY KEY,
        order_id VARCHAR(36) NOT NULL,
        event_type VARCHAR(64) NOT NULL,
        applied_at VARCHAR(64) NOT NULL
    )
    """,
]


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in SCHEMA:
            await conn.execute(text(statement))


class SqlCartRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], pricing: Pricing) -> None:
        self.session_factory = session_factory
        self.pricing = pricing

    async def get(self, cart_key: str) -> CartAggregate | None:
        async with self.session_factory() as session:
            result = await session.execute(
                text("SELECT document, version, expires_at, updated_at FROM carts WHERE cart_key = :key"),
                {"key": cart_key},
            )
            row = result.fetchone()
            if not row:
                return None
            expires_at = _parse(row.expires_at)
            if expires_at and expires_at <= _now():
                # 期限切れの行は削除して「存在しない」として扱う
                await session.execute(
                    text("DELETE FROM carts WHERE cart_key = :key AND version = :version"),
                    {"key": cart_key, "version": row.version},
                )
                await session.commit()
                return None
            return CartAggregate.from_document(
                json.loads(row.document),
                self.pricing,
                version=row.version,
                expires_at=expires_at,
                updated_at=_parse(row.updated_at),
            )

    async def save(self, cart: CartAggregate) -> None:
        now = _now()
        params = {
            "key": cart.key,
            "anon": not cart.owner.is_authenticated,
            "doc": json.dumps(cart.to_document()),
            "expected": cart.version,
            "version": cart.version + 1,
            "expires_at": _iso(cart.expires_at),
            "now": now.isoformat(),
        }
        async with self.session_factory() as session:
            if cart.version == 0:
                try:
                    await session.execute(
                        text("""
                            INSERT INTO carts (cart_key, is_anonymous, document, version, expires_at, updated_at)
                            VALUES (:key, :anon, :doc, :version, :expires_at, :now)
                        """),
                        params,
                    )
                except IntegrityError:
                    await session.rollback()
                    raise ConcurrencyConflict(f"Cart {cart.key} was created concurrently")
            else:
                result = await session.execute(
                    text("""
                        UPDATE carts
                        SET document = :doc, version = :version, expires_at = :expires_at, updated_at = :now
                        WHERE cart_key = :key AND version = :expected
                    """),
                    params,
                )
                if result.rowcount != 1:
                    await session.rollback()
                    raise ConcurrencyConflict(f"Cart {cart.key} was modified concurrently")
            await session.commit()
        cart.version += 1
        cart.updated_at = now

    async def delete(self, cart_key: str) -> None:
        async with self.session_factory() as session:
            await session.execute(text("DELETE FROM carts WHERE cart_key = :key"), {"key": cart_key})
            await session.commit()

    async def delete_expired(self, now: datetime | None = None) -> int:
        now = now or _now()
        async with self.session_factory() as session:
            result = await session.execute(
                text("""
                    DELETE FROM carts
                    WHERE expires_at IS NOT NULL AND expires_at <= :now
                """),
                {"now": now.isoformat()},
            )
            await session.commit()
            return result.rowcount or 0


class SqlOrderRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def _fetch_one(self, where: str, params: dict) -> OrderAggregate | None:
        async with self.session_factory() as session:
            result = await session.execute(
                text(f"SELECT document, version FROM orders WHERE {where}"),
                params,
            )
            row = result.fetchone()
        if not row:
            return None
        return OrderAggregate.from_document(json.loads(row.document), version=row.version)

    async def add(self, order: OrderAggregate) -> None:
        async with self.session_factory() as session:
            try:
                await session.execute(
                    text("""
                        INSERT INTO orders
                            (id, order_number, owner_id, payment_ref, order_status, payment_status,
                             document, version, created_at, updated_at)
                        VALUES
                            (:id, :number, :owner, :ref, :status, :payment_status,
                             :doc, 1, :created_at, :updated_at)
                    """),
                    {
                        "id": str(order.id),
                        "number": order.order_number,
                        "owner": order.owner_id,
                        "ref": order.payment_ref,
                        "status": order.order_status.value,
                        "payment_status": order.payment_status.value,
                        "doc": json.dumps(order.to_document()),
                        "created_at": order.created_at.isoformat(),
                        "updated_at": order.updated_at.isoformat(),
                    },
                )
                await self._record_payment_refs(session, order)
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise DuplicateOrderNumber(order.order_number)
        order.version = 1

    async def get(self, order_id: str) -> OrderAggregate | None:
        return await self._fetch_one("id = :id", {"id": str(order_id)})

    async def get_by_number(self, order_number: str) -> OrderAggregate | None:
        return await self._fetch_one("order_number = :number", {"number": order_number})

    async def get_by_payment_ref(self, payment_ref: str) -> OrderAggregate | None:
        return await self._fetch_one(
            "id = (SELECT order_id FROM order_payment_refs WHERE payment_ref = :ref)",
            {"ref": payment_ref},
        )

    async def list_by_owner(self, owner_id: str) -> list[OrderAggregate]:
        async with self.session_factory() as session:
            result = await session.execute(
                text("""
                    SELECT document, version FROM orders
                    WHERE owner_id = :owner
                    ORDER BY created_at DESC
                """),
                {"owner": owner_id},
            )
            rows = result.fetchall()
        return [OrderAggregate.from_document(json.loads(r.document), version=r.version) for r in rows]

    async def _update(self, session: AsyncSession, order: OrderAggregate) -> None:
        result = await session.execute(
            text("""
                UPDATE orders
                SET payment_ref = :ref, order_status = :status, payment_status = :payment_status,
                    document = :doc, version = :version, updated_at = :updated_at
                WHERE id = :id AND version = :expected
            """),
            {
                "id": str(order.id),
                "ref": order.payment_ref,
                "status": order.order_status.value,
                "payment_status": order.payment_status.value,
                "doc": json.dumps(order.to_document()),
                "version": order.version + 1,
                "expected": order.version,
                "updated_at": order.updated_at.isoformat(),
            },
        )
        if result.rowcount != 1:
            await session.rollback()
            raise ConcurrencyConflict(f"Order {order.order_number} was modified concurrently")
        await self._record_payment_refs(session, order)

    async def _record_payment_refs(self, session: AsyncSession, order: OrderAggregate) -> None:
        """過去の決済参照も含めて、参照 → 注文の対応を記録する。"""
        result = await session.execute(
            text("SELECT payment_ref FROM order_payment_refs WHERE order_id = :id"),
            {"id": str(order.id)},
        )
        known = {row.payment_ref for row in result.fetchall()}
        for ref in order.payment_refs:
            if ref not in known:
                await session.execute(
                    text("INSERT INTO order_payment_refs (payment_ref, order_id) VALUES (:ref, :id)"),
                    {"ref": ref, "id": str(order.id)},
                )

    async def save(self, order: OrderAggregate) -> None:
        async with self.session_factory() as session:
            await self._update(session, order)
            await session.commit()
        order.version += 1

    async def save_transition(self, order: OrderAggregate, event: PaymentEvent) -> bool:
        """
        適用済みイベントの記録と注文の更新を1トランザクションで行う。

        イベント ID が既に記録されていれば False (重複配信)。
        注文の version が一致しなければ ConcurrencyConflict。
        """
        async with self.session_factory() as session:
            try:
                await session.execute(
                    text("""
                        INSERT INTO applied_payment_events (event_id, order_id, event_type, applied_at)
                        VALUES (:event_id, :order_id, :event_type, :now)
                    """),
                    {
                        "event_id": event.event_id,
                        "order_id": str(order.id),
                        "event_type": event.type,
                        "now": _now().isoformat(),
                    },
                )
            except IntegrityError:
                await session.rollback()
                return False
            await self._update(session, order)
            await session.commit()
        order.version += 1
        return True

    async def is_event_applied(self, event_id: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                text("SELECT 1 FROM applied_payment_events WHERE event_id = :event_id"),
                {"event_id": event_id},
            )
            return result.fetchone() is not None


async def create_sql_repositories(
    database_url: str,
    pricing: Pricing,
) -> tuple[SqlCartRepository, SqlOrderRepository, AsyncEngine]:
    engine = create_async_engine(database_url, echo=False)
    await create_schema(engine)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    logger.info("Using SQL repositories")
    return SqlCartRepository(session_factory, pricing), SqlOrderRepository(session_factory), engine
