import os
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    create_engine,
    inspect,
    text,
    String,
    Integer,
    BigInteger,
    Boolean,
    DateTime,
    Text,
    UniqueConstraint,
    func,
    select,
)
from sqlalchemy.orm import DeclarativeBase, Session, Mapped, mapped_column


def _env_or(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


DB_URL = _env_or("POS_DB_URL", "sqlite+pysqlite:////tmp/pos.db")
DB_SCHEMA = os.getenv("DB_SCHEMA") if not DB_URL.startswith("sqlite") else None
MAX_TABLE = int(_env_or("POS_MAX_TABLE", "30"))
CURRENCY = _env_or("POS_CURRENCY", "LKR")
SEED_ITEMS = _env_or("POS_SEED_ITEMS", "1").lower() in ("1", "true", "yes", "on")
PRINT_MAX_ATTEMPTS = max(1, int(_env_or("POS_PRINT_MAX_ATTEMPTS", "3")))
PRINT_POLL_SECONDS = float(_env_or("POS_PRINT_POLL_SECONDS", "5"))
# false when another process runs the delivery loop
PRINT_WORKER = _env_or("POS_PRINT_WORKER", "true").lower() in ("1", "true", "yes", "on")

CATEGORIES = ("KOT", "BOT")
PAYMENT_METHODS = ("CASH", "CARD", "MIXED")
SERVICE_CHARGE_PCT = 10
# Shop each category routes to when an item has no explicit shop.
DEFAULT_SHOPS = {"KOT": "Kitchen", "BOT": "Bar"}

log = logging.getLogger("tablepos.pos")


def _now() -> datetime:
    return datetime.utcnow()


class Base(DeclarativeBase):
    pass


class Shop(Base):
    __tablename__ = "shops"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), unique=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Subcategory(Base):
    __tablename__ = "subcategories"
    __table_args__ = (
        UniqueConstraint("name", "main_category", name="uq_subcategory_name_category"),
        *([{"schema": DB_SCHEMA}] if DB_SCHEMA else []),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120))
    main_category: Mapped[str] = mapped_column(String(3))  # KOT/BOT
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Item(Base):
    __tablename__ = "items"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200))
    price_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    category: Mapped[str] = mapped_column(String(3))  # KOT/BOT
    subcategory_id: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    shop_id: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    table_number: Mapped[int] = mapped_column(Integer, index=True)
    status: Mapped[str] = mapped_column(String(16), default="open")  # open/closed
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=_now)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)


class OrderLine(Base):
    __tablename__ = "order_items"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(Integer, index=True)
    item_id: Mapped[int] = mapped_column(Integer)
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    batch_tag: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=_now)


class HistoryBill(Base):
    __tablename__ = "orders_history"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(Integer, index=True)
    table_number: Mapped[int] = mapped_column(Integer, index=True)
    subtotal_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    discount_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    service_charge: Mapped[bool] = mapped_column(Boolean, default=False)
    service_charge_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    final_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    payment_method: Mapped[str] = mapped_column(String(8), default="CASH")
    cash_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    card_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    additional_items: Mapped[Optional[str]] = mapped_column(Text, default=None)
    is_partial: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())
    closed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)


class HistoryLine(Base):
    __tablename__ = "orders_history_items"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    history_id: Mapped[int] = mapped_column(Integer, index=True)
    item_id: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    item_name: Mapped[str] = mapped_column(String(200))
    item_price_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    item_category: Mapped[str] = mapped_column(String(3))
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    subtotal_cents: Mapped[int] = mapped_column(BigInteger, default=0)


class Printer(Base):
    __tablename__ = "printers"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120))
    ip: Mapped[str] = mapped_column(String(64))
    port: Mapped[int] = mapped_column(Integer, default=9100)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    shop_id: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PrintJob(Base):
    __tablename__ = "print_jobs"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(36), unique=True)
    kind: Mapped[str] = mapped_column(String(16), default="receipt")  # receipt/kot/bot
    printer_id: Mapped[int] = mapped_column(Integer)
    history_id: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    content: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(16), default="queued")  # queued/sent/completed/failed
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(String(400), default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=_now)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=_now, onupdate=_now)


class StationTicket(Base):
    __tablename__ = "station_tickets"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(3))  # KOT/BOT
    table_number: Mapped[int] = mapped_column(Integer)
    items_json: Mapped[str] = mapped_column(Text)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=_now)


engine = create_engine(DB_URL, future=True)


def get_session():
    with Session(engine) as s:
        yield s


# Columns that were added after the first release; added in place on startup.
_LATE_COLUMNS = {
    "items": [
        ("subcategory_id", "INTEGER"),
        ("shop_id", "INTEGER"),
        ("is_active", "BOOLEAN DEFAULT 1"),
    ],
    "order_items": [
        ("batch_tag", "VARCHAR(64)"),
        ("created_at", "TIMESTAMP"),
    ],
    "orders_history": [
        ("payment_method", "VARCHAR(8) DEFAULT 'CASH'"),
        ("cash_cents", "BIGINT DEFAULT 0"),
        ("card_cents", "BIGINT DEFAULT 0"),
        ("additional_items", "TEXT"),
        ("is_partial", "BOOLEAN DEFAULT 0"),
    ],
    "orders_history_items": [
        ("item_id", "INTEGER"),
    ],
    "printers": [
        ("shop_id", "INTEGER"),
    ],
}

SAMPLE_ITEMS = [
    ("Coca Cola", 250, "BOT"),
    ("Sprite", 250, "BOT"),
    ("Water Bottle", 100, "BOT"),
    ("Orange Juice", 350, "BOT"),
    ("Lemonade", 300, "BOT"),
    ("Chicken Burger", 899, "KOT"),
    ("Veggie Burger", 799, "KOT"),
    ("French Fries", 399, "KOT"),
    ("Caesar Salad", 699, "KOT"),
    ("Margherita Pizza", 1299, "KOT"),
    ("Grilled Chicken", 1199, "KOT"),
    ("Fish and Chips", 1399, "KOT"),
]


def _migrate_columns(eng) -> None:
    insp = inspect(eng)
    for table, columns in _LATE_COLUMNS.items():
        if not insp.has_table(table, schema=DB_SCHEMA):
            continue
        existing = {c["name"] for c in insp.get_columns(table, schema=DB_SCHEMA)}
        tbl = f'{"%s." % DB_SCHEMA if DB_SCHEMA else ""}{table}'
        for col, ddl in columns:
            if col in existing:
                continue
            with eng.begin() as conn:
                conn.execute(text(f"ALTER TABLE {tbl} ADD COLUMN {col} {ddl}"))
            log.info("added column %s.%s", table, col)


def _seed(s: Session, seed_items: bool) -> None:
    shops = {sh.name: sh for sh in s.execute(select(Shop)).scalars().all()}
    for name in DEFAULT_SHOPS.values():
        if name not in shops:
            shops[name] = Shop(name=name)
            s.add(shops[name])
    s.flush()
    if seed_items and not s.execute(select(func.count()).select_from(Item)).scalar():
        for name, price_cents, category in SAMPLE_ITEMS:
            s.add(
                Item(
                    name=name,
                    price_cents=price_cents,
                    category=category,
                    shop_id=shops[DEFAULT_SHOPS[category]].id,
                    is_active=True,
                )
            )
        log.info("seeded %d sample items", len(SAMPLE_ITEMS))
    s.commit()


def on_startup(eng=None, seed_items: Optional[bool] = None) -> None:
    eng = eng if eng is not None else engine
    Base.metadata.create_all(eng)
    _migrate_columns(eng)
    with Session(eng) as s:
        _seed(s, SEED_ITEMS if seed_items is None else seed_items)
