import os
import json
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, date, time
from typing import Any, Dict, List, Literal, Optional, Sequence, Tuple

from fastapi import FastAPI, APIRouter, HTTPException, Depends, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field, ConfigDict
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from tablepos_shared import RequestIDMiddleware, configure_cors, add_standard_health, setup_json_logging, get_request_id

from . import models
from .models import (
    CATEGORIES,
    DEFAULT_SHOPS,
    MAX_TABLE,
    PAYMENT_METHODS,
    SERVICE_CHARGE_PCT,
    HistoryBill,
    HistoryLine,
    Item,
    Order,
    OrderLine,
    Printer,
    PrintJob,
    Shop,
    StationTicket,
    Subcategory,
    get_session,
)
from .events import emit_event
from .printing import (
    bill_dict,
    claim_job,
    drain_print_jobs_forever,
    queue_receipt,
    send_station_tickets,
    try_queue_receipt,
    update_job_status,
)
from .receipts import format_receipt, render_pdf
from .routes import router_ws
from .ws import relay

log = logging.getLogger("tablepos.pos")


@asynccontextmanager
async def _lifespan(app: FastAPI):
    models.on_startup()
    relay.bind(asyncio.get_running_loop())
    task = None
    if models.PRINT_WORKER:
        task = asyncio.create_task(drain_print_jobs_forever(relay, models.PRINT_POLL_SECONDS))
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        relay.unbind()


app = FastAPI(title="Table POS API", version="0.1.0", lifespan=_lifespan)
setup_json_logging()
app.add_middleware(RequestIDMiddleware)
configure_cors(app, os.getenv("ALLOWED_ORIGINS", "*"))
add_standard_health(app, probes={"print_server": lambda: relay.connected})
router = APIRouter()


def _is_prod_env() -> bool:
    env = (os.getenv("ENV") or "dev").strip().lower()
    return env in ("prod", "production", "staging")


@app.exception_handler(RequestValidationError)
async def _validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


@app.exception_handler(HTTPException)
async def _http_exception_handler(request: Request, exc: HTTPException):
    if _is_prod_env() and exc.status_code >= 500:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": "internal error", "request_id": get_request_id()},
        )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=exc.headers)


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    rid = get_request_id()
    logging.getLogger("tablepos.errors").exception("unhandled exception", extra={"path": request.url.path})
    if _is_prod_env():
        return JSONResponse(status_code=500, content={"detail": "internal error", "request_id": rid})
    # dev/test: keep the message for debugging
    return JSONResponse(status_code=500, content={"detail": str(exc), "request_id": rid})


class _Req(BaseModel):
    model_config = ConfigDict(extra="forbid")


# --- Catalog ---
class ItemCreate(_Req):
    name: str = Field(min_length=1, max_length=200)
    price_cents: int = Field(ge=0)
    category: Literal["KOT", "BOT"]
    subcategory_id: Optional[int] = None
    shop_id: Optional[int] = None
    is_active: bool = True


class ItemUpdate(_Req):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    price_cents: Optional[int] = Field(default=None, ge=0)
    category: Optional[Literal["KOT", "BOT"]] = None
    subcategory_id: Optional[int] = None
    shop_id: Optional[int] = None
    is_active: Optional[bool] = None


class ItemOut(BaseModel):
    id: int
    name: str
    price_cents: int
    category: str
    subcategory_id: Optional[int]
    shop_id: Optional[int]
    is_active: bool
    model_config = ConfigDict(from_attributes=True)


def _check_subcategory(s: Session, subcategory_id: Optional[int], category: str) -> None:
    if subcategory_id is None:
        return
    sc = s.get(Subcategory, subcategory_id)
    if not sc:
        raise HTTPException(status_code=404, detail="subcategory not found")
    if sc.main_category != category:
        raise HTTPException(status_code=400, detail=f"subcategory belongs to {sc.main_category}, not {category}")


def _check_shop(s: Session, shop_id: Optional[int]) -> None:
    if shop_id is not None and not s.get(Shop, shop_id):
        raise HTTPException(status_code=404, detail="shop not found")


def _default_shop(s: Session, category: str) -> Optional[int]:
    return s.execute(select(Shop.id).where(Shop.name == DEFAULT_SHOPS[category])).scalar_one_or_none()


def _patch_fields(req: BaseModel) -> Dict[str, Any]:
    # explicit nulls only clear the nullable foreign keys
    fields = req.model_dump(exclude_unset=True)
    return {k: v for k, v in fields.items() if v is not None or k in ("subcategory_id", "shop_id")}


@router.post("/items", response_model=ItemOut, status_code=201)
def create_item(req: ItemCreate, s: Session = Depends(get_session)):
    _check_subcategory(s, req.subcategory_id, req.category)
    _check_shop(s, req.shop_id)
    it = Item(
        name=req.name.strip(),
        price_cents=req.price_cents,
        category=req.category,
        subcategory_id=req.subcategory_id,
        shop_id=req.shop_id if req.shop_id is not None else _default_shop(s, req.category),
        is_active=req.is_active,
    )
    s.add(it); s.commit(); s.refresh(it)
    return it


@router.get("/items", response_model=List[ItemOut])
def list_items(q: str = "", category: str = "", active_only: bool = False, s: Session = Depends(get_session)):
    stmt = select(Item)
    if q:
        stmt = stmt.where(func.lower(Item.name).like(f"%{q.lower()}%"))
    if category:
        stmt = stmt.where(Item.category == category.upper())
    if active_only:
        stmt = stmt.where(Item.is_active.is_(True))
    return s.execute(stmt.order_by(Item.category.asc(), Item.name.asc())).scalars().all()


def _get_item(s: Session, item_id: int) -> Item:
    it = s.get(Item, item_id)
    if not it:
        raise HTTPException(status_code=404, detail="item not found")
    return it


@router.put("/items/{item_id}", response_model=ItemOut)
def update_item(item_id: int, req: ItemUpdate, s: Session = Depends(get_session)):
    it = _get_item(s, item_id)
    fields = _patch_fields(req)
    category = fields.get("category") or it.category
    subcategory_id = fields["subcategory_id"] if "subcategory_id" in fields else it.subcategory_id
    _check_subcategory(s, subcategory_id, category)
    if "shop_id" in fields:
        _check_shop(s, fields["shop_id"])
    if "name" in fields:
        fields["name"] = fields["name"].strip()
    for key, value in fields.items():
        setattr(it, key, value)
    s.commit(); s.refresh(it)
    return it


@router.put("/items/{item_id}/toggle", response_model=ItemOut)
def toggle_item(item_id: int, s: Session = Depends(get_session)):
    it = _get_item(s, item_id)
    it.is_active = not it.is_active
    s.commit(); s.refresh(it)
    return it


@router.delete("/items/{item_id}")
def delete_item(item_id: int, s: Session = Depends(get_session)):
    it = _get_item(s, item_id)
    in_use = s.execute(select(func.count()).select_from(OrderLine).where(OrderLine.item_id == item_id)).scalar()
    if in_use:
        raise HTTPException(status_code=409, detail="item is on an open order; deactivate it instead")
    s.delete(it); s.commit()
    return {"ok": True}


class SubcategoryCreate(_Req):
    name: str = Field(min_length=1, max_length=120)
    main_category: Literal["KOT", "BOT"]


class SubcategoryUpdate(_Req):
    name: str = Field(min_length=1, max_length=120)


class SubcategoryOut(BaseModel):
    id: int
    name: str
    main_category: str
    model_config = ConfigDict(from_attributes=True)


def _subcategory_taken(s: Session, name: str, main_category: str, exclude_id: Optional[int] = None) -> bool:
    stmt = select(Subcategory.id).where(Subcategory.name == name, Subcategory.main_category == main_category)
    if exclude_id is not None:
        stmt = stmt.where(Subcategory.id != exclude_id)
    return s.execute(stmt).first() is not None


@router.post("/subcategories", response_model=SubcategoryOut, status_code=201)
def create_subcategory(req: SubcategoryCreate, s: Session = Depends(get_session)):
    name = req.name.strip()
    if _subcategory_taken(s, name, req.main_category):
        raise HTTPException(status_code=409, detail="subcategory already exists in this category")
    sc = Subcategory(name=name, main_category=req.main_category)
    s.add(sc); s.commit(); s.refresh(sc)
    return sc


@router.get("/subcategories", response_model=List[SubcategoryOut])
def list_subcategories(category: str = "", s: Session = Depends(get_session)):
    stmt = select(Subcategory)
    if category:
        stmt = stmt.where(Subcategory.main_category == category.upper())
    return s.execute(stmt.order_by(Subcategory.main_category.asc(), Subcategory.name.asc())).scalars().all()


@router.put("/subcategories/{subcategory_id}", response_model=SubcategoryOut)
def update_subcategory(subcategory_id: int, req: SubcategoryUpdate, s: Session = Depends(get_session)):
    sc = s.get(Subcategory, subcategory_id)
    if not sc:
        raise HTTPException(status_code=404, detail="subcategory not found")
    name = req.name.strip()
    if _subcategory_taken(s, name, sc.main_category, exclude_id=sc.id):
        raise HTTPException(status_code=409, detail="subcategory already exists in this category")
    sc.name = name
    s.commit(); s.refresh(sc)
    return sc


@router.delete("/subcategories/{subcategory_id}")
def delete_subcategory(subcategory_id: int, s: Session = Depends(get_session)):
    sc = s.get(Subcategory, subcategory_id)
    if not sc:
        raise HTTPException(status_code=404, detail="subcategory not found")
    s.execute(update(Item).where(Item.subcategory_id == subcategory_id).values(subcategory_id=None))
    s.delete(sc); s.commit()
    return {"ok": True}


class ShopCreate(_Req):
    name: str = Field(min_length=1, max_length=120)


class ShopOut(BaseModel):
    id: int
    name: str
    model_config = ConfigDict(from_attributes=True)


@router.get("/shops", response_model=List[ShopOut])
def list_shops(s: Session = Depends(get_session)):
    return s.execute(select(Shop).order_by(Shop.name.asc())).scalars().all()


@router.post("/shops", response_model=ShopOut, status_code=201)
def create_shop(req: ShopCreate, s: Session = Depends(get_session)):
    name = req.name.strip()
    if s.execute(select(Shop.id).where(Shop.name == name)).first() is not None:
        raise HTTPException(status_code=409, detail="shop name already exists")
    sh = Shop(name=name)
    s.add(sh); s.commit(); s.refresh(sh)
    return sh


# --- Printers ---
class PrinterCreate(_Req):
    name: str = Field(min_length=1, max_length=120)
    ip: str = Field(min_length=1, max_length=64)
    port: int = Field(default=9100, ge=1, le=65535)
    is_active: bool = True
    shop_id: Optional[int] = None


class PrinterUpdate(_Req):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    ip: Optional[str] = Field(default=None, min_length=1, max_length=64)
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    is_active: Optional[bool] = None
    shop_id: Optional[int] = None


class PrinterOut(BaseModel):
    id: int
    name: str
    ip: str
    port: int
    is_active: bool
    shop_id: Optional[int]
    created_at: Optional[datetime]
    model_config = ConfigDict(from_attributes=True)


@router.get("/printers", response_model=List[PrinterOut])
def list_printers(s: Session = Depends(get_session)):
    return s.execute(select(Printer).order_by(Printer.id.desc())).scalars().all()


@router.post("/printers", response_model=PrinterOut, status_code=201)
def create_printer(req: PrinterCreate, s: Session = Depends(get_session)):
    _check_shop(s, req.shop_id)
    pr = Printer(name=req.name.strip(), ip=req.ip.strip(), port=req.port, is_active=req.is_active, shop_id=req.shop_id)
    s.add(pr); s.commit(); s.refresh(pr)
    return pr


@router.put("/printers/{printer_id}", response_model=PrinterOut)
def update_printer(printer_id: int, req: PrinterUpdate, s: Session = Depends(get_session)):
    pr = s.get(Printer, printer_id)
    if not pr:
        raise HTTPException(status_code=404, detail="printer not found")
    fields = _patch_fields(req)
    if "shop_id" in fields:
        _check_shop(s, fields["shop_id"])
    for key, value in fields.items():
        setattr(pr, key, value)
    s.commit(); s.refresh(pr)
    return pr


@router.delete("/printers/{printer_id}")
def delete_printer(printer_id: int, s: Session = Depends(get_session)):
    pr = s.get(Printer, printer_id)
    if not pr:
        raise HTTPException(status_code=404, detail="printer not found")
    s.delete(pr); s.commit()
    return {"ok": True}


# --- Orders ---
class AddItemReq(_Req):
    table_number: int = Field(ge=1, le=MAX_TABLE)
    item_id: int = Field(ge=1)
    quantity: int = Field(ge=1)
    batch_tag: Optional[str] = Field(default=None, max_length=64)


class LineQuantity(_Req):
    quantity: int = Field(ge=1)


class LineUpdate(_Req):
    line_id: int = Field(ge=1)
    quantity: int = Field(ge=1)


class OrderLineOut(BaseModel):
    id: int
    item_id: int
    name: str
    price_cents: int
    category: str
    quantity: int
    batch_tag: Optional[str]
    subtotal_cents: int


class TableOrderOut(BaseModel):
    id: int
    table_number: int
    status: str
    created_at: Optional[datetime]
    lines: List[OrderLineOut]
    total_cents: int


class OpenTableOut(BaseModel):
    table_number: int
    order_id: int
    line_count: int
    total_cents: int
    created_at: Optional[datetime]


def _check_table(table_number: int) -> None:
    if table_number < 1 or table_number > MAX_TABLE:
        raise HTTPException(status_code=400, detail=f"table number must be between 1 and {MAX_TABLE}")


def _open_order(s: Session, table_number: int) -> Optional[Order]:
    stmt = (
        select(Order)
        .where(Order.table_number == table_number, Order.status == "open")
        .order_by(Order.id.asc())
        .limit(1)
    )
    return s.execute(stmt).scalar_one_or_none()


def get_or_create_open_order(s: Session, table_number: int) -> Order:
    od = _open_order(s, table_number)
    if od is None:
        od = Order(table_number=table_number, status="open")
        s.add(od)
        s.flush()
    return od


def _order_rows(s: Session, order_id: int) -> List[Tuple[OrderLine, Item]]:
    stmt = (
        select(OrderLine, Item)
        .join(Item, Item.id == OrderLine.item_id)
        .where(OrderLine.order_id == order_id)
        .order_by(OrderLine.id.asc())
    )
    return [(ln, it) for ln, it in s.execute(stmt).all()]


def _table_order_out(s: Session, od: Order) -> TableOrderOut:
    lines = [
        OrderLineOut(
            id=ln.id,
            item_id=it.id,
            name=it.name,
            price_cents=it.price_cents,
            category=it.category,
            quantity=ln.quantity,
            batch_tag=ln.batch_tag,
            subtotal_cents=it.price_cents * ln.quantity,
        )
        for ln, it in _order_rows(s, od.id)
    ]
    return TableOrderOut(
        id=od.id,
        table_number=od.table_number,
        status=od.status,
        created_at=od.created_at,
        lines=lines,
        total_cents=sum(l.subtotal_cents for l in lines),
    )


def add_line(s: Session, table_number: int, item_id: int, quantity: int, batch_tag: Optional[str] = None) -> OrderLine:
    """
    Append ``quantity`` of an item to the table's open order, merging into an
    existing line with the same item and batch tag.
    """
    _check_table(table_number)
    if quantity < 1:
        raise HTTPException(status_code=400, detail="quantity must be at least 1")
    it = _get_item(s, item_id)
    if not it.is_active:
        raise HTTPException(status_code=400, detail="item is inactive")
    od = get_or_create_open_order(s, table_number)
    stmt = select(OrderLine).where(OrderLine.order_id == od.id, OrderLine.item_id == item_id)
    if batch_tag is None:
        stmt = stmt.where(OrderLine.batch_tag.is_(None))
    else:
        stmt = stmt.where(OrderLine.batch_tag == batch_tag)
    # Read-then-write: concurrent adds for the same line are not serialized.
    line = s.execute(stmt.limit(1)).scalar_one_or_none()
    if line is not None:
        line.quantity = line.quantity + quantity
    else:
        line = OrderLine(order_id=od.id, item_id=item_id, quantity=quantity, batch_tag=batch_tag, created_at=datetime.utcnow())
        s.add(line)
    s.commit(); s.refresh(line)
    return line


def _orders_changed(table_number: Optional[int]) -> None:
    relay.queue_broadcast({"type": "orders_changed", "table_number": table_number})


@router.post("/orders/add-item", response_model=TableOrderOut)
def add_item_to_order(req: AddItemReq, s: Session = Depends(get_session)):
    line = add_line(s, req.table_number, req.item_id, req.quantity, req.batch_tag)
    od = s.get(Order, line.order_id)
    _orders_changed(req.table_number)
    return _table_order_out(s, od)


@router.get("/orders/tables", response_model=List[OpenTableOut])
def list_open_tables(s: Session = Depends(get_session)):
    stmt = (
        select(
            Order.table_number,
            Order.id,
            Order.created_at,
            func.count(OrderLine.id),
            func.coalesce(func.sum(OrderLine.quantity * Item.price_cents), 0),
        )
        .select_from(Order)
        .outerjoin(OrderLine, OrderLine.order_id == Order.id)
        .outerjoin(Item, Item.id == OrderLine.item_id)
        .where(Order.status == "open")
        .group_by(Order.table_number, Order.id, Order.created_at)
        .order_by(Order.table_number.asc())
    )
    return [
        OpenTableOut(table_number=t, order_id=oid, created_at=created, line_count=int(n or 0), total_cents=int(total or 0))
        for t, oid, created, n, total in s.execute(stmt).all()
    ]


@router.get("/orders/{table_number}", response_model=Optional[TableOrderOut])
def get_table_order(table_number: int, s: Session = Depends(get_session)):
    _check_table(table_number)
    od = _open_order(s, table_number)
    if od is None:
        return None
    return _table_order_out(s, od)


def _open_line(s: Session, line_id: int) -> OrderLine:
    line = s.get(OrderLine, line_id)
    if not line:
        raise HTTPException(status_code=404, detail="order line not found")
    return line


@router.put("/orders/update-item/{line_id}", response_model=TableOrderOut)
def update_line_quantity(line_id: int, req: LineQuantity, s: Session = Depends(get_session)):
    line = _open_line(s, line_id)
    line.quantity = req.quantity
    s.commit()
    od = s.get(Order, line.order_id)
    _orders_changed(od.table_number)
    return _table_order_out(s, od)


@router.delete("/orders/remove-item/{line_id}")
def remove_line(line_id: int, s: Session = Depends(get_session)):
    line = _open_line(s, line_id)
    od = s.get(Order, line.order_id)
    s.delete(line); s.commit()
    _orders_changed(od.table_number if od else None)
    return {"ok": True}


@router.post("/orders/update-multiple")
def update_lines(req: List[LineUpdate], s: Session = Depends(get_session)):
    lines = {}
    for upd in req:
        lines[upd.line_id] = _open_line(s, upd.line_id)
    for upd in req:
        lines[upd.line_id].quantity = upd.quantity
    s.commit()
    _orders_changed(None)
    return {"ok": True, "updated": len(lines)}


# --- Settlement ---
class SelectedLine(_Req):
    line_id: int = Field(ge=1)
    quantity: int = Field(ge=1)


class SettleReq(_Req):
    table_number: int = Field(ge=1, le=MAX_TABLE)
    discount_cents: int = Field(default=0, ge=0)
    service_charge: bool = False
    payment_method: Literal["CASH", "CARD", "MIXED"] = "CASH"
    cash_cents: Optional[int] = Field(default=None, ge=0)
    card_cents: Optional[int] = Field(default=None, ge=0)
    additional_items: Optional[str] = Field(default=None, max_length=1000)
    print_receipt: bool = False


class PartialSettleReq(SettleReq):
    lines: List[SelectedLine] = Field(min_length=1)


class HistoryLineOut(BaseModel):
    id: int
    item_id: Optional[int]
    item_name: str
    item_price_cents: int
    item_category: str
    quantity: int
    subtotal_cents: int


class BillOut(BaseModel):
    id: int
    order_id: int
    table_number: int
    subtotal_cents: int
    discount_cents: int
    service_charge: bool
    service_charge_cents: int
    final_cents: int
    payment_method: str
    cash_cents: int
    card_cents: int
    additional_items: Optional[str]
    is_partial: bool
    closed_at: datetime
    lines: List[HistoryLineOut]


class SettlementOut(BillOut):
    order_closed: bool
    print_job_id: Optional[str] = None


def service_charge_cents(subtotal_cents: int) -> int:
    # exactly SERVICE_CHARGE_PCT of the subtotal, half-cents rounded up
    return (subtotal_cents * SERVICE_CHARGE_PCT + 50) // 100


def _split_payment(method: str, final_cents: int, cash_cents: Optional[int], card_cents: Optional[int]) -> Tuple[int, int]:
    if method not in PAYMENT_METHODS:
        raise HTTPException(status_code=400, detail=f"payment method must be one of {', '.join(PAYMENT_METHODS)}")
    if method == "CASH":
        return final_cents, 0
    if method == "CARD":
        return 0, final_cents
    if cash_cents is None or card_cents is None:
        raise HTTPException(status_code=400, detail="mixed payment needs cash_cents and card_cents")
    if cash_cents + card_cents != final_cents:
        raise HTTPException(
            status_code=400,
            detail=f"cash and card amounts ({cash_cents + card_cents}) must equal the total ({final_cents})",
        )
    return cash_cents, card_cents


def settle(
    s: Session,
    table_number: int,
    selections: Sequence[Tuple[int, int]],
    discount_cents: int = 0,
    service_charge: bool = False,
    payment_method: str = "CASH",
    additional_items: Optional[str] = None,
    cash_cents: Optional[int] = None,
    card_cents: Optional[int] = None,
) -> Tuple[HistoryBill, bool]:
    """
    Turn the selected ``(line_id, quantity)`` pairs of a table's open order
    into a history bill.

    Every check runs before anything is written, so a rejected settlement
    leaves the order untouched. The bill, its lines and the order mutations
    commit together. Returns the bill and whether the order is now closed.
    """
    od = _open_order(s, table_number)
    if od is None:
        raise HTTPException(status_code=404, detail="no open order found for this table")
    if not selections:
        raise HTTPException(status_code=400, detail="no lines selected")
    if discount_cents < 0:
        raise HTTPException(status_code=400, detail="discount must be zero or positive")

    rows = {ln.id: (ln, it) for ln, it in _order_rows(s, od.id)}
    picked: List[Tuple[OrderLine, Item, int]] = []
    subtotal = 0
    for line_id, qty in selections:
        if qty < 1:
            raise HTTPException(status_code=400, detail=f"quantity for line {line_id} must be at least 1")
        if any(p[0].id == line_id for p in picked):
            raise HTTPException(status_code=400, detail=f"line {line_id} selected more than once")
        if line_id not in rows:
            raise HTTPException(status_code=404, detail=f"order line {line_id} not found on table {table_number}")
        ln, it = rows[line_id]
        if qty > ln.quantity:
            raise HTTPException(
                status_code=400,
                detail=f"quantity {qty} exceeds remaining {ln.quantity} for line {line_id}",
            )
        picked.append((ln, it, qty))
        subtotal += it.price_cents * qty

    svc = service_charge_cents(subtotal) if service_charge else 0
    # not clamped: a discount larger than the bill yields a negative total
    final = subtotal + svc - discount_cents
    cash, card = _split_payment(payment_method, final, cash_cents, card_cents)
    remaining = len(rows) - sum(1 for ln, _, qty in picked if qty == ln.quantity)
    closed_at = datetime.utcnow()

    try:
        bill = HistoryBill(
            order_id=od.id,
            table_number=table_number,
            subtotal_cents=subtotal,
            discount_cents=discount_cents,
            service_charge=bool(service_charge),
            service_charge_cents=svc,
            final_cents=final,
            payment_method=payment_method,
            cash_cents=cash,
            card_cents=card,
            additional_items=(additional_items or "").strip() or None,
            is_partial=remaining > 0,
            closed_at=closed_at,
        )
        s.add(bill)
        s.flush()
        for ln, it, qty in picked:
            s.add(
                HistoryLine(
                    history_id=bill.id,
                    item_id=it.id,
                    item_name=it.name,
                    item_price_cents=it.price_cents,
                    item_category=it.category,
                    quantity=qty,
                    subtotal_cents=it.price_cents * qty,
                )
            )
            if qty == ln.quantity:
                s.delete(ln)
            else:
                ln.quantity = ln.quantity - qty
        if remaining == 0:
            od.status = "closed"
            od.closed_at = closed_at
        s.commit()
    except Exception:
        s.rollback()
        raise
    s.refresh(bill)
    log.info(
        "settled table %s: bill %s final %s (%s lines, order %s)",
        table_number,
        bill.id,
        final,
        len(picked),
        "closed" if remaining == 0 else "open",
    )
    return bill, remaining == 0


def settle_full(s: Session, table_number: int, **kwargs: Any) -> Tuple[HistoryBill, bool]:
    od = _open_order(s, table_number)
    if od is None:
        raise HTTPException(status_code=404, detail="no open order found for this table")
    selections = [(ln.id, ln.quantity) for ln, _ in _order_rows(s, od.id)]
    if not selections:
        raise HTTPException(status_code=400, detail="order has no items")
    return settle(s, table_number, selections, **kwargs)


def _after_settlement(s: Session, bill: HistoryBill, closed: bool, print_receipt: bool) -> SettlementOut:
    data = bill_dict(s, bill)
    out = SettlementOut(**data, order_closed=closed)
    emit_event(
        "pos",
        "bill_settled",
        {
            "history_id": bill.id,
            "order_id": bill.order_id,
            "table_number": bill.table_number,
            "final_cents": bill.final_cents,
            "payment_method": bill.payment_method,
            "order_closed": closed,
        },
    )
    _orders_changed(bill.table_number)
    if print_receipt:
        job = try_queue_receipt(s, bill.id)
        if job is not None:
            out.print_job_id = job.job_id
            relay.notify()
    return out


def _settle_kwargs(req: SettleReq) -> Dict[str, Any]:
    return {
        "discount_cents": req.discount_cents,
        "service_charge": req.service_charge,
        "payment_method": req.payment_method,
        "additional_items": req.additional_items,
        "cash_cents": req.cash_cents,
        "card_cents": req.card_cents,
    }


@router.post("/orders/finish", response_model=SettlementOut)
def finish_order(req: SettleReq, s: Session = Depends(get_session)):
    bill, closed = settle_full(s, req.table_number, **_settle_kwargs(req))
    return _after_settlement(s, bill, closed, req.print_receipt)


@router.post("/orders/finish-partial", response_model=SettlementOut)
def finish_partial_order(req: PartialSettleReq, s: Session = Depends(get_session)):
    selections = [(l.line_id, l.quantity) for l in req.lines]
    bill, closed = settle(s, req.table_number, selections, **_settle_kwargs(req))
    return _after_settlement(s, bill, closed, req.print_receipt)


# --- History ---
def _get_bill(s: Session, history_id: int) -> HistoryBill:
    bill = s.get(HistoryBill, history_id)
    if not bill:
        raise HTTPException(status_code=404, detail="history record not found")
    return bill


@router.get("/history", response_model=List[BillOut])
def list_history(
    table_number: Optional[int] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    limit: int = 200,
    s: Session = Depends(get_session),
):
    stmt = select(HistoryBill)
    if table_number is not None:
        stmt = stmt.where(HistoryBill.table_number == table_number)
    if start is not None:
        stmt = stmt.where(HistoryBill.closed_at >= datetime.combine(start, time.min))
    if end is not None:
        stmt = stmt.where(HistoryBill.closed_at <= datetime.combine(end, time.max))
    stmt = stmt.order_by(HistoryBill.closed_at.desc(), HistoryBill.id.desc()).limit(max(1, min(limit, 1000)))
    return [bill_dict(s, b) for b in s.execute(stmt).scalars().all()]


@router.get("/history/table/{table_number}", response_model=List[BillOut])
def list_table_history(table_number: int, s: Session = Depends(get_session)):
    return list_history(table_number=table_number, s=s)


@router.get("/history/{history_id}", response_model=BillOut)
def get_history(history_id: int, s: Session = Depends(get_session)):
    return bill_dict(s, _get_bill(s, history_id))


# --- Printing ---
class PrintJobOut(BaseModel):
    job_id: str
    kind: str
    printer_id: int
    history_id: Optional[int]
    status: str
    attempts: int
    last_error: Optional[str]
    content: str
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    model_config = ConfigDict(from_attributes=True)


class PrintJobClaim(_Req):
    printer_id: Optional[int] = None


class PrintJobUpdate(_Req):
    status: Literal["queued", "sent", "completed", "failed"]
    error: Optional[str] = None


@router.post("/print/receipt/{history_id}", response_model=PrintJobOut)
def print_receipt(history_id: int, s: Session = Depends(get_session)):
    job = queue_receipt(s, history_id)
    relay.notify()
    return job


@router.get("/print/pdf/{history_id}")
def receipt_pdf(history_id: int, s: Session = Depends(get_session)):
    content = render_pdf(bill_dict(s, _get_bill(s, history_id)))
    headers = {"Content-Disposition": f'attachment; filename="receipt-{history_id}.pdf"'}
    return Response(content=content, media_type="application/pdf", headers=headers)


@router.get("/print/text/{history_id}", response_class=PlainTextResponse)
def receipt_text(history_id: int, s: Session = Depends(get_session)):
    return format_receipt(bill_dict(s, _get_bill(s, history_id)))


@router.get("/print/jobs", response_model=List[PrintJobOut])
def list_print_jobs(status: str = "", limit: int = 50, s: Session = Depends(get_session)):
    stmt = select(PrintJob)
    if status:
        stmt = stmt.where(PrintJob.status == status)
    stmt = stmt.order_by(PrintJob.created_at.desc(), PrintJob.id.desc()).limit(max(1, min(limit, 200)))
    return s.execute(stmt).scalars().all()


@router.post("/print/jobs/claim", response_model=PrintJobOut)
def claim_print_job(req: PrintJobClaim, s: Session = Depends(get_session)):
    job = claim_job(s, req.printer_id)
    if not job:
        raise HTTPException(status_code=404, detail="no job")
    return job


@router.post("/print/jobs/{job_id}", response_model=PrintJobOut)
def update_print_job(job_id: str, req: PrintJobUpdate, s: Session = Depends(get_session)):
    return update_job_status(s, job_id, req.status, req.error)


# --- KOT / BOT ---
class StationEntry(_Req):
    item_id: int = Field(ge=1)
    quantity: int = Field(ge=1)
    notes: Optional[str] = Field(default=None, max_length=200)


class StationSendReq(_Req):
    table_number: int = Field(ge=1, le=MAX_TABLE)
    items: List[StationEntry] = Field(min_length=1)


class StationTicketOut(BaseModel):
    id: int
    kind: str
    table_number: int
    items: List[Dict[str, Any]]
    created_at: Optional[datetime]


@router.post("/kot-bot/send")
def send_kot_bot(req: StationSendReq, s: Session = Depends(get_session)):
    out = send_station_tickets(s, req.table_number, [e.model_dump() for e in req.items])
    relay.notify()
    return out


@router.get("/kot-bot/history")
def list_station_tickets(table_number: Optional[int] = None, day: Optional[date] = None, s: Session = Depends(get_session)):
    out: Dict[str, List[StationTicketOut]] = {}
    for kind in CATEGORIES:
        stmt = select(StationTicket).where(StationTicket.kind == kind)
        if table_number is not None:
            stmt = stmt.where(StationTicket.table_number == table_number)
        if day is not None:
            stmt = stmt.where(
                StationTicket.created_at >= datetime.combine(day, time.min),
                StationTicket.created_at <= datetime.combine(day, time.max),
            )
        stmt = stmt.order_by(StationTicket.created_at.desc(), StationTicket.id.desc()).limit(50)
        out[kind.lower()] = [
            StationTicketOut(
                id=t.id,
                kind=t.kind,
                table_number=t.table_number,
                items=json.loads(t.items_json or "[]"),
                created_at=t.created_at,
            )
            for t in s.execute(stmt).scalars().all()
        ]
    return out


app.include_router(router, prefix="/api")
app.include_router(router_ws)
