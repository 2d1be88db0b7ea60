"""
Receipt and station-ticket rendering.

Everything here is a pure function of a settled bill (the dict built by
``printing.bill_dict``) or of a ticket's item list. Text output targets
80 mm ESC/POS printers with a 46 column font; the PDF variant uses the same
80 mm page width.
"""

from __future__ import annotations

import os
import textwrap
from dataclasses import dataclass
from datetime import datetime
from io import BytesIO
from typing import Any, Iterable, Mapping, Optional

from reportlab.pdfgen import canvas

from .models import CURRENCY, SERVICE_CHARGE_PCT

LINE_WIDTH = 46
INDENT = "    "
RULE = INDENT + "=" * 43
THIN_RULE = INDENT + "-" * 43
NAME_COL = 25
QTY_COL = 9
PRICE_COL = 8

ESC_BOLD_ON = "\x1bE\x01"
ESC_BOLD_OFF = "\x1bE\x00"

PDF_PAGE_WIDTH = 226.77  # 80mm in points
PDF_MARGIN = 10


@dataclass(frozen=True)
class ShopInfo:
    name: str
    address: str
    phones: str
    footer: str

    @classmethod
    def from_env(cls) -> "ShopInfo":
        return cls(
            name=os.getenv("POS_SHOP_NAME", "Table POS"),
            address=os.getenv("POS_SHOP_ADDRESS", ""),
            phones=os.getenv("POS_SHOP_PHONES", ""),
            footer=os.getenv("POS_RECEIPT_FOOTER", "Thank You! Come Again!"),
        )


def money(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(int(cents)), 100)
    return f"{sign}{whole}.{frac:02d}"


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value)
    return datetime.utcnow()


def _center(txt: str, width: int = LINE_WIDTH) -> str:
    pad = max(0, (width - len(txt)) // 2)
    return (" " * pad) + txt


def _row(label: str, amount: str) -> str:
    space = max(1, LINE_WIDTH - len(INDENT) - len(label) - len(amount))
    return INDENT + label + (" " * space) + amount


def _note_lines(note: str) -> list[str]:
    # first row carries the label, continuation rows line up under the text
    label = "Note: "
    width = LINE_WIDTH - len(INDENT) - len(label)
    out: list[str] = []
    for part in note.split("\n"):
        for chunk in textwrap.wrap(part.strip(), width, break_long_words=True):
            out.append(INDENT + (label if not out else " " * len(label)) + chunk)
    return out


def _header_lines(shop: ShopInfo) -> list[str]:
    out = [RULE, _center(ESC_BOLD_ON + shop.name + ESC_BOLD_OFF, LINE_WIDTH + 6), RULE, ""]
    if shop.address:
        out.extend(_center(part.strip()) for part in shop.address.split("\n") if part.strip())
        out.append("")
    if shop.phones:
        out.append(_center(shop.phones))
        out.append("")
    return out


def format_receipt(bill: Mapping[str, Any], shop: Optional[ShopInfo] = None) -> str:
    shop = shop or ShopInfo.from_env()
    when = _as_datetime(bill.get("closed_at"))
    lines = _header_lines(shop)
    lines.append(RULE)
    lines.append("")

    table_txt = f"{INDENT}Table No: {bill.get('table_number')}"
    when_txt = when.strftime("%Y-%m-%d  %H:%M")
    gap = max(1, LINE_WIDTH + 1 - len(table_txt) - len(when_txt))
    lines.append(table_txt + (" " * gap) + when_txt)
    lines.append("")
    lines.append(THIN_RULE)
    lines.append(f"{INDENT}{'Name':<{NAME_COL}}{'Qty':<{QTY_COL - 2}}{'Price(' + CURRENCY + ')':>{PRICE_COL + 2}}")
    lines.append(THIN_RULE)

    for ln in bill.get("lines") or []:
        name = str(ln.get("item_name") or "")[:NAME_COL]
        qty = f"x{ln.get('quantity')}"
        price = money(int(ln.get("subtotal_cents") or 0))
        lines.append(f"{INDENT}{name:<{NAME_COL}}{qty:<{QTY_COL}}{price:>{PRICE_COL}}")
    lines.append(THIN_RULE)
    lines.append("")

    lines.append(_row("Subtotal:", money(int(bill.get("subtotal_cents") or 0))))
    if bill.get("service_charge"):
        lines.append(_row(f"Service Charge ({SERVICE_CHARGE_PCT}%):", money(int(bill.get("service_charge_cents") or 0))))
    discount = int(bill.get("discount_cents") or 0)
    if discount > 0:
        lines.append(_row("Discount:", money(-discount)))
    if bill.get("additional_items"):
        lines.extend(_note_lines(str(bill["additional_items"])))

    lines.append("")
    lines.append(RULE)
    lines.append(_row("TOTAL:", f"{CURRENCY} {money(int(bill.get('final_cents') or 0))}"))
    lines.append(RULE)
    method = bill.get("payment_method")
    if method == "MIXED":
        lines.append(_row("Cash:", money(int(bill.get("cash_cents") or 0))))
        lines.append(_row("Card:", money(int(bill.get("card_cents") or 0))))
    elif method:
        lines.append(_row("Paid by:", str(method)))
    lines.append("")
    lines.append(THIN_RULE)
    lines.append(_center(shop.footer))
    lines.append(THIN_RULE)
    return "\n".join(lines) + "\n"


def render_pdf(bill: Mapping[str, Any], shop: Optional[ShopInfo] = None) -> bytes:
    shop = shop or ShopInfo.from_env()
    when = _as_datetime(bill.get("closed_at"))
    items = list(bill.get("lines") or [])
    width = PDF_PAGE_WIDTH
    height = 300 + 12 * len(items) + (12 * shop.address.count("\n"))
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=(width, height))
    c.setTitle(f"receipt-{bill.get('id')}")
    right = width - PDF_MARGIN
    y = height - 24

    def rule(y_pos: float) -> None:
        c.line(PDF_MARGIN, y_pos, right, y_pos)

    c.setFont("Helvetica-Bold", 14)
    c.drawCentredString(width / 2, y, shop.name)
    y -= 14
    c.setFont("Helvetica", 7)
    for part in [p for p in shop.address.split("\n") if p.strip()] + ([shop.phones] if shop.phones else []):
        c.drawCentredString(width / 2, y, part.strip())
        y -= 9
    y -= 3
    rule(y)
    y -= 14
    c.setFont("Helvetica-Bold", 10)
    c.drawCentredString(width / 2, y, "RECEIPT")
    y -= 13
    c.setFont("Helvetica", 8)
    c.drawString(PDF_MARGIN, y, f"Date: {when:%Y-%m-%d}  Time: {when:%H:%M}")
    y -= 10
    c.drawString(PDF_MARGIN, y, f"Table: {bill.get('table_number')}")
    y -= 8
    rule(y)
    y -= 11

    c.setFont("Helvetica-Bold", 8)
    c.drawString(PDF_MARGIN, y, "Item")
    c.drawString(135, y, "Qty")
    c.drawRightString(right, y, "Price")
    y -= 11
    c.setFont("Helvetica", 8)
    for ln in items:
        c.drawString(PDF_MARGIN, y, str(ln.get("item_name") or "")[:26])
        c.drawString(135, y, f"x{ln.get('quantity')}")
        c.drawRightString(right, y, f"{CURRENCY} {money(int(ln.get('subtotal_cents') or 0))}")
        y -= 12
    rule(y + 4)
    y -= 8

    c.setFont("Helvetica", 9)

    def total_row(label: str, value: str) -> None:
        nonlocal y
        c.drawString(PDF_MARGIN, y, label)
        c.drawRightString(right, y, value)
        y -= 11

    total_row("Subtotal:", f"{CURRENCY} {money(int(bill.get('subtotal_cents') or 0))}")
    if bill.get("service_charge"):
        total_row(f"Service Charge ({SERVICE_CHARGE_PCT}%):", f"{CURRENCY} {money(int(bill.get('service_charge_cents') or 0))}")
    discount = int(bill.get("discount_cents") or 0)
    if discount > 0:
        total_row("Discount:", f"-{CURRENCY} {money(discount)}")
    y -= 3
    c.setFont("Helvetica-Bold", 12)
    total_row("TOTAL:", f"{CURRENCY} {money(int(bill.get('final_cents') or 0))}")
    rule(y + 4)
    y -= 12
    c.setFont("Helvetica-Bold", 10)
    c.drawCentredString(width / 2, y, shop.footer)
    c.showPage()
    c.save()
    return buf.getvalue()


def format_station_ticket(kind: str, table_number: int, items: Iterable[Mapping[str, Any]], when: Optional[datetime] = None) -> str:
    """Kitchen (KOT) or bar (BOT) ticket: quantities and names only, no prices."""
    when = when or datetime.utcnow()
    title = "KITCHEN ORDER" if kind == "KOT" else "BAR ORDER"
    lines = [RULE, _center(ESC_BOLD_ON + f"{title} ({kind})" + ESC_BOLD_OFF, LINE_WIDTH + 6), RULE]
    table_txt = f"{INDENT}Table No: {table_number}"
    when_txt = when.strftime("%H:%M")
    lines.append(table_txt + (" " * max(1, LINE_WIDTH + 1 - len(table_txt) - len(when_txt))) + when_txt)
    lines.append(THIN_RULE)
    for it in items:
        lines.append(f"{INDENT}{it.get('quantity')} x {it.get('name')}")
        if it.get("notes"):
            lines.append(f"{INDENT}   * {it['notes']}")
    lines.append(THIN_RULE)
    return "\n".join(lines) + "\n"
