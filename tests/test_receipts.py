from __future__ import annotations

from datetime import datetime

from apps.pos.app import receipts  # type: ignore[import]
from apps.pos.app.models import CURRENCY  # type: ignore[import]

SHOP = receipts.ShopInfo(name="Lagoon Cafe", address="12 Beach Road\nGalle", phones="091 222 3344", footer="See you soon")


def _bill(**overrides):
    bill = {
        "id": 41,
        "table_number": 7,
        "closed_at": datetime(2024, 3, 5, 19, 45),
        "lines": [
            {"item_name": "Grilled Chicken", "quantity": 2, "subtotal_cents": 2398},
            {"item_name": "Lemonade", "quantity": 1, "subtotal_cents": 300},
        ],
        "subtotal_cents": 2698,
        "service_charge": True,
        "service_charge_cents": 270,
        "discount_cents": 100,
        "additional_items": None,
        "final_cents": 2868,
        "payment_method": "CASH",
        "cash_cents": 2868,
        "card_cents": 0,
    }
    bill.update(overrides)
    return bill


def test_money_formatting():
    assert receipts.money(3000) == "30.00"
    assert receipts.money(5) == "0.05"
    assert receipts.money(-500) == "-5.00"


def test_receipt_text_contains_lines_and_totals():
    text = receipts.format_receipt(_bill(), SHOP)
    assert "Lagoon Cafe" in text
    assert "Galle" in text
    assert "Table No: 7" in text
    assert "2024-03-05  19:45" in text
    assert "Grilled Chicken" in text and "x2" in text and "23.98" in text
    assert "Subtotal:" in text and "26.98" in text
    assert "Service Charge (10%):" in text and "2.70" in text
    assert "Discount:" in text and "-1.00" in text
    assert f"{CURRENCY} 28.68" in text
    assert "Paid by:" in text
    assert "See you soon" in text
    for row in text.splitlines():
        if "Grilled Chicken" in row:
            assert len(row) <= receipts.LINE_WIDTH


def test_receipt_omits_optional_rows():
    text = receipts.format_receipt(
        _bill(service_charge=False, service_charge_cents=0, discount_cents=0, final_cents=2698), SHOP
    )
    assert "Service Charge" not in text
    assert "Discount:" not in text


def test_receipt_mixed_payment_and_iso_timestamp():
    text = receipts.format_receipt(
        _bill(payment_method="MIXED", cash_cents=868, card_cents=2000, closed_at="2024-03-05T19:45:00"), SHOP
    )
    assert "Cash:" in text and "8.68" in text
    assert "Card:" in text and "20.00" in text
    assert "2024-03-05" in text


def test_pdf_is_a_pdf():
    data = receipts.render_pdf(_bill(), SHOP)
    assert data.startswith(b"%PDF")
    assert len(data) > 500


def test_station_ticket():
    items = [{"quantity": 2, "name": "Chicken Burger", "notes": "no onions"}, {"quantity": 1, "name": "Fries"}]
    text = receipts.format_station_ticket("KOT", 4, items, datetime(2024, 3, 5, 12, 30))
    assert "KITCHEN ORDER (KOT)" in text
    assert "Table No: 4" in text
    assert "12:30" in text
    assert "2 x Chicken Burger" in text
    assert "* no onions" in text
    assert "BAR ORDER (BOT)" in receipts.format_station_ticket("BOT", 4, [])


def test_long_note_wraps_instead_of_truncating():
    note = "birthday cake brought by guest, candles lit at 21:00, please bill corkage separately"
    text = receipts.format_receipt(_bill(additional_items=note), SHOP)
    lines = text.splitlines()
    start = next(i for i, r in enumerate(lines) if r.startswith(receipts.INDENT + "Note: "))
    rows = [lines[start]]
    for r in lines[start + 1:]:
        if not r.strip() or not r.startswith(receipts.INDENT + " " * len("Note: ")):
            break
        rows.append(r)
    assert rows[0].startswith(receipts.INDENT + "Note: ")
    assert len(rows) > 1
    assert all(len(r) <= receipts.LINE_WIDTH for r in rows)
    assert " ".join(r.strip() for r in rows).replace("Note: ", "", 1) == note
