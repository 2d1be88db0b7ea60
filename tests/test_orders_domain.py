from __future__ import annotations

import pytest
from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

import apps.pos.app.main as pos  # type: ignore[import]
from apps.pos.app import models  # type: ignore[import]


def _item(s: Session, name: str = "Chicken Burger", price_cents: int = 899, category: str = "KOT", is_active: bool = True):
    it = models.Item(name=name, price_cents=price_cents, category=category, is_active=is_active)
    s.add(it); s.commit(); s.refresh(it)
    return it


def test_add_line_opens_order_and_merges_same_item(pos_engine):
    with Session(pos_engine) as s:
        it = _item(s)
        first = pos.add_line(s, 5, it.id, 2)
        again = pos.add_line(s, 5, it.id, 1)
        assert again.id == first.id
        assert again.quantity == 3
        orders = s.execute(select(models.Order).where(models.Order.table_number == 5)).scalars().all()
        assert len(orders) == 1
        assert orders[0].status == "open"


def test_batch_tags_keep_lines_apart(pos_engine):
    with Session(pos_engine) as s:
        it = _item(s)
        untagged = pos.add_line(s, 2, it.id, 1)
        round1 = pos.add_line(s, 2, it.id, 1, batch_tag="round-1")
        round1_again = pos.add_line(s, 2, it.id, 2, batch_tag="round-1")
        assert untagged.id != round1.id
        assert round1_again.id == round1.id
        assert round1_again.quantity == 3
        s.refresh(untagged)
        assert untagged.quantity == 1


def test_add_line_rejects_bad_input(pos_engine):
    with Session(pos_engine) as s:
        it = _item(s)
        off = _item(s, name="Seasonal Soup", is_active=False)
        for table in (0, models.MAX_TABLE + 1):
            with pytest.raises(HTTPException) as e:
                pos.add_line(s, table, it.id, 1)
            assert e.value.status_code == 400
        with pytest.raises(HTTPException) as e:
            pos.add_line(s, 1, it.id, 0)
        assert e.value.status_code == 400
        with pytest.raises(HTTPException) as e:
            pos.add_line(s, 1, 9999, 1)
        assert e.value.status_code == 404
        with pytest.raises(HTTPException) as e:
            pos.add_line(s, 1, off.id, 1)
        assert e.value.status_code == 400
        assert s.execute(select(models.OrderLine)).first() is None


def test_get_table_order_lines_and_total(pos_engine):
    with Session(pos_engine) as s:
        assert pos.get_table_order(table_number=3, s=s) is None
        burger = _item(s)
        cola = _item(s, name="Coca Cola", price_cents=250, category="BOT")
        pos.add_line(s, 3, burger.id, 2)
        pos.add_line(s, 3, cola.id, 3)
        out = pos.get_table_order(table_number=3, s=s)
        assert out.table_number == 3
        assert [l.name for l in out.lines] == ["Chicken Burger", "Coca Cola"]
        assert out.lines[0].subtotal_cents == 1798
        assert out.lines[1].category == "BOT"
        assert out.total_cents == 1798 + 750


def test_update_and_remove_line_keep_order_open(pos_engine):
    with Session(pos_engine) as s:
        it = _item(s)
        line = pos.add_line(s, 4, it.id, 1)
        out = pos.update_line_quantity(line_id=line.id, req=pos.LineQuantity(quantity=5), s=s)
        assert out.lines[0].quantity == 5
        assert pos.remove_line(line_id=line.id, s=s) == {"ok": True}
        empty = pos.get_table_order(table_number=4, s=s)
        assert empty is not None
        assert empty.status == "open"
        assert empty.lines == []
        with pytest.raises(HTTPException) as e:
            pos.remove_line(line_id=line.id, s=s)
        assert e.value.status_code == 404


def test_update_lines_is_all_or_nothing(pos_engine):
    with Session(pos_engine) as s:
        it = _item(s)
        line = pos.add_line(s, 6, it.id, 2)
        req = [pos.LineUpdate(line_id=line.id, quantity=7), pos.LineUpdate(line_id=9999, quantity=1)]
        with pytest.raises(HTTPException) as e:
            pos.update_lines(req=req, s=s)
        assert e.value.status_code == 404
        s.refresh(line)
        assert line.quantity == 2
        res = pos.update_lines(req=[pos.LineUpdate(line_id=line.id, quantity=7)], s=s)
        assert res["updated"] == 1
        s.refresh(line)
        assert line.quantity == 7


def test_list_open_tables(pos_engine):
    with Session(pos_engine) as s:
        burger = _item(s)
        cola = _item(s, name="Coca Cola", price_cents=250, category="BOT")
        pos.add_line(s, 9, burger.id, 1)
        pos.add_line(s, 9, cola.id, 2)
        pos.add_line(s, 1, cola.id, 1)
        rows = pos.list_open_tables(s=s)
        assert [r.table_number for r in rows] == [1, 9]
        assert rows[0].total_cents == 250
        assert rows[1].line_count == 2
        assert rows[1].total_cents == 899 + 500
