from __future__ import annotations

import asyncio
import json
import threading

import pytest
from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

import apps.pos.app.main as pos  # type: ignore[import]
from apps.pos.app import models, printing  # type: ignore[import]


class _FakeRelay:
    def __init__(self, connected: bool = True, accept: bool = True):
        self._connected = connected
        self.accept = accept
        self.sent = []

    @property
    def connected(self) -> bool:
        return self._connected

    async def send_job(self, msg):
        self.sent.append(msg)
        return self.accept


@pytest.fixture()
def engine(pos_engine, monkeypatch):
    # the delivery loop opens its own sessions on models.engine
    monkeypatch.setattr(models, "engine", pos_engine)
    return pos_engine


def _printer(s: Session, name: str = "Front Desk", shop_id=None, is_active: bool = True) -> models.Printer:
    pr = models.Printer(name=name, ip="192.168.1.50", port=9100, is_active=is_active, shop_id=shop_id)
    s.add(pr); s.commit(); s.refresh(pr)
    return pr


def _settled_bill(s: Session, table: int = 3) -> int:
    it = models.Item(name="Margherita Pizza", price_cents=1299, category="KOT", is_active=True)
    s.add(it); s.commit()
    line = pos.add_line(s, table, it.id, 2)
    bill, _ = pos.settle(s, table, [(line.id, 2)])
    return bill.id


def _job(engine, job_id: str) -> models.PrintJob:
    with Session(engine) as s:
        return s.execute(select(models.PrintJob).where(models.PrintJob.job_id == job_id)).scalar_one()


def test_queue_receipt_needs_active_printer(engine):
    with Session(engine) as s:
        bill_id = _settled_bill(s)
        _printer(s, is_active=False)
        with pytest.raises(HTTPException) as e:
            printing.queue_receipt(s, bill_id)
        assert e.value.status_code == 400
        with pytest.raises(HTTPException) as e:
            printing.queue_receipt(s, 9999)
        assert e.value.status_code == 404


def test_settlement_survives_missing_printer(engine):
    with Session(engine) as s:
        it = models.Item(name="Veggie Burger", price_cents=799, category="KOT", is_active=True)
        s.add(it); s.commit()
        pos.add_line(s, 2, it.id, 1)
        out = pos.finish_order(req=pos.SettleReq(table_number=2, print_receipt=True), s=s)
        assert out.print_job_id is None
        assert out.order_closed is True
        assert s.get(models.HistoryBill, out.id) is not None
        assert s.execute(select(models.PrintJob)).first() is None


def test_settlement_with_print_queues_receipt(engine):
    with Session(engine) as s:
        _printer(s)
        it = models.Item(name="Veggie Burger", price_cents=799, category="KOT", is_active=True)
        s.add(it); s.commit()
        pos.add_line(s, 2, it.id, 1)
        out = pos.finish_order(req=pos.SettleReq(table_number=2, print_receipt=True), s=s)
        job_id = out.print_job_id
    job = _job(engine, job_id)
    assert job.kind == "receipt"
    assert job.status == "queued"
    assert job.history_id == out.id
    assert "TOTAL:" in job.content


def test_deliver_pending_pushes_to_relay(engine):
    with Session(engine) as s:
        _printer(s)
        job_id = printing.queue_receipt(s, _settled_bill(s)).job_id
    relay = _FakeRelay()
    assert asyncio.run(printing.deliver_pending(relay)) == 1
    msg = relay.sent[0]
    assert msg["type"] == "print-job"
    assert msg["job_id"] == job_id
    assert msg["printer"] == {"name": "Front Desk", "ip": "192.168.1.50", "port": 9100}
    job = _job(engine, job_id)
    assert job.status == "sent"
    assert job.attempts == 1
    # nothing left to deliver
    assert asyncio.run(printing.deliver_pending(relay)) == 0


def test_delivery_gives_up_after_max_attempts(engine, monkeypatch):
    monkeypatch.setattr(models, "PRINT_MAX_ATTEMPTS", 2)
    with Session(engine) as s:
        _printer(s)
        job_id = printing.queue_receipt(s, _settled_bill(s)).job_id
    relay = _FakeRelay(connected=False)
    asyncio.run(printing.deliver_pending(relay))
    job = _job(engine, job_id)
    assert job.status == "queued"
    assert job.attempts == 1
    assert "not connected" in job.last_error
    asyncio.run(printing.deliver_pending(relay))
    job = _job(engine, job_id)
    assert job.status == "failed"
    assert job.attempts == 2
    assert relay.sent == []


def test_rejected_send_counts_as_attempt(engine):
    with Session(engine) as s:
        _printer(s)
        job_id = printing.queue_receipt(s, _settled_bill(s)).job_id
    asyncio.run(printing.deliver_pending(_FakeRelay(accept=False)))
    job = _job(engine, job_id)
    assert job.status == "queued"
    assert job.attempts == 1


def test_inactive_printer_fails_job(engine):
    with Session(engine) as s:
        pr = _printer(s)
        job_id = printing.queue_receipt(s, _settled_bill(s)).job_id
        pr.is_active = False
        s.commit()
    asyncio.run(printing.deliver_pending(_FakeRelay()))
    job = _job(engine, job_id)
    assert job.status == "failed"
    assert job.last_error == "printer missing or inactive"


def test_print_failure_leaves_bill_untouched(engine):
    with Session(engine) as s:
        _printer(s)
        bill_id = _settled_bill(s)
        before = printing.bill_dict(s, s.get(models.HistoryBill, bill_id))
        job_id = printing.queue_receipt(s, bill_id).job_id
        printing.update_job_status(s, job_id, "failed", "paper out")
    with Session(engine) as s:
        assert printing.bill_dict(s, s.get(models.HistoryBill, bill_id)) == before


def test_job_status_updates_and_claim(engine):
    with Session(engine) as s:
        pr = _printer(s)
        job = printing.queue_receipt(s, _settled_bill(s))
        with pytest.raises(HTTPException) as e:
            printing.update_job_status(s, job.job_id, "printed")
        assert e.value.status_code == 400
        with pytest.raises(HTTPException) as e:
            printing.update_job_status(s, "missing", "completed")
        assert e.value.status_code == 404
        assert printing.claim_job(s, printer_id=pr.id + 1) is None
        claimed = printing.claim_job(s, printer_id=pr.id)
        assert claimed.job_id == job.job_id
        assert claimed.status == "sent"
        assert printing.claim_job(s) is None
        done = printing.update_job_status(s, job.job_id, "completed")
        assert done.status == "completed"
        assert done.last_error is None


def test_station_tickets_split_by_category_and_shop(engine):
    with Session(engine) as s:
        kitchen = s.execute(select(models.Shop).where(models.Shop.name == "Kitchen")).scalar_one()
        kitchen_printer = _printer(s, name="Kitchen", shop_id=kitchen.id)
        _printer(s, name="Front Desk")
        burger = pos.create_item(req=pos.ItemCreate(name="Chicken Burger", price_cents=899, category="KOT"), s=s)
        cola = pos.create_item(req=pos.ItemCreate(name="Coca Cola", price_cents=250, category="BOT"), s=s)
        out = printing.send_station_tickets(
            s,
            5,
            [
                {"item_id": burger.id, "quantity": 2, "notes": "no onions"},
                {"item_id": cola.id, "quantity": 1},
                {"item_id": 9999, "quantity": 1},
            ],
        )
        assert out["kot"]["item_count"] == 1
        assert out["bot"]["item_count"] == 1
        kot_job = s.execute(
            select(models.PrintJob).where(models.PrintJob.job_id == out["kot"]["jobs"][0])
        ).scalar_one()
        assert kot_job.printer_id == kitchen_printer.id
        assert kot_job.kind == "kot"
        assert "2 x Chicken Burger" in kot_job.content
        # no bar printer: falls back to the first active printer
        bot_job = s.execute(
            select(models.PrintJob).where(models.PrintJob.job_id == out["bot"]["jobs"][0])
        ).scalar_one()
        assert bot_job.printer_id == kitchen_printer.id
        tickets = pos.list_station_tickets(table_number=5, s=s)
        assert [t.items[0]["name"] for t in tickets["kot"]] == ["Chicken Burger"]
        assert json.loads(s.get(models.StationTicket, out["bot"]["id"]).items_json)[0]["quantity"] == 1


def test_delivery_session_work_stays_off_the_event_loop(engine, monkeypatch):
    with Session(engine) as s:
        _printer(s)
        printing.queue_receipt(s, _settled_bill(s))
    db_threads = []
    for name in ("_load_pending", "_record_outcome"):
        real = getattr(printing, name)

        def spy(*args, _real=real):
            db_threads.append(threading.get_ident())
            return _real(*args)

        monkeypatch.setattr(printing, name, spy)

    async def one_pass():
        return threading.get_ident(), await printing.deliver_pending(_FakeRelay())

    loop_thread, sent = asyncio.run(one_pass())
    assert sent == 1
    assert len(db_threads) == 2
    assert loop_thread not in db_threads
