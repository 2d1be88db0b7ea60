"""
Print job outbox and delivery.

Jobs are rows in ``print_jobs`` written after the bill they belong to has
committed. The delivery worker pushes queued rows to a registered relay;
nothing in here ever raises into a settlement.
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from . import models
from .models import HistoryBill, HistoryLine, Item, Printer, PrintJob, Shop, StationTicket, DEFAULT_SHOPS
from .receipts import format_receipt, format_station_ticket
from .ws import PrintRelay

log = logging.getLogger("tablepos.print")

JOB_STATUSES = ("queued", "sent", "completed", "failed")


def bill_dict(s: Session, bill: HistoryBill) -> Dict[str, Any]:
    lines = s.execute(
        select(HistoryLine).where(HistoryLine.history_id == bill.id).order_by(HistoryLine.id.asc())
    ).scalars().all()
    return {
        "id": bill.id,
        "order_id": bill.order_id,
        "table_number": bill.table_number,
        "subtotal_cents": bill.subtotal_cents,
        "discount_cents": bill.discount_cents,
        "service_charge": bool(bill.service_charge),
        "service_charge_cents": bill.service_charge_cents,
        "final_cents": bill.final_cents,
        "payment_method": bill.payment_method,
        "cash_cents": bill.cash_cents,
        "card_cents": bill.card_cents,
        "additional_items": bill.additional_items,
        "is_partial": bool(bill.is_partial),
        "closed_at": bill.closed_at,
        "lines": [
            {
                "id": ln.id,
                "item_id": ln.item_id,
                "item_name": ln.item_name,
                "item_price_cents": ln.item_price_cents,
                "item_category": ln.item_category,
                "quantity": ln.quantity,
                "subtotal_cents": ln.subtotal_cents,
            }
            for ln in lines
        ],
    }


def active_printer(s: Session, shop_id: Optional[int] = None) -> Optional[Printer]:
    stmt = select(Printer).where(Printer.is_active.is_(True))
    if shop_id is not None:
        stmt = stmt.where(Printer.shop_id == shop_id)
    return s.execute(stmt.order_by(Printer.id.asc()).limit(1)).scalar_one_or_none()


def _new_job(s: Session, kind: str, printer: Printer, content: str, history_id: Optional[int] = None) -> PrintJob:
    job = PrintJob(
        job_id=str(uuid.uuid4()),
        kind=kind,
        printer_id=printer.id,
        history_id=history_id,
        content=content,
        status="queued",
        attempts=0,
    )
    s.add(job)
    return job


def queue_receipt(s: Session, history_id: int) -> PrintJob:
    bill = s.get(HistoryBill, history_id)
    if not bill:
        raise HTTPException(status_code=404, detail="history record not found")
    printer = active_printer(s)
    if not printer:
        raise HTTPException(status_code=400, detail="no active printer; register and activate a printer")
    job = _new_job(s, "receipt", printer, format_receipt(bill_dict(s, bill)), history_id=bill.id)
    s.commit(); s.refresh(job)
    log.info("queued receipt job %s for bill %s on %s", job.job_id, bill.id, printer.name)
    return job


def try_queue_receipt(s: Session, history_id: int) -> Optional[PrintJob]:
    """Receipt printing after settlement: failures are logged, never raised."""
    try:
        return queue_receipt(s, history_id)
    except HTTPException as e:
        log.warning("receipt for bill %s not queued: %s", history_id, e.detail)
    except Exception:
        s.rollback()
        log.exception("receipt for bill %s not queued", history_id)
    return None


def send_station_tickets(s: Session, table_number: int, entries: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Split entries into kitchen (KOT) and bar (BOT) tickets, store one
    StationTicket per category and queue a print job per destination printer.
    Entries whose item does not exist are skipped.
    """
    by_kind: Dict[str, List[Dict[str, Any]]] = {"KOT": [], "BOT": []}
    shop_of: Dict[int, Optional[int]] = {}
    for e in entries:
        it = s.get(Item, int(e["item_id"]))
        if not it or it.category not in by_kind:
            continue
        by_kind[it.category].append(
            {
                "item_id": it.id,
                "name": it.name,
                "quantity": int(e.get("quantity") or 1),
                "notes": e.get("notes") or "",
            }
        )
        shop_of[it.id] = it.shop_id

    now = datetime.utcnow()
    out: Dict[str, Any] = {"kot": None, "bot": None}
    for kind, rows in by_kind.items():
        if not rows:
            continue
        ticket = StationTicket(kind=kind, table_number=table_number, items_json=json.dumps(rows), created_at=now)
        s.add(ticket)
        s.flush()
        jobs: List[str] = []
        # one job per destination shop, each with that shop's rows only
        groups: Dict[Optional[int], List[Dict[str, Any]]] = {}
        for r in rows:
            groups.setdefault(shop_of.get(r["item_id"]) or _default_shop_id(s, kind), []).append(r)
        for shop_id, shop_rows in groups.items():
            printer = (active_printer(s, shop_id) if shop_id is not None else None) or active_printer(s)
            if not printer:
                log.warning("no active printer for %s ticket %s (table %s)", kind, ticket.id, table_number)
                continue
            job = _new_job(s, kind.lower(), printer, format_station_ticket(kind, table_number, shop_rows, now))
            jobs.append(job.job_id)
        out[kind.lower()] = {"id": ticket.id, "item_count": len(rows), "items": rows, "jobs": jobs}
    s.commit()
    return out


def _default_shop_id(s: Session, kind: str) -> Optional[int]:
    return s.execute(select(Shop.id).where(Shop.name == DEFAULT_SHOPS[kind])).scalar_one_or_none()


def job_message(job: PrintJob, printer: Printer) -> Dict[str, Any]:
    return {
        "type": "print-job",
        "job_id": job.job_id,
        "kind": job.kind,
        "printer": {"name": printer.name, "ip": printer.ip, "port": printer.port},
        "content": job.content,
    }


def _record_failure(job: PrintJob, error: str) -> None:
    job.attempts = (job.attempts or 0) + 1
    job.last_error = error[:400]
    if job.attempts >= models.PRINT_MAX_ATTEMPTS:
        job.status = "failed"
        log.warning("print job %s failed after %d attempts: %s", job.job_id, job.attempts, error)


def _load_pending(limit: int) -> List[Tuple[int, Dict[str, Any]]]:
    """Queued jobs as ``(pk, frame)``; jobs whose printer is gone fail here."""
    out: List[Tuple[int, Dict[str, Any]]] = []
    with Session(models.engine) as s:
        jobs = s.execute(
            select(PrintJob)
            .where(PrintJob.status == "queued")
            .order_by(PrintJob.created_at.asc(), PrintJob.id.asc())
            .limit(limit)
        ).scalars().all()
        for job in jobs:
            printer = s.get(Printer, job.printer_id)
            if not printer or not printer.is_active:
                job.status = "failed"
                job.last_error = "printer missing or inactive"
                continue
            out.append((job.id, job_message(job, printer)))
        s.commit()
    return out


def _record_outcome(pk: int, error: Optional[str]) -> None:
    with Session(models.engine) as s:
        job = s.get(PrintJob, pk)
        if job is None:
            return
        if error is None:
            job.attempts = (job.attempts or 0) + 1
            job.status = "sent"
            job.last_error = None
        else:
            _record_failure(job, error)
        s.commit()


async def deliver_pending(relay: PrintRelay, limit: int = 20) -> int:
    """
    Push queued jobs to the relay once. Returns the number handed over.

    Session work runs in the threadpool; only the socket send happens on
    the event loop.
    """
    sent = 0
    for pk, frame in await run_in_threadpool(_load_pending, limit):
        if not relay.connected:
            error = "print server is not connected"
        elif await relay.send_job(frame):
            error = None
            sent += 1
        else:
            error = "print server send failed"
        await run_in_threadpool(_record_outcome, pk, error)
    return sent


async def drain_print_jobs_forever(relay: PrintRelay, interval: float = 5.0) -> None:
    while True:
        try:
            await deliver_pending(relay)
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("print delivery pass failed")
        await relay.wait(interval)


def update_job_status(s: Session, job_id: str, status: str, error: Optional[str] = None) -> PrintJob:
    if status not in JOB_STATUSES:
        raise HTTPException(status_code=400, detail="bad status")
    job = s.execute(select(PrintJob).where(PrintJob.job_id == job_id)).scalar_one_or_none()
    if not job:
        raise HTTPException(status_code=404, detail="print job not found")
    job.status = status
    job.last_error = str(error)[:400] if error else None
    s.commit(); s.refresh(job)
    if status == "failed":
        log.warning("print job %s reported failed: %s", job_id, error)
    return job


def claim_job(s: Session, printer_id: Optional[int] = None) -> Optional[PrintJob]:
    stmt = select(PrintJob).where(PrintJob.status == "queued")
    if printer_id is not None:
        stmt = stmt.where(PrintJob.printer_id == printer_id)
    job = s.execute(stmt.order_by(PrintJob.created_at.asc(), PrintJob.id.asc()).limit(1)).scalar_one_or_none()
    if not job:
        return None
    job.status = "sent"
    job.attempts = (job.attempts or 0) + 1
    s.commit(); s.refresh(job)
    return job
