"""Thin FastAPI JSON API: projection + control only. No auth, no ORM, no business logic."""

from __future__ import annotations

import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, NoReturn

from fastapi import FastAPI, File, Form, HTTPException, UploadFile

from core import invoicing, queries
from core.audit import list_entries
from core.db import init_db
from core.errors import ImportAbortedError, InvariantViolation, LedgerError
from core.ingest import import_text
from core.money import parse_cents


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    init_db()
    yield


app = FastAPI(title="Service Ledger", docs_url=None, redoc_url=None, lifespan=lifespan)


def _raise_http(exc: LedgerError) -> NoReturn:
    """Map ledger errors onto HTTP status codes."""
    if isinstance(exc, ImportAbortedError):
        result = exc.result.to_dict() if exc.result is not None else None
        raise HTTPException(status_code=400, detail={"error": str(exc), "partial": result}) from exc
    if isinstance(exc, InvariantViolation):
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    # FormatError, InvalidAmountError, LedgerIOError
    raise HTTPException(status_code=400, detail=str(exc)) from exc


def _parse_amount(amount: str) -> int:
    cents = parse_cents(amount)
    if cents <= 0:
        raise HTTPException(status_code=400, detail=f"Amount must be positive, got {amount!r}")
    return cents


@app.get("/summary")
async def summary() -> dict[str, Any]:
    return queries.get_dashboard_summary()


@app.get("/customers")
async def customers(include_archived: bool = False) -> list[dict[str, Any]]:
    return queries.get_customers(include_archived=include_archived)


@app.get("/customers/{customer_id}")
async def customer_detail(customer_id: str) -> dict[str, Any]:
    customer = queries.get_customer_detail(customer_id)
    if customer is None:
        raise HTTPException(status_code=404, detail="Customer not found")
    return customer


@app.get("/invoices")
async def invoices(
    customer_id: str | None = None,
    status: str | None = None,
    limit: int = 500,
) -> list[dict[str, Any]]:
    # Treat empty query params as "no filter"
    return queries.get_invoices(customer_id=customer_id or None, payment_status=status or None, limit=limit)


@app.get("/invoices/{invoice_id}/payments")
async def invoice_payments(invoice_id: str) -> list[dict[str, Any]]:
    return queries.get_invoice_payments(invoice_id)


def _sanitize_csv_filename(name: str) -> str | None:
    """Allow only safe CSV filenames; return None if invalid."""
    if not name or not name.lower().endswith(".csv"):
        return None
    base = name[:-4]
    if not re.match(r"^[a-zA-Z0-9._ -]+$", base):
        return None
    return base + ".csv"


@app.post("/imports")
async def upload_statement(file: UploadFile = File(...)) -> dict[str, Any]:
    filename = _sanitize_csv_filename(file.filename or "")
    if not filename:
        raise HTTPException(status_code=400, detail="Invalid filename: must be a .csv with safe characters")
    contents = await file.read()
    try:
        return import_text(contents.decode("utf-8", errors="replace"), filename)
    except LedgerError as exc:
        _raise_http(exc)


@app.get("/imports")
async def import_runs(limit: int = 50) -> list[dict[str, Any]]:
    return queries.get_import_runs(limit=limit)


@app.post("/jobs/{job_id}/complete")
async def complete_job(job_id: str) -> dict[str, Any]:
    try:
        invoice = invoicing.complete_job(job_id)
    except LedgerError as exc:
        _raise_http(exc)
    if invoice is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return asdict(invoice)


@app.post("/invoices/{invoice_id}/payments")
async def add_payment(
    invoice_id: str,
    amount: str = Form(...),
    method: str = Form(""),
    notes: str = Form(""),
) -> dict[str, Any]:
    cents = _parse_amount(amount)
    try:
        invoice = invoicing.record_payment(invoice_id, cents, method=method, notes=notes)
    except LedgerError as exc:
        _raise_http(exc)
    if invoice is None:
        raise HTTPException(status_code=404, detail="Invoice not found")
    return asdict(invoice)


@app.post("/invoices/{invoice_id}/refunds")
async def add_refund(
    invoice_id: str,
    amount: str = Form(...),
    method: str = Form(""),
    notes: str = Form(""),
) -> dict[str, Any]:
    cents = _parse_amount(amount)
    try:
        invoice = invoicing.record_refund(invoice_id, cents, method=method, notes=notes)
    except LedgerError as exc:
        _raise_http(exc)
    if invoice is None:
        raise HTTPException(status_code=404, detail="Invoice not found")
    return asdict(invoice)


@app.delete("/jobs/{job_id}")
async def delete_job(job_id: str, force: bool = False) -> dict[str, Any]:
    try:
        deleted = invoicing.delete_job(job_id, force=force)
    except LedgerError as exc:
        _raise_http(exc)
    if deleted is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return {"deleted": True, "job_id": job_id}


@app.get("/audit")
async def audit(entity_id: str | None = None, limit: int = 200) -> list[dict[str, Any]]:
    return list_entries(entity_id=entity_id or None, limit=limit)
