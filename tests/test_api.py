import pytest
from fastapi.testclient import TestClient

from core import invoicing, store
from core.api import _sanitize_csv_filename, app


@pytest.fixture
def client():
    # The autouse ledger_db fixture already initialised a temp database.
    return TestClient(app)


def _upload(client, text, name="paypal.csv"):
    return client.post("/imports", files={"file": (name, text.encode("utf-8"), "text/csv")})


def test_upload_imports_and_records_run(client, paypal_csv):
    response = _upload(client, paypal_csv({}))
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert body["source"] == "paypal"
    assert body["stats"]["jobs_created"] == 1

    runs = client.get("/imports").json()
    assert runs[0]["id"] == body["run_id"]
    assert runs[0]["stats"]["total_fees_cents"] == 580

    summary = client.get("/summary").json()
    assert summary["invoice_count"] == 1
    assert summary["collected_cents"] == 15000
    assert summary["expenses_cents"] == 580
    assert summary["net_cents"] == 14420
    assert summary["invoices_by_status"]["paid"] == 1


def test_upload_rejects_unsafe_name_and_unknown_format(client):
    assert _upload(client, "x", name="../evil.csv").status_code == 400
    assert _upload(client, "x", name="notes.txt").status_code == 400

    response = _upload(client, "a,b\n1,2\n", name="mystery.csv")
    assert response.status_code == 400
    runs = client.get("/imports").json()
    assert runs[0]["status"] == "failed"
    assert runs[0]["file_name"] == "mystery.csv"


def test_sanitize_csv_filename():
    assert _sanitize_csv_filename("March 2024.csv") == "March 2024.csv"
    assert _sanitize_csv_filename("a/b.csv") is None
    assert _sanitize_csv_filename("") is None


def test_customer_views(client, paypal_csv):
    _upload(client, paypal_csv({}))
    customers = client.get("/customers").json()
    assert [c["name"] for c in customers] == ["Jane Doe"]
    customer_id = customers[0]["id"]

    detail = client.get(f"/customers/{customer_id}").json()
    assert detail["total_spend_cents"] == 15000
    assert detail["outstanding_cents"] == 0
    assert client.get("/customers/missing").status_code == 404


def test_invoice_payment_and_refund_flow(client):
    customer = invoicing.add_customer("Walk-in")
    job = invoicing.add_job(customer.id, labor_hours=1, tax_rate=0)

    completed = client.post(f"/jobs/{job.id}/complete")
    assert completed.status_code == 200
    invoice = completed.json()
    assert invoice["total_cents"] == 8500
    assert client.post(f"/jobs/{job.id}/complete").status_code == 409

    paid = client.post(f"/invoices/{invoice['id']}/payments", data={"amount": "85.00", "method": "Cash"})
    assert paid.status_code == 200
    assert paid.json()["payment_status"] == "paid"

    refunded = client.post(f"/invoices/{invoice['id']}/refunds", data={"amount": "20.00"})
    assert refunded.json()["paid_amount_cents"] == 6500
    assert refunded.json()["payment_status"] == "partial"

    payments = client.get(f"/invoices/{invoice['id']}/payments").json()
    assert [p["type"] for p in payments] == ["payment", "refund"]

    listed = client.get("/invoices", params={"status": "partial"}).json()
    assert [i["id"] for i in listed] == [invoice["id"]]


def test_bad_amounts_and_missing_invoice(client):
    assert client.post("/invoices/nope/payments", data={"amount": "0"}).status_code == 400
    assert client.post("/invoices/nope/payments", data={"amount": "10"}).status_code == 404
    assert client.post("/jobs/nope/complete").status_code == 404


def test_delete_locked_job_needs_force(client):
    customer = invoicing.add_customer("Walk-in")
    job = invoicing.add_job(customer.id, labor_hours=1)
    invoicing.complete_job(job.id)

    assert client.delete(f"/jobs/{job.id}").status_code == 409
    response = client.delete(f"/jobs/{job.id}", params={"force": "true"})
    assert response.json() == {"deleted": True, "job_id": job.id}
    assert store.get_job(job.id) is None
    assert client.delete(f"/jobs/{job.id}").status_code == 404


def test_audit_endpoint_filters_by_entity(client):
    customer = invoicing.add_customer("Audited")
    entries = client.get("/audit", params={"entity_id": customer.id}).json()
    assert [e["action"] for e in entries] == ["created"]
