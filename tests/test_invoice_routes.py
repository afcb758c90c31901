from datetime import date, timedelta
from decimal import Decimal

from models import Invoice

NEW_INVOICE = {
     "patient_id": "PAT-000123",
     "visit_id": "VIS-42",
     "items": [
          {"item_type": "consultation", "description": "General consultation", "unit_price": "1000.00"},
          {"item_type": "lab_test", "description": "Full blood count", "quantity": 1, "unit_price": "800.00"},
     ],
}


def test_requires_token(client):
     assert client.get("/api/invoices").status_code == 401
     response = client.get("/api/invoices", headers={"Authorization": "Bearer not-a-jwt"})
     assert response.status_code == 403


def test_unknown_route(client):
     response = client.get("/api/nothing-here")
     assert response.status_code == 404
     assert response.json() == {"error": "Route not found"}


def test_create_invoice_applies_vat(client, auth_headers):
     response = client.post("/api/invoices", json=NEW_INVOICE, headers=auth_headers("cashier", "cashier-7"))

     assert response.status_code == 201
     body = response.json()
     assert body["invoice_number"] == f"INV-{date.today():%Y%m}-0001"
     assert Decimal(body["subtotal"]) == Decimal("1800")
     assert Decimal(body["tax"]) == Decimal("288")
     assert Decimal(body["total_amount"]) == Decimal("2088")
     assert Decimal(body["balance_amount"]) == Decimal("2088")
     assert body["status"] == "pending"
     assert body["created_by"] == "cashier-7"
     assert len(body["items"]) == 2


def test_create_invoice_validates_items(client, auth_headers):
     response = client.post("/api/invoices", json={**NEW_INVOICE, "items": []}, headers=auth_headers())
     assert response.status_code == 422


def test_lookup_by_number_and_id(client, auth_headers, make_invoice):
     created = make_invoice(invoice_number="INV-001")

     by_number = client.get("/api/invoices/number/inv-001", headers=auth_headers())
     assert by_number.status_code == 200
     assert by_number.json()["id"] == created.id

     by_id = client.get(f"/api/invoices/{created.id}", headers=auth_headers())
     assert by_id.json()["invoice_number"] == "INV-001"


def test_missing_invoice_is_domain_404(client, auth_headers):
     response = client.get("/api/invoices/number/INV-404", headers=auth_headers())
     assert response.status_code == 404
     assert response.json()["error"] == "InvoiceNotFound"


def test_list_invoices_filters_by_patient(client, auth_headers, make_invoice):
     make_invoice(patient_id="PAT-1")
     make_invoice(patient_id="PAT-2")
     make_invoice(patient_id="PAT-2")

     body = client.get("/api/invoices", params={"patient_id": "PAT-2"}, headers=auth_headers()).json()
     assert body["total"] == 2
     assert {inv["patient_id"] for inv in body["invoices"]} == {"PAT-2"}


def test_issue_draft(client, auth_headers, make_invoice):
     created = make_invoice(draft=True)
     response = client.post(f"/api/invoices/{created.id}/issue", headers=auth_headers())
     assert response.json()["status"] == "pending"

     again = client.post(f"/api/invoices/{created.id}/issue", headers=auth_headers())
     assert again.status_code == 409
     assert again.json()["error"] == "InvoiceNotPayable"


def test_cancel_requires_accounting_role(client, auth_headers, make_invoice):
     created = make_invoice()
     body = {"reason": "Duplicate bill"}

     denied = client.post(f"/api/invoices/{created.id}/cancel", json=body, headers=auth_headers("cashier"))
     assert denied.status_code == 403

     response = client.post(f"/api/invoices/{created.id}/cancel", json=body, headers=auth_headers("accountant", "acc-1"))
     assert response.status_code == 200
     assert response.json()["status"] == "cancelled"
     assert "acc-1" in response.json()["notes"]


def test_mark_overdue(client, auth_headers, make_invoice, session_factory):
     created = make_invoice()
     session = session_factory()
     try:
          session.get(Invoice, created.id).due_date = date.today() - timedelta(days=3)
          session.commit()
     finally:
          session.close()

     response = client.post("/api/invoices/mark-overdue", headers=auth_headers("accountant"))
     assert response.json() == {"marked_overdue": 1}
     assert client.get(f"/api/invoices/{created.id}", headers=auth_headers()).json()["status"] == "overdue"


def test_summary_and_patient_balance(client, auth_headers, make_invoice):
     created = make_invoice("1000.00", patient_id="PAT-7")
     client.post("/api/payments", json={"invoice_id": created.id, "amount": "250"}, headers=auth_headers())

     balance = client.get("/api/invoices/patient/PAT-7/balance", headers=auth_headers()).json()
     assert Decimal(balance["total_owed"]) == Decimal("750")
     assert Decimal(balance["total_paid"]) == Decimal("250")

     today = date.today()
     summary = client.get(
          "/api/invoices/summary",
          params={"start_date": str(today - timedelta(days=1)), "end_date": str(today + timedelta(days=1))},
          headers=auth_headers("accountant"),
     ).json()
     assert Decimal(summary["total_collected"]) == Decimal("250")
     assert Decimal(summary["total_outstanding"]) == Decimal("750")

     bad_range = client.get(
          "/api/invoices/summary",
          params={"start_date": str(today), "end_date": str(today - timedelta(days=1))},
          headers=auth_headers("accountant"),
     )
     assert bad_range.status_code == 400


def test_invoice_ledger_verification(client, auth_headers, make_invoice):
     created = make_invoice("1000.00")
     empty = client.get(f"/api/invoices/{created.id}/ledger/verify", headers=auth_headers())
     assert empty.status_code == 404

     client.post("/api/payments", json={"invoice_id": created.id, "amount": "100"}, headers=auth_headers())
     client.post("/api/payments", json={"invoice_id": created.id, "amount": "200"}, headers=auth_headers())

     result = client.get(f"/api/invoices/{created.id}/ledger/verify", headers=auth_headers()).json()
     assert result == {"valid": True, "message": "Verification passed", "entries_checked": 2}

     chain = client.get("/api/invoices/ledger/verify-chain", headers=auth_headers("accountant")).json()
     assert chain["valid"] and chain["entries_checked"] == 2

     payments = client.get(f"/api/invoices/{created.id}/payments", headers=auth_headers()).json()
     assert [Decimal(p["amount"]) for p in payments] == [Decimal("100"), Decimal("200")]
