from decimal import Decimal

from exceptions import GatewayUnavailable
from models import StkPushRequest
from models.mpesa import StkRequestStatus
from services.mpesa_gateway import PushHandle, PushStatus

ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


def c2b(trans_id="QKJ41HAY6Q", amount="1000.00", bill_ref="INV-001"):
     return {
          "TransactionType": "Pay Bill",
          "TransID": trans_id,
          "TransTime": "20261019103015",
          "TransAmount": amount,
          "BusinessShortCode": "174379",
          "BillRefNumber": bill_ref,
          "MSISDN": "254712345678",
          "FirstName": "Jane",
     }


def stk_callback(checkout="ws_CO_1", result_code=0, receipt="QKJ41HAY6Q", amount=1000):
     callback = {
          "MerchantRequestID": "29115-1",
          "CheckoutRequestID": checkout,
          "ResultCode": result_code,
          "ResultDesc": "The service request is processed successfully." if result_code == 0 else "Request cancelled by user",
     }
     if result_code == 0:
          callback["CallbackMetadata"] = {"Item": [
               {"Name": "Amount", "Value": amount},
               {"Name": "MpesaReceiptNumber", "Value": receipt},
               {"Name": "TransactionDate", "Value": 20261019103015},
               {"Name": "PhoneNumber", "Value": 254712345678},
          ]}
     return {"Body": {"stkCallback": callback}}


def _invoice(client, auth_headers, invoice_id):
     return client.get(f"/api/invoices/{invoice_id}", headers=auth_headers()).json()


def test_c2b_confirmation_settles_invoice(client, auth_headers, make_invoice):
     created = make_invoice("1000.00", invoice_number="INV-001")

     response = client.post("/api/mpesa/c2b-confirmation", json=c2b())

     assert response.status_code == 200
     assert response.json() == ACK
     invoice = _invoice(client, auth_headers, created.id)
     assert invoice["status"] == "paid"
     assert Decimal(invoice["balance_amount"]) == Decimal("0")


def test_c2b_redelivery_is_acknowledged_and_ignored(client, auth_headers, make_invoice):
     created = make_invoice("2000.00", invoice_number="INV-001")

     assert client.post("/api/mpesa/c2b-confirmation", json=c2b()).json() == ACK
     assert client.post("/api/mpesa/c2b-confirmation", json=c2b()).json() == ACK

     invoice = _invoice(client, auth_headers, created.id)
     assert Decimal(invoice["paid_amount"]) == Decimal("1000")
     transactions = client.get("/api/mpesa/transactions", headers=auth_headers()).json()
     assert transactions["total"] == 1


def test_malformed_callbacks_are_still_acknowledged(client):
     assert client.post("/api/mpesa/c2b-confirmation", json={"TransAmount": "10"}).json() == ACK
     assert client.post("/api/mpesa/stk-callback", json={"Body": {}}).json() == ACK
     assert client.post("/api/mpesa/c2b-validation", json=c2b()).json() == ACK


def test_unmatched_payment_queue_and_manual_allocation(client, auth_headers, make_invoice):
     created = make_invoice("1000.00", invoice_number="INV-001")
     client.post("/api/mpesa/c2b-confirmation", json=c2b(bill_ref="0712345678"))

     queue = client.get("/api/mpesa/transactions/unallocated", headers=auth_headers()).json()
     assert queue["total"] == 1
     held = queue["transactions"][0]
     assert held["review_reason"] == "unmatched"
     assert held["payer_name"] == "Jane"

     denied = client.post(
          f"/api/mpesa/transactions/{held['id']}/allocate",
          json={"invoice_id": created.id},
          headers=auth_headers("cashier"),
     )
     assert denied.status_code == 403

     response = client.post(
          f"/api/mpesa/transactions/{held['id']}/allocate",
          json={"invoice_id": created.id},
          headers=auth_headers("accountant", "acc-1"),
     )
     assert response.status_code == 200
     body = response.json()
     assert body["status"] == "allocated"
     assert body["invoice_number"] == "INV-001"
     assert Decimal(body["invoice_balance"]) == Decimal("0")
     assert body["transaction"]["allocated_by"] == "acc-1"

     again = client.post(
          f"/api/mpesa/transactions/{held['id']}/allocate",
          json={"invoice_id": created.id},
          headers=auth_headers("accountant"),
     )
     assert again.status_code == 409
     assert again.json()["error"] == "TransactionAlreadyAllocated"


def test_stk_push_and_callback(client, auth_headers, gateway, make_invoice, session_factory):
     created = make_invoice("1000.00", invoice_number="INV-001")
     gateway.initiate_push.return_value = PushHandle(
          checkout_request_id="ws_CO_1",
          merchant_request_id="29115-1",
          phone_number="254712345678",
          amount=Decimal("1000.00"),
          account_reference="INV-001",
          customer_message="Success. Request accepted for processing",
     )

     response = client.post(
          "/api/mpesa/stk-push",
          json={"invoice_number": "INV-001", "phone_number": "0712345678"},
          headers=auth_headers("cashier"),
     )

     assert response.status_code == 200
     assert response.json()["checkout_request_id"] == "ws_CO_1"
     args, kwargs = gateway.initiate_push.call_args
     assert args == ("0712345678", Decimal("1000.00"), "INV-001")

     assert client.post("/api/mpesa/stk-callback", json=stk_callback()).json() == ACK

     assert _invoice(client, auth_headers, created.id)["status"] == "paid"
     session = session_factory()
     try:
          request = session.query(StkPushRequest).one()
          assert request.status == StkRequestStatus.COMPLETED
          assert request.mpesa_receipt_number == "QKJ41HAY6Q"
     finally:
          session.close()


def test_stk_push_for_paid_invoice_is_refused(client, auth_headers, gateway, make_invoice):
     make_invoice("100.00", invoice_number="INV-001")
     client.post("/api/mpesa/c2b-confirmation", json=c2b(amount="100"))

     response = client.post(
          "/api/mpesa/stk-push",
          json={"invoice_number": "INV-001", "phone_number": "0712345678"},
          headers=auth_headers(),
     )
     assert response.status_code == 409
     gateway.initiate_push.assert_not_called()


def test_stk_push_gateway_failure(client, auth_headers, gateway, make_invoice):
     make_invoice(invoice_number="INV-001")
     gateway.initiate_push.side_effect = GatewayUnavailable("M-PESA request failed")

     response = client.post(
          "/api/mpesa/stk-push",
          json={"invoice_number": "INV-001", "phone_number": "0712345678"},
          headers=auth_headers(),
     )
     assert response.status_code == 502
     assert response.json() == {"error": "GatewayUnavailable", "detail": "M-PESA request failed"}


def test_stk_status_marks_failed_push(client, auth_headers, gateway, make_invoice, session_factory):
     make_invoice(invoice_number="INV-001")
     gateway.initiate_push.return_value = PushHandle("ws_CO_1", "29115-1", "254712345678", Decimal("1000"), "INV-001")
     client.post(
          "/api/mpesa/stk-push",
          json={"invoice_number": "INV-001", "phone_number": "0712345678"},
          headers=auth_headers(),
     )
     gateway.query_push_status.return_value = PushStatus("ws_CO_1", "failed", "1032", "Request cancelled by user")

     response = client.get("/api/mpesa/stk-status/ws_CO_1", headers=auth_headers())

     assert response.json() == {
          "checkout_request_id": "ws_CO_1",
          "state": "failed",
          "result_code": "1032",
          "result_desc": "Request cancelled by user",
     }
     session = session_factory()
     try:
          assert session.query(StkPushRequest).one().status == StkRequestStatus.FAILED
     finally:
          session.close()


def test_statistics(client, auth_headers, make_invoice):
     make_invoice("1000.00", invoice_number="INV-001")
     client.post("/api/mpesa/c2b-confirmation", json=c2b(trans_id="QKJ1", amount="600"))
     client.post("/api/mpesa/c2b-confirmation", json=c2b(trans_id="QKJ2", amount="600"))

     stats = client.get("/api/mpesa/statistics", headers=auth_headers()).json()
     assert stats["total_transactions"] == 2
     assert stats["allocated_count"] == 1
     assert stats["pending_by_reason"] == {"overpayment": 1}


def test_paybill_instructions(client, auth_headers, make_invoice):
     make_invoice("1000.00", invoice_number="INV-001")
     body = client.get("/api/mpesa/paybill/inv-001", headers=auth_headers()).json()
     assert body["business_short_code"] == "174379"
     assert body["account_reference"] == "INV-001"
     assert Decimal(body["amount"]) == Decimal("1000")


def test_register_urls_is_admin_only(client, auth_headers, gateway):
     gateway.register_c2b_urls.return_value = {"success": True, "response_description": "success"}

     assert client.post("/api/mpesa/register-urls", headers=auth_headers("accountant")).status_code == 403
     response = client.post("/api/mpesa/register-urls", headers=auth_headers("admin"))
     assert response.json() == {"success": True, "response_description": "success"}
