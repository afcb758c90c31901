import base64
from decimal import Decimal
from unittest.mock import Mock

import pytest
import requests

from exceptions import GatewayUnavailable, InvalidPaymentAmount, InvalidPhoneNumber
from services.mpesa_gateway import MpesaGateway, parse_c2b_payload, parse_stk_callback


def _response(data, status_code=200):
     response = Mock()
     response.status_code = status_code
     response.json.return_value = data
     response.raise_for_status.return_value = None
     return response


@pytest.fixture
def http():
     http = Mock()
     http.get.return_value = _response({"access_token": "tok-1", "expires_in": "3599"})
     return http


@pytest.fixture
def mpesa(settings, http):
     return MpesaGateway(settings, http=http)


def test_access_token_is_cached(mpesa, http):
     assert mpesa.get_access_token() == "tok-1"
     assert mpesa.get_access_token() == "tok-1"
     assert http.get.call_count == 1
     _, kwargs = http.get.call_args
     assert kwargs["params"] == {"grant_type": "client_credentials"}


def test_token_failure_is_gateway_unavailable(mpesa, http):
     http.get.side_effect = requests.ConnectionError("down")
     with pytest.raises(GatewayUnavailable):
          mpesa.get_access_token()


def test_password_is_base64_of_shortcode_passkey_timestamp(mpesa):
     password = mpesa.generate_password("20261019083015")
     assert base64.b64decode(password).decode() == "174379passkey20261019083015"


def test_initiate_push_sends_daraja_request(mpesa, http):
     http.post.return_value = _response({
          "MerchantRequestID": "29115-34620561-1",
          "CheckoutRequestID": "ws_CO_191020261030",
          "ResponseCode": "0",
          "ResponseDescription": "Success. Request accepted for processing",
          "CustomerMessage": "Success. Request accepted for processing",
     })

     handle = mpesa.initiate_push("0712345678", Decimal("999.60"), "INV-001")

     assert handle.checkout_request_id == "ws_CO_191020261030"
     assert handle.phone_number == "254712345678"
     args, kwargs = http.post.call_args
     assert args[0] == "https://sandbox.safaricom.co.ke/mpesa/stkpush/v1/processrequest"
     body = kwargs["json"]
     assert body["Amount"] == 1000
     assert body["PartyA"] == body["PhoneNumber"] == "254712345678"
     assert body["AccountReference"] == "INV-001"
     assert body["CallBackURL"] == "https://billing.example.com/api/mpesa/stk-callback"
     assert kwargs["headers"]["Authorization"] == "Bearer tok-1"


def test_invalid_phone_never_reaches_the_network(mpesa, http):
     with pytest.raises(InvalidPhoneNumber):
          mpesa.initiate_push("12345", Decimal("100"), "INV-001")
     http.get.assert_not_called()
     http.post.assert_not_called()


def test_amount_below_one_shilling_is_rejected(mpesa, http):
     with pytest.raises(InvalidPaymentAmount):
          mpesa.initiate_push("0712345678", Decimal("0.40"), "INV-001")
     http.post.assert_not_called()


def test_provider_rejection_is_gateway_unavailable(mpesa, http):
     http.post.return_value = _response({"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid Amount"})
     with pytest.raises(GatewayUnavailable) as exc_info:
          mpesa.initiate_push("0712345678", Decimal("100"), "INV-001")
     assert exc_info.value.message == "Bad Request - Invalid Amount"


def test_transport_error_is_gateway_unavailable(mpesa, http):
     http.post.side_effect = requests.Timeout("slow")
     with pytest.raises(GatewayUnavailable):
          mpesa.initiate_push("0712345678", Decimal("100"), "INV-001")


def test_non_json_response_is_gateway_unavailable(mpesa, http):
     response = _response(None, status_code=502)
     response.json.side_effect = ValueError("no json")
     http.post.return_value = response
     with pytest.raises(GatewayUnavailable):
          mpesa.query_push_status("ws_CO_1")


@pytest.mark.parametrize("data, state", [
     ({"errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"}, "pending"),
     ({"ResultCode": "0", "ResultDesc": "The service request is processed successfully."}, "success"),
     ({"ResultCode": "1032", "ResultDesc": "Request cancelled by user"}, "failed"),
])
def test_query_push_status(mpesa, http, data, state):
     http.post.return_value = _response(data)
     status = mpesa.query_push_status("ws_CO_1")
     assert status.state == state
     assert status.is_final == (state != "pending")
     assert status.checkout_request_id == "ws_CO_1"


def test_register_c2b_urls(mpesa, http):
     http.post.return_value = _response({"ResponseCode": "0", "ResponseDescription": "success"})
     assert mpesa.register_c2b_urls() == {"success": True, "response_description": "success"}
     body = http.post.call_args[1]["json"]
     assert body["ConfirmationURL"].endswith("/c2b-confirmation")
     assert body["ValidationURL"].endswith("/c2b-validation")


def test_parse_c2b_payload_normalizes_account_reference():
     record = parse_c2b_payload({
          "TransactionType": "Pay Bill",
          "TransID": "QKJ41HAY6Q",
          "TransTime": "20261019103015",
          "TransAmount": "1000.00",
          "BusinessShortCode": "174379",
          "BillRefNumber": " inv-001 ",
          "MSISDN": "254712345678",
          "FirstName": "Jane",
     })
     assert record.trans_id == "QKJ41HAY6Q"
     assert record.amount == Decimal("1000.00")
     assert record.bill_ref_number == "INV-001"
     assert record.first_name == "Jane"
     assert record.source == "c2b"


@pytest.mark.parametrize("payload", [{}, {"TransID": "QKJ1"}, {"TransAmount": "10"}])
def test_parse_c2b_payload_requires_id_and_amount(payload):
     with pytest.raises(ValueError):
          parse_c2b_payload(payload)


def test_parse_stk_callback_reads_metadata():
     result = parse_stk_callback({"Body": {"stkCallback": {
          "MerchantRequestID": "29115-1",
          "CheckoutRequestID": "ws_CO_1",
          "ResultCode": 0,
          "ResultDesc": "The service request is processed successfully.",
          "CallbackMetadata": {"Item": [
               {"Name": "Amount", "Value": 1000.0},
               {"Name": "MpesaReceiptNumber", "Value": "QKJ41HAY6Q"},
               {"Name": "Balance"},
               {"Name": "TransactionDate", "Value": 20261019103015},
               {"Name": "PhoneNumber", "Value": 254712345678},
          ]},
     }}})
     assert result.succeeded
     assert result.amount == Decimal("1000.0")
     assert result.mpesa_receipt_number == "QKJ41HAY6Q"
     assert result.phone_number == "254712345678"


def test_parse_stk_callback_failure_has_no_metadata():
     result = parse_stk_callback({"Body": {"stkCallback": {
          "CheckoutRequestID": "ws_CO_1",
          "ResultCode": 1032,
          "ResultDesc": "Request cancelled by user",
     }}})
     assert not result.succeeded
     assert result.mpesa_receipt_number is None


def test_parse_stk_callback_rejects_other_bodies():
     with pytest.raises(ValueError):
          parse_stk_callback({"TransID": "QKJ1"})
