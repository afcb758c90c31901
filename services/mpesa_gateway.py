# services/mpesa_gateway.py
"""
M-PESA (Safaricom Daraja) gateway client.

Outbound calls: OAuth token, STK push, STK push status query and C2B URL
registration. Inbound helpers normalize C2B confirmations and STK callbacks
into plain records the reconciliation service understands.

The client never retries; any transport or provider error surfaces as
GatewayUnavailable and the caller decides what to do.
"""
import base64
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

import requests

from config import Settings
from exceptions import GatewayUnavailable, InvalidPaymentAmount
from utils.phone import validate_phone_number

logger = logging.getLogger(__name__)

# Refresh the OAuth token this many seconds before the provider says it expires
TOKEN_REFRESH_MARGIN = 300

# Daraja answers a status query with this error while the payer has not acted yet
STK_STILL_PROCESSING = "500.001.1001"


@dataclass
class PushHandle:
     checkout_request_id: str
     merchant_request_id: Optional[str]
     phone_number: str
     amount: Decimal
     account_reference: str
     customer_message: Optional[str] = None


@dataclass
class PushStatus:
     """Outcome of an STK status query: ``pending``, ``success`` or ``failed``."""
     checkout_request_id: str
     state: str
     result_code: Optional[str] = None
     result_desc: Optional[str] = None

     @property
     def is_final(self) -> bool:
          return self.state != "pending"


@dataclass
class ProviderTransactionRecord:
     """A normalized inbound payment, from either a C2B confirmation or an STK callback."""
     trans_id: str
     amount: Decimal
     bill_ref_number: Optional[str]
     msisdn: Optional[str] = None
     transaction_type: Optional[str] = None
     trans_time: Optional[str] = None
     business_short_code: Optional[str] = None
     org_account_balance: Optional[Decimal] = None
     third_party_trans_id: Optional[str] = None
     first_name: Optional[str] = None
     middle_name: Optional[str] = None
     last_name: Optional[str] = None
     source: str = "c2b"
     raw_payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StkCallbackResult:
     merchant_request_id: Optional[str]
     checkout_request_id: str
     result_code: int
     result_desc: Optional[str]
     amount: Optional[Decimal] = None
     mpesa_receipt_number: Optional[str] = None
     transaction_date: Optional[str] = None
     phone_number: Optional[str] = None
     raw_payload: Dict[str, Any] = field(default_factory=dict)

     @property
     def succeeded(self) -> bool:
          return self.result_code == 0


def _decimal_or_none(value) -> Optional[Decimal]:
     if value in (None, ""):
          return None
     return Decimal(str(value))


def _str_or_none(value) -> Optional[str]:
     if value in (None, ""):
          return None
     return str(value)


def parse_c2b_payload(payload: Dict[str, Any]) -> ProviderTransactionRecord:
     """
     Normalize a C2B confirmation body.

     Raises:
          ValueError: TransID or TransAmount missing or malformed
     """
     trans_id = _str_or_none(payload.get("TransID"))
     if not trans_id:
          raise ValueError("C2B payload has no TransID")
     amount = _decimal_or_none(payload.get("TransAmount"))
     if amount is None:
          raise ValueError(f"C2B payload {trans_id} has no TransAmount")

     bill_ref = _str_or_none(payload.get("BillRefNumber")) or _str_or_none(payload.get("InvoiceNumber"))
     return ProviderTransactionRecord(
          trans_id=trans_id.strip(),
          amount=amount,
          bill_ref_number=bill_ref.strip().upper() if bill_ref else None,
          msisdn=_str_or_none(payload.get("MSISDN")),
          transaction_type=_str_or_none(payload.get("TransactionType")),
          trans_time=_str_or_none(payload.get("TransTime")),
          business_short_code=_str_or_none(payload.get("BusinessShortCode")),
          org_account_balance=_decimal_or_none(payload.get("OrgAccountBalance")),
          third_party_trans_id=_str_or_none(payload.get("ThirdPartyTransID")),
          first_name=_str_or_none(payload.get("FirstName")),
          middle_name=_str_or_none(payload.get("MiddleName")),
          last_name=_str_or_none(payload.get("LastName")),
          source="c2b",
          raw_payload=dict(payload),
     )


def parse_stk_callback(payload: Dict[str, Any]) -> StkCallbackResult:
     """
     Normalize ``Body.stkCallback`` of an STK push result.

     CallbackMetadata is only present on success (ResultCode 0).

     Raises:
          ValueError: not an STK callback body
     """
     callback = (payload.get("Body") or {}).get("stkCallback") or {}
     checkout_request_id = callback.get("CheckoutRequestID")
     if not checkout_request_id or callback.get("ResultCode") is None:
          raise ValueError("Payload is not an STK callback")

     metadata = {}
     for item in (callback.get("CallbackMetadata") or {}).get("Item", []):
          if item.get("Name"):
               metadata[item["Name"]] = item.get("Value")

     return StkCallbackResult(
          merchant_request_id=callback.get("MerchantRequestID"),
          checkout_request_id=checkout_request_id,
          result_code=int(callback["ResultCode"]),
          result_desc=callback.get("ResultDesc"),
          amount=_decimal_or_none(metadata.get("Amount")),
          mpesa_receipt_number=_str_or_none(metadata.get("MpesaReceiptNumber")),
          transaction_date=_str_or_none(metadata.get("TransactionDate")),
          phone_number=_str_or_none(metadata.get("PhoneNumber")),
          raw_payload=dict(payload),
     )


class MpesaGateway:
     """
     Daraja API client bound to one set of credentials.

     ``http`` is anything with requests' ``get``/``post`` (a requests.Session
     by default), so tests can hand in a mock.
     """

     def __init__(self, settings: Settings, http=None):
          self.settings = settings
          self.base_url = settings.mpesa_base_url
          self.timeout = settings.mpesa_timeout_seconds
          self._http = http or requests.Session()
          self._token: Optional[str] = None
          self._token_expiry = 0.0
          self._token_lock = threading.Lock()

     @property
     def short_code(self) -> str:
          return self.settings.mpesa_shortcode

     def get_access_token(self) -> str:
          """Return a cached OAuth token, fetching a new one when close to expiry."""
          with self._token_lock:
               if self._token and time.monotonic() < self._token_expiry:
                    return self._token

               try:
                    response = self._http.get(
                         f"{self.base_url}/oauth/v1/generate",
                         params={"grant_type": "client_credentials"},
                         auth=(self.settings.mpesa_consumer_key, self.settings.mpesa_consumer_secret),
                         timeout=self.timeout,
                    )
                    response.raise_for_status()
                    data = response.json()
                    token = data["access_token"]
                    expires_in = int(data.get("expires_in", 3599))
               except (requests.RequestException, KeyError, ValueError) as e:
                    logger.error("Failed to get M-PESA access token: %s", e)
                    raise GatewayUnavailable("Failed to authenticate with M-PESA") from e

               self._token = token
               self._token_expiry = time.monotonic() + max(expires_in - TOKEN_REFRESH_MARGIN, 0)
               return token

     @staticmethod
     def generate_timestamp(now: Optional[datetime] = None) -> str:
          return (now or datetime.now()).strftime("%Y%m%d%H%M%S")

     def generate_password(self, timestamp: str) -> str:
          raw = f"{self.short_code}{self.settings.mpesa_passkey}{timestamp}"
          return base64.b64encode(raw.encode("utf-8")).decode("utf-8")

     def _post(self, path: str, payload: dict) -> dict:
          token = self.get_access_token()
          try:
               response = self._http.post(
                    f"{self.base_url}{path}",
                    json=payload,
                    headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
                    timeout=self.timeout,
               )
          except requests.RequestException as e:
               logger.error("M-PESA request to %s failed: %s", path, e)
               raise GatewayUnavailable(f"M-PESA request failed: {e}") from e

          try:
               data = response.json()
          except ValueError as e:
               logger.error("M-PESA returned non-JSON response (%s) for %s", response.status_code, path)
               raise GatewayUnavailable(f"Unexpected M-PESA response ({response.status_code})") from e

          if not isinstance(data, dict):
               raise GatewayUnavailable(f"Unexpected M-PESA response ({response.status_code})")
          return data

     def initiate_push(self, phone_number: str, amount, account_reference: str,
                       description: str = "Hospital Payment") -> PushHandle:
          """
          Send an STK push prompt to the payer's phone.

          Fire and forget: a returned handle only means Safaricom accepted the
          request. The result arrives later on the STK callback.

          Raises:
               InvalidPhoneNumber: before any network call
               InvalidPaymentAmount: amount rounds to less than 1 shilling
               GatewayUnavailable: transport failure or provider rejection
          """
          phone = validate_phone_number(phone_number)
          amount = Decimal(str(amount))
          whole_shillings = int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
          if whole_shillings < 1:
               raise InvalidPaymentAmount("M-PESA amount must be at least KES 1")

          timestamp = self.generate_timestamp()
          data = self._post("/mpesa/stkpush/v1/processrequest", {
               "BusinessShortCode": self.short_code,
               "Password": self.generate_password(timestamp),
               "Timestamp": timestamp,
               "TransactionType": "CustomerPayBillOnline",
               "Amount": whole_shillings,
               "PartyA": phone,
               "PartyB": self.short_code,
               "PhoneNumber": phone,
               "CallBackURL": f"{self.settings.mpesa_callback_url}/stk-callback",
               "AccountReference": account_reference,
               "TransactionDesc": description,
          })

          if str(data.get("ResponseCode")) != "0" or not data.get("CheckoutRequestID"):
               message = data.get("errorMessage") or data.get("ResponseDescription") or "STK push failed"
               logger.error("STK push for %s rejected: %s", account_reference, message)
               raise GatewayUnavailable(message)

          logger.info(
               "STK push sent for %s (KES %s to %s), checkout %s",
               account_reference, whole_shillings, phone, data["CheckoutRequestID"],
          )
          return PushHandle(
               checkout_request_id=data["CheckoutRequestID"],
               merchant_request_id=data.get("MerchantRequestID"),
               phone_number=phone,
               amount=amount,
               account_reference=account_reference,
               customer_message=data.get("CustomerMessage"),
          )

     def query_push_status(self, checkout_request_id: str) -> PushStatus:
          """Ask Daraja what happened to an STK push."""
          timestamp = self.generate_timestamp()
          data = self._post("/mpesa/stkpushquery/v1/query", {
               "BusinessShortCode": self.short_code,
               "Password": self.generate_password(timestamp),
               "Timestamp": timestamp,
               "CheckoutRequestID": checkout_request_id,
          })

          if data.get("errorCode") == STK_STILL_PROCESSING:
               return PushStatus(checkout_request_id, "pending", result_desc=data.get("errorMessage"))
          if "ResultCode" not in data:
               raise GatewayUnavailable(data.get("errorMessage") or "Failed to query payment status")

          result_code = str(data["ResultCode"])
          return PushStatus(
               checkout_request_id,
               "success" if result_code == "0" else "failed",
               result_code=result_code,
               result_desc=data.get("ResultDesc"),
          )

     def register_c2b_urls(self) -> dict:
          """Register the paybill confirmation and validation URLs with Safaricom."""
          data = self._post("/mpesa/c2b/v1/registerurl", {
               "ShortCode": self.short_code,
               "ResponseType": "Completed",
               "ConfirmationURL": f"{self.settings.mpesa_callback_url}/c2b-confirmation",
               "ValidationURL": f"{self.settings.mpesa_callback_url}/c2b-validation",
          })
          if str(data.get("ResponseCode")) != "0":
               raise GatewayUnavailable(
                    data.get("errorMessage") or data.get("ResponseDescription") or "Failed to register C2B URLs"
               )
          logger.info("C2B URLs registered for short code %s", self.short_code)
          return {"success": True, "response_description": data.get("ResponseDescription")}
