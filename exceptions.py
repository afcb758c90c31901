# exceptions.py
"""
Domain errors for billing, M-PESA and payment sessions.

Services raise these; main.py maps them to HTTP responses via ``status_code``.
"""


class PaymentError(Exception):
     """Base class for all billing/payment domain errors."""

     status_code = 400

     def __init__(self, message: str = ""):
          super().__init__(message or self.__class__.__name__)
          self.message = message or self.__class__.__name__


class InvalidPhoneNumber(PaymentError):
     """Phone number does not normalize to a Safaricom subscriber number."""

     def __init__(self, phone_number: str):
          super().__init__(
               f"Invalid phone number '{phone_number}'. Use a Kenyan mobile number e.g. 0712345678"
          )
          self.phone_number = phone_number


class InvalidPaymentAmount(PaymentError):
     pass


class GatewayUnavailable(PaymentError):
     """Outbound request to the mobile-money provider failed."""

     status_code = 502


class InvoiceNotFound(PaymentError):
     status_code = 404


class PaymentNotFound(PaymentError):
     status_code = 404


class TransactionNotFound(PaymentError):
     status_code = 404


class SessionNotFound(PaymentError):
     status_code = 404


class AlreadySettled(PaymentError):
     """Invoice has no outstanding balance."""

     status_code = 409


class OverpaymentRejected(PaymentError):
     """Amount exceeds the outstanding invoice balance."""

     status_code = 409


class TransactionAlreadyAllocated(PaymentError):
     """Provider transaction has already been applied to an invoice."""

     status_code = 409


class InvoiceNotPayable(PaymentError):
     """Invoice is a draft or cancelled and cannot take payments or changes."""

     status_code = 409


class InvalidSessionTransition(PaymentError):
     status_code = 409


class SessionTimeout(PaymentError):
     """No completion signal arrived before the wait timed out."""

     status_code = 408
