# services/payment_session.py
"""
Payment sessions: one clerk-facing payment attempt for an invoice.

    pending -> processing -> success | failed | timeout
    failed / timeout -> pending (reset)

An STK session pushes a prompt to the payer's phone and waits for the STK
callback of that push. A manual (paybill) session shows the paybill details
and waits for a C2B payment to be reconciled against the invoice. Either way
the wait is an asyncio future with a deadline; nothing holds a database
session or lock while waiting.

Sessions are in-memory only and live in the application's SessionRegistry.
"""
import asyncio
import enum
import logging
import math
import time
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Optional

from exceptions import (
     GatewayUnavailable,
     InvalidPaymentAmount,
     InvalidSessionTransition,
     SessionNotFound,
     SessionTimeout,
)
from services.mpesa_gateway import PushHandle, PushStatus
from services.notifier import CompletionNotifier, CompletionSignal, checkout_key, invoice_key
from utils.phone import validate_phone_number

logger = logging.getLogger(__name__)

PushInitiator = Callable[[str, Decimal, str], PushHandle]
StatusChecker = Callable[[str], PushStatus]

# Sessions not processing are kept this long after their last change so
# clients can still read the outcome
SESSION_RETENTION = timedelta(hours=1)

# Resolves the wait when the session is cancelled
_CANCELLED = CompletionSignal(key="", succeeded=False, message="Payment cancelled")


class SessionState(str, enum.Enum):
     PENDING = "pending"
     PROCESSING = "processing"
     SUCCESS = "success"
     FAILED = "failed"
     TIMEOUT = "timeout"


class SessionMethod(str, enum.Enum):
     STK = "stk"
     MANUAL = "manual"


class PaymentSession:
     """
     A single payment attempt.

     Args:
          invoice_reference: Invoice number (the M-PESA account reference)
          amount: Amount requested
          method: STK push or manual paybill
          notifier: Where completion signals are published
          push_initiator: Sends the STK push (blocking; runs in the default executor)
          status_checker: Queries an STK push (blocking)
          phone_number: Payer phone, required for STK
          wait_seconds: How long ``processing`` may last
          embedded: Embedded sessions report success to ``on_success`` and
               close themselves; standalone ones stay open until ``close()``
          short_code: Paybill number shown for manual payment
     """

     def __init__(
          self,
          invoice_reference: str,
          amount,
          method: SessionMethod,
          notifier: CompletionNotifier,
          push_initiator: Optional[PushInitiator] = None,
          status_checker: Optional[StatusChecker] = None,
          phone_number: Optional[str] = None,
          wait_seconds: float = 30,
          embedded: bool = False,
          on_success: Optional[Callable[["PaymentSession"], None]] = None,
          short_code: str = "",
          session_id: Optional[str] = None,
     ):
          self.id = session_id or uuid.uuid4().hex
          self.invoice_reference = invoice_reference
          self.amount = Decimal(str(amount))
          self.method = SessionMethod(method)
          self.phone_number = phone_number
          self.wait_seconds = wait_seconds
          self.embedded = embedded
          self.short_code = short_code
          self.created_at = datetime.utcnow()
          self.updated_at = self.created_at

          self.state = SessionState.PENDING
          self.transaction_id: Optional[str] = None
          self.checkout_request_id: Optional[str] = None
          self.error: Optional[str] = None
          self.error_code: Optional[str] = None
          self.closed = False

          self._notifier = notifier
          self._push_initiator = push_initiator
          self._status_checker = status_checker
          self._on_success = on_success
          self._deadline: Optional[float] = None
          self._future: Optional[asyncio.Future] = None
          self._key: Optional[str] = None
          self._starting = False

     @property
     def state(self) -> SessionState:
          return self._state

     @state.setter
     def state(self, value: SessionState) -> None:
          self._state = value
          self.updated_at = datetime.utcnow()

     def __repr__(self):
          return f"<PaymentSession(id='{self.id}', invoice='{self.invoice_reference}', state='{self.state.value}')>"

     @property
     def countdown_seconds(self) -> int:
          """Whole seconds left before a processing session times out."""
          if self.state != SessionState.PROCESSING or self._deadline is None:
               return 0
          return max(0, math.ceil(self._deadline - time.monotonic()))

     def paybill_instructions(self) -> dict:
          return {
               "business_short_code": self.short_code,
               "account_reference": self.invoice_reference,
               "amount": self.amount,
          }

     def _require(self, *states: SessionState, action: str) -> None:
          if self.closed:
               raise InvalidSessionTransition(f"Cannot {action}: session is closed")
          if self.state not in states:
               raise InvalidSessionTransition(f"Cannot {action} while session is {self.state.value}")

     async def start(self) -> "PaymentSession":
          """
          Begin the attempt.

          Raises:
               InvalidSessionTransition: not pending, or closed
               InvalidPaymentAmount: amount not positive
               InvalidPhoneNumber: STK with a bad phone; the session stays pending

          A gateway failure does not raise: the session moves to ``failed``
          with the error recorded.
          """
          self._require(SessionState.PENDING, action="start")
          if self._starting:
               raise InvalidSessionTransition("Session is already starting")
          if self.amount <= 0:
               raise InvalidPaymentAmount("Payment amount must be greater than zero")

          self._starting = True
          try:
               return await self._begin()
          finally:
               self._starting = False

     async def _begin(self) -> "PaymentSession":
          if self.method == SessionMethod.STK:
               self.phone_number = validate_phone_number(self.phone_number or "")
               if self._push_initiator is None:
                    raise InvalidSessionTransition("STK push is not available for this session")
               loop = asyncio.get_running_loop()
               try:
                    handle = await loop.run_in_executor(
                         None, self._push_initiator, self.phone_number, self.amount, self.invoice_reference
                    )
               except GatewayUnavailable as e:
                    self.state = SessionState.FAILED
                    self.error = e.message
                    self.error_code = type(e).__name__
                    logger.warning("Session %s: STK push failed: %s", self.id, e.message)
                    return self
               self.checkout_request_id = handle.checkout_request_id
               if self.closed:
                    # cancelled while the push was in flight
                    return self
               self._key = checkout_key(handle.checkout_request_id)
               self._future = self._notifier.subscribe(self._key, replay=True)
          else:
               self._key = invoice_key(self.invoice_reference)
               self._future = self._notifier.subscribe(self._key)

          self.error = None
          self.error_code = None
          self._deadline = time.monotonic() + self.wait_seconds
          self.state = SessionState.PROCESSING
          logger.info("Session %s processing %s payment of %s for %s", self.id, self.method.value, self.amount, self.invoice_reference)
          return self

     async def wait(self) -> SessionState:
          """Suspend until the attempt resolves or the deadline passes."""
          if self.state != SessionState.PROCESSING or self._future is None:
               return self.state

          future, key = self._future, self._key
          remaining = max(self._deadline - time.monotonic(), 0)
          try:
               signal = await asyncio.wait_for(future, timeout=remaining)
          except asyncio.TimeoutError:
               if self.state == SessionState.PROCESSING and future is self._future:
                    error = SessionTimeout(f"No payment confirmation within {self.wait_seconds:g} seconds")
                    self.state = SessionState.TIMEOUT
                    self.error = error.message
                    self.error_code = type(error).__name__
                    logger.info("Session %s timed out", self.id)
               return self.state
          finally:
               self._notifier.unsubscribe(key, future)

          if signal is _CANCELLED or self.state != SessionState.PROCESSING or future is not self._future:
               return self.state
          self._finish(signal)
          return self.state

     def _finish(self, signal: CompletionSignal) -> None:
          if signal.succeeded:
               self.state = SessionState.SUCCESS
               self.transaction_id = signal.transaction_id
               logger.info("Session %s succeeded (transaction %s)", self.id, signal.transaction_id)
               if self.embedded:
                    if self._on_success is not None:
                         self._on_success(self)
                    self.closed = True
          else:
               self.state = SessionState.FAILED
               self.error = signal.message or "Payment failed"
               self.error_code = "PaymentFailed"
               logger.info("Session %s failed: %s", self.id, self.error)

     async def check_status(self) -> PushStatus:
          """
          Ask the provider about the pushed STK request.

          A final failure resolves the session as failed. A success only
          reports back: the session completes when the payment has been
          applied to the invoice.
          """
          if self.method != SessionMethod.STK or self._status_checker is None:
               raise InvalidSessionTransition("Status check is only available for STK push sessions")
          if not self.checkout_request_id:
               raise InvalidSessionTransition("No STK push has been sent for this session")

          loop = asyncio.get_running_loop()
          status = await loop.run_in_executor(None, self._status_checker, self.checkout_request_id)
          if status.state == "failed" and self.state == SessionState.PROCESSING and self._future is not None:
               if not self._future.done():
                    self._future.set_result(CompletionSignal(
                         key=self._key,
                         succeeded=False,
                         message=status.result_desc or "Payment was not completed",
                    ))
          return status

     def cancel(self) -> None:
          """Abandon the attempt. An STK prompt already on the phone is not withdrawn."""
          self._require(SessionState.PENDING, SessionState.PROCESSING, action="cancel")
          if self.state == SessionState.PROCESSING:
               self.state = SessionState.FAILED
               self.error = "Payment cancelled"
               self.error_code = "Cancelled"
               if self._future is not None and not self._future.done():
                    self._future.set_result(_CANCELLED)
          self.closed = True
          logger.info("Session %s cancelled", self.id)

     def reset(self) -> None:
          """Return a failed or timed-out session to pending for another try."""
          self._require(SessionState.FAILED, SessionState.TIMEOUT, action="retry")
          self.state = SessionState.PENDING
          self.transaction_id = None
          self.checkout_request_id = None
          self.error = None
          self.error_code = None
          self._deadline = None
          self._future = None
          self._key = None

     def close(self) -> None:
          if self.closed:
               return
          if self.state == SessionState.PROCESSING:
               self.cancel()
               return
          self.closed = True
          self.updated_at = datetime.utcnow()


class SessionRegistry:
     """In-memory sessions of one application instance, with their wait tasks."""

     def __init__(self):
          self._sessions: Dict[str, PaymentSession] = {}
          self._tasks: Dict[str, asyncio.Task] = {}

     def __len__(self):
          return len(self._sessions)

     def add(self, session: PaymentSession) -> PaymentSession:
          self._discard_finished()
          self._sessions[session.id] = session
          return session

     def get(self, session_id: str) -> PaymentSession:
          session = self._sessions.get(session_id)
          if session is None:
               raise SessionNotFound(f"Payment session {session_id} not found")
          return session

     def remove(self, session_id: str) -> None:
          self._sessions.pop(session_id, None)
          task = self._tasks.pop(session_id, None)
          if task is not None and not task.done():
               task.cancel()

     async def start(self, session: PaymentSession) -> PaymentSession:
          """Start ``session`` and keep waiting for its outcome in the background."""
          await session.start()
          if session.state == SessionState.PROCESSING:
               self._tasks[session.id] = asyncio.create_task(session.wait())
          return session

     async def wait(self, session_id: str) -> SessionState:
          task = self._tasks.get(session_id)
          if task is not None:
               await task
          return self.get(session_id).state

     def _discard_finished(self) -> None:
          cutoff = datetime.utcnow() - SESSION_RETENTION
          for session_id, session in list(self._sessions.items()):
               task = self._tasks.get(session_id)
               if session.state == SessionState.PROCESSING or (task is not None and not task.done()):
                    continue
               if session.updated_at < cutoff:
                    self._sessions.pop(session_id, None)
                    self._tasks.pop(session_id, None)

     async def shutdown(self) -> None:
          """Cancel every background wait (application shutdown)."""
          tasks = [task for task in self._tasks.values() if not task.done()]
          for task in tasks:
               task.cancel()
          await asyncio.gather(*tasks, return_exceptions=True)
          self._tasks.clear()
