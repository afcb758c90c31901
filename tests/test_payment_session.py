import asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import Mock

import pytest

from exceptions import (
     GatewayUnavailable,
     InvalidPaymentAmount,
     InvalidPhoneNumber,
     InvalidSessionTransition,
     SessionNotFound,
)
from services.mpesa_gateway import PushHandle, PushStatus
from services.notifier import CompletionSignal, checkout_key, invoice_key
from services.payment_session import PaymentSession, SessionMethod, SessionRegistry, SessionState


def _handle(checkout="ws_CO_1"):
     return PushHandle(
          checkout_request_id=checkout,
          merchant_request_id="29115-1",
          phone_number="254712345678",
          amount=Decimal("1000"),
          account_reference="INV-001",
     )


def _paid(key, transaction_id="QKJ41HAY6Q"):
     return CompletionSignal(key=key, succeeded=True, invoice_number="INV-001",
                             transaction_id=transaction_id, amount=Decimal("1000"))


@pytest.fixture
def push():
     return Mock(return_value=_handle())


@pytest.fixture
def stk_session(notifier, push):
     def make(**kwargs):
          options = dict(
               invoice_reference="INV-001",
               amount=Decimal("1000"),
               method=SessionMethod.STK,
               notifier=notifier,
               push_initiator=push,
               phone_number="0712345678",
               wait_seconds=5,
          )
          options.update(kwargs)
          return PaymentSession(**options)
     return make


def test_start_sends_push_and_processes(stk_session, push):
     session = stk_session()

     async def scenario():
          await session.start()
          return session.countdown_seconds

     countdown = asyncio.run(scenario())
     assert session.state == SessionState.PROCESSING
     assert session.checkout_request_id == "ws_CO_1"
     assert session.phone_number == "254712345678"
     assert 0 < countdown <= 5
     push.assert_called_once_with("254712345678", Decimal("1000"), "INV-001")


def test_callback_signal_completes_session(stk_session, notifier):
     session = stk_session()

     async def scenario():
          await session.start()
          notifier.publish(_paid(checkout_key("ws_CO_1")))
          return await session.wait()

     assert asyncio.run(scenario()) == SessionState.SUCCESS
     assert session.transaction_id == "QKJ41HAY6Q"
     assert not session.closed
     assert session.countdown_seconds == 0


def test_callback_arriving_before_wait_is_not_lost(stk_session, notifier):
     def push(phone, amount, reference):
          notifier.publish(_paid(checkout_key("ws_CO_1")))
          return _handle()

     session = stk_session(push_initiator=push)

     async def scenario():
          await session.start()
          return await session.wait()

     assert asyncio.run(scenario()) == SessionState.SUCCESS


def test_failed_signal_fails_session(stk_session, notifier):
     session = stk_session()

     async def scenario():
          await session.start()
          notifier.publish(CompletionSignal(key=checkout_key("ws_CO_1"), succeeded=False,
                                            message="Request cancelled by user"))
          return await session.wait()

     assert asyncio.run(scenario()) == SessionState.FAILED
     assert session.error == "Request cancelled by user"


def test_timeout_then_reset_allows_retry(stk_session, push):
     session = stk_session(wait_seconds=0.05)

     async def first_attempt():
          await session.start()
          return await session.wait()

     assert asyncio.run(first_attempt()) == SessionState.TIMEOUT
     assert session.error_code == "SessionTimeout"

     session.reset()
     assert session.state == SessionState.PENDING
     assert session.checkout_request_id is None
     assert session.error is None and session.error_code is None
     assert session.transaction_id is None

     asyncio.run(session.start())
     assert session.state == SessionState.PROCESSING
     assert push.call_count == 2


def test_invalid_phone_keeps_session_pending(stk_session, push):
     session = stk_session(phone_number="12345")

     with pytest.raises(InvalidPhoneNumber):
          asyncio.run(session.start())
     assert session.state == SessionState.PENDING
     push.assert_not_called()


def test_non_positive_amount_is_rejected(stk_session):
     session = stk_session(amount=Decimal("0"))
     with pytest.raises(InvalidPaymentAmount):
          asyncio.run(session.start())


def test_gateway_failure_moves_to_failed(stk_session, push):
     push.side_effect = GatewayUnavailable("M-PESA request failed")
     session = stk_session()

     asyncio.run(session.start())

     assert session.state == SessionState.FAILED
     assert session.error == "M-PESA request failed"
     assert session.error_code == "GatewayUnavailable"
     session.reset()
     assert session.state == SessionState.PENDING


def test_cancel_while_processing(stk_session, notifier):
     session = stk_session()

     async def scenario():
          await session.start()
          waiter = asyncio.ensure_future(session.wait())
          await asyncio.sleep(0)
          session.cancel()
          return await waiter

     assert asyncio.run(scenario()) == SessionState.FAILED
     assert session.closed
     assert session.error == "Payment cancelled"
     assert notifier.waiter_count(checkout_key("ws_CO_1")) == 0
     with pytest.raises(InvalidSessionTransition):
          session.cancel()
     with pytest.raises(InvalidSessionTransition):
          session.reset()


def test_start_twice_is_rejected(stk_session):
     session = stk_session()

     async def scenario():
          await session.start()
          await session.start()

     with pytest.raises(InvalidSessionTransition):
          asyncio.run(scenario())


def test_reset_only_after_failure_or_timeout(stk_session):
     session = stk_session()
     with pytest.raises(InvalidSessionTransition):
          session.reset()


def test_embedded_session_reports_and_closes(stk_session, notifier):
     on_success = Mock()
     session = stk_session(embedded=True, on_success=on_success)

     async def scenario():
          await session.start()
          notifier.publish(_paid(checkout_key("ws_CO_1")))
          return await session.wait()

     assert asyncio.run(scenario()) == SessionState.SUCCESS
     on_success.assert_called_once_with(session)
     assert session.closed


def test_manual_session_waits_for_invoice_payment(notifier):
     session = PaymentSession("INV-001", Decimal("1000"), SessionMethod.MANUAL, notifier,
                              wait_seconds=5, short_code="174379")
     assert session.paybill_instructions() == {
          "business_short_code": "174379",
          "account_reference": "INV-001",
          "amount": Decimal("1000"),
     }

     async def scenario():
          await session.start()
          notifier.publish(_paid(invoice_key("INV-001"), transaction_id="QKJ9"))
          return await session.wait()

     assert asyncio.run(scenario()) == SessionState.SUCCESS
     assert session.transaction_id == "QKJ9"


def test_status_check_failure_resolves_session(stk_session):
     checker = Mock(return_value=PushStatus("ws_CO_1", "failed", result_code="1032",
                                            result_desc="Request cancelled by user"))
     session = stk_session(status_checker=checker)

     async def scenario():
          await session.start()
          status = await session.check_status()
          return status, await session.wait()

     status, state = asyncio.run(scenario())
     assert status.state == "failed"
     assert state == SessionState.FAILED
     checker.assert_called_once_with("ws_CO_1")


def test_status_check_success_keeps_waiting_for_callback(stk_session):
     checker = Mock(return_value=PushStatus("ws_CO_1", "success", result_code="0"))
     session = stk_session(status_checker=checker)

     async def scenario():
          await session.start()
          await session.check_status()
          return session.state

     assert asyncio.run(scenario()) == SessionState.PROCESSING


def test_status_check_needs_stk_push(notifier, stk_session):
     manual = PaymentSession("INV-001", Decimal("10"), SessionMethod.MANUAL, notifier)
     with pytest.raises(InvalidSessionTransition):
          asyncio.run(manual.check_status())

     not_started = stk_session(status_checker=Mock())
     with pytest.raises(InvalidSessionTransition):
          asyncio.run(not_started.check_status())


def test_registry_runs_wait_in_background(stk_session, notifier):
     registry = SessionRegistry()
     session = registry.add(stk_session())
     assert registry.get(session.id) is session
     assert len(registry) == 1

     async def scenario():
          await registry.start(session)
          notifier.publish(_paid(checkout_key("ws_CO_1")))
          return await registry.wait(session.id)

     assert asyncio.run(scenario()) == SessionState.SUCCESS

     registry.remove(session.id)
     with pytest.raises(SessionNotFound):
          registry.get(session.id)


def test_registry_shutdown_cancels_waits(stk_session):
     registry = SessionRegistry()
     session = registry.add(stk_session())

     async def scenario():
          await registry.start(session)
          await registry.shutdown()

     asyncio.run(scenario())
     assert session.state == SessionState.PROCESSING


def test_registry_prunes_idle_sessions_that_were_never_closed(stk_session):
     registry = SessionRegistry()
     abandoned = registry.add(stk_session())
     abandoned.state = SessionState.TIMEOUT
     abandoned.updated_at = datetime.utcnow() - timedelta(days=30)
     recent = registry.add(stk_session())
     recent.state = SessionState.FAILED

     registry.add(stk_session())

     assert len(registry) == 2
     with pytest.raises(SessionNotFound):
          registry.get(abandoned.id)
     assert registry.get(recent.id) is recent


def test_registry_keeps_processing_sessions(stk_session):
     registry = SessionRegistry()
     session = registry.add(stk_session())

     async def scenario():
          await registry.start(session)
          session.updated_at = datetime.utcnow() - timedelta(days=30)
          registry.add(stk_session())
          kept = registry.get(session.id)
          await registry.shutdown()
          return kept

     assert asyncio.run(scenario()) is session
