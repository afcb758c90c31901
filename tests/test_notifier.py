import asyncio
import threading
from decimal import Decimal

from services.notifier import CompletionNotifier, CompletionSignal, checkout_key, invoice_key


def _signal(key, succeeded=True):
     return CompletionSignal(key=key, succeeded=succeeded, invoice_number="INV-001",
                             transaction_id="QKJ1", amount=Decimal("1000"))


def test_keys():
     assert invoice_key("INV-001") == "invoice:INV-001"
     assert checkout_key("ws_CO_1") == "checkout:ws_CO_1"


def test_publish_resolves_subscriber():
     notifier = CompletionNotifier()

     async def scenario():
          future = notifier.subscribe(invoice_key("INV-001"))
          assert notifier.waiter_count(invoice_key("INV-001")) == 1
          assert notifier.publish(_signal(invoice_key("INV-001"))) == 1
          return await asyncio.wait_for(future, timeout=1)

     signal = asyncio.run(scenario())
     assert signal.transaction_id == "QKJ1"
     assert notifier.waiter_count(invoice_key("INV-001")) == 0


def test_publish_from_another_thread():
     notifier = CompletionNotifier()

     async def scenario():
          future = notifier.subscribe(invoice_key("INV-001"))
          thread = threading.Thread(target=notifier.publish, args=(_signal(invoice_key("INV-001")),))
          thread.start()
          signal = await asyncio.wait_for(future, timeout=1)
          thread.join()
          return signal

     assert asyncio.run(scenario()).succeeded


def test_publish_without_subscribers_is_dropped_for_invoices():
     notifier = CompletionNotifier()
     assert notifier.publish(_signal(invoice_key("INV-001"))) == 0

     async def scenario():
          future = notifier.subscribe(invoice_key("INV-001"), replay=True)
          return future.done()

     assert asyncio.run(scenario()) is False


def test_checkout_signal_is_replayed_to_late_subscriber():
     notifier = CompletionNotifier()
     notifier.publish(_signal(checkout_key("ws_CO_1"), succeeded=False))

     async def scenario():
          late = notifier.subscribe(checkout_key("ws_CO_1"), replay=True)
          fresh = notifier.subscribe(checkout_key("ws_CO_1"))
          return late, fresh

     late, fresh = asyncio.run(scenario())
     assert late.done() and late.result().succeeded is False
     assert not fresh.done()


def test_recent_checkout_signals_are_bounded():
     notifier = CompletionNotifier(max_recent=2)
     for n in range(3):
          notifier.publish(_signal(checkout_key(f"ws_CO_{n}")))

     async def scenario():
          return [notifier.subscribe(checkout_key(f"ws_CO_{n}"), replay=True).done() for n in range(3)]

     assert asyncio.run(scenario()) == [False, True, True]


def test_unsubscribe_removes_waiter():
     notifier = CompletionNotifier()

     async def scenario():
          future = notifier.subscribe(invoice_key("INV-001"))
          notifier.unsubscribe(invoice_key("INV-001"), future)
          return notifier.publish(_signal(invoice_key("INV-001")))

     assert asyncio.run(scenario()) == 0
