# services/notifier.py
"""
Completion notifier: hands payment outcomes from request handlers to waiting
payment sessions.

Publishers run in FastAPI's sync worker threads (webhooks, manual allocation);
subscribers are asyncio futures owned by the event loop. Results cross over
with ``loop.call_soon_threadsafe``.

Keys:
     invoice:<invoice_number>   any allocation outcome for the invoice
     checkout:<checkout_id>     the result of one STK push
"""
import asyncio
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

MAX_RECENT_SIGNALS = 256


def invoice_key(invoice_number: str) -> str:
     return f"invoice:{invoice_number}"


def checkout_key(checkout_request_id: str) -> str:
     return f"checkout:{checkout_request_id}"


@dataclass(frozen=True)
class CompletionSignal:
     key: str
     succeeded: bool
     invoice_number: Optional[str] = None
     transaction_id: Optional[str] = None
     amount: Optional[Decimal] = None
     message: Optional[str] = None


class CompletionNotifier:
     def __init__(self, max_recent: int = MAX_RECENT_SIGNALS):
          self._lock = threading.Lock()
          self._waiters: Dict[str, List[Tuple[asyncio.AbstractEventLoop, asyncio.Future]]] = {}
          self._recent: "OrderedDict[str, CompletionSignal]" = OrderedDict()
          self._max_recent = max_recent

     def subscribe(self, key: str, replay: bool = False) -> asyncio.Future:
          """
          Return a future resolved with the next CompletionSignal for ``key``.

          Must be called from a running event loop. With ``replay`` a signal
          already published for the key resolves the future immediately; this
          covers an STK callback that lands before the session starts waiting.
          """
          loop = asyncio.get_running_loop()
          future = loop.create_future()
          with self._lock:
               if replay and key in self._recent:
                    future.set_result(self._recent[key])
                    return future
               self._waiters.setdefault(key, []).append((loop, future))
          return future

     def unsubscribe(self, key: str, future: asyncio.Future) -> None:
          with self._lock:
               waiters = self._waiters.get(key)
               if not waiters:
                    return
               waiters[:] = [(loop, f) for loop, f in waiters if f is not future]
               if not waiters:
                    del self._waiters[key]

     def publish(self, signal: CompletionSignal) -> int:
          """
          Deliver ``signal`` to every current subscriber of its key.

          Safe to call from any thread. Returns the number of waiters notified.
          """
          with self._lock:
               waiters = self._waiters.pop(signal.key, [])
               if signal.key.startswith("checkout:"):
                    self._recent[signal.key] = signal
                    self._recent.move_to_end(signal.key)
                    while len(self._recent) > self._max_recent:
                         self._recent.popitem(last=False)

          delivered = 0
          for loop, future in waiters:
               try:
                    loop.call_soon_threadsafe(_resolve, future, signal)
                    delivered += 1
               except RuntimeError:
                    # event loop already closed; nobody is waiting any more
                    logger.debug("Dropped signal for %s: event loop closed", signal.key)

          logger.debug("Published %s (succeeded=%s) to %d waiter(s)", signal.key, signal.succeeded, delivered)
          return delivered

     def waiter_count(self, key: str) -> int:
          with self._lock:
               return len(self._waiters.get(key, []))


def _resolve(future: asyncio.Future, signal: CompletionSignal) -> None:
     if not future.done():
          future.set_result(signal)
