# services/ledger_service.py
"""
Payment Ledger Service - blockchain-like immutable payment records.

When a payment is completed:
1. Compute SHA-256 hash from payment_id + invoice_id + amount + reference + timestamp
2. Store record with reference to previous record's hash (chain)
3. Ledger records are append-only; no update/delete

Verification: recompute hash and compare with stored hash; optionally verify chain.

previous_hash is unique, so two payments appended concurrently cannot both
link to the same head: the later insert fails and is retried on the new head.
"""
import hashlib
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy import desc

from models import PaymentLedger, Payment

logger = logging.getLogger(__name__)


# Genesis block: no previous record
GENESIS_HASH = "0"

CHAIN_APPEND_ATTEMPTS = 5


def _normalize_amount(amount: Decimal) -> str:
     """Normalize amount to canonical string for hashing (2 decimal places)."""
     return f"{Decimal(amount).quantize(Decimal('0.01'))}"


def _normalize_timestamp(ts: datetime) -> str:
     """Normalize timestamp to ISO format for deterministic hashing."""
     return ts.replace(microsecond=0).isoformat()


def compute_transaction_hash(
     payment_id: int,
     invoice_id: int,
     amount: Decimal,
     reference: str,
     timestamp: datetime
) -> str:
     """
     Compute SHA-256 hash for a payment record.

     Input string: payment_id|invoice_id|amount|reference|timestamp (canonical format).
     Returns 64-char hex string.
     """
     payload = "|".join([
          str(payment_id),
          str(invoice_id),
          _normalize_amount(amount),
          reference,
          _normalize_timestamp(timestamp)
     ])
     return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def get_previous_hash(db: Session, for_update: bool = False) -> str:
     """Get the transaction_hash of the most recent ledger entry, or GENESIS_HASH if empty."""
     query = db.query(PaymentLedger).order_by(desc(PaymentLedger.id))
     if for_update:
          query = query.with_for_update()
     last = query.limit(1).first()
     if last is None:
          return GENESIS_HASH
     return last.transaction_hash


def append_payment_record(
     db: Session,
     payment: Payment,
     timestamp: Optional[datetime] = None
) -> PaymentLedger:
     """
     Append an immutable payment record to the ledger (when a payment is completed).

     - Computes transaction_hash from the payment's identifying fields
     - Sets previous_hash to the last record's transaction_hash (or "0"),
       locking that record where the database supports it
     - Retries on the new head when a concurrent append took the old one
     - Does NOT update or delete existing records (immutability)

     Raises:
          ValueError: If the payment already has a ledger entry (double record).
          IntegrityError: The chain head kept moving for CHAIN_APPEND_ATTEMPTS tries.
     """
     if timestamp is None:
          timestamp = datetime.utcnow().replace(microsecond=0)

     existing = db.query(PaymentLedger).filter(PaymentLedger.payment_id == payment.id).first()
     if existing:
          raise ValueError(f"Ledger entry already exists for payment_id={payment.id}")

     transaction_hash = compute_transaction_hash(
          payment.id,
          payment.invoice_id,
          payment.amount,
          payment.transaction_reference,
          timestamp,
     )
     for attempt in range(1, CHAIN_APPEND_ATTEMPTS + 1):
          previous_hash = get_previous_hash(db, for_update=True)
          entry = PaymentLedger(
               payment_id=payment.id,
               transaction_hash=transaction_hash,
               previous_hash=previous_hash,
               timestamp=timestamp
          )
          try:
               with db.begin_nested():
                    db.add(entry)
                    db.flush()
               return entry
          except IntegrityError:
               if attempt == CHAIN_APPEND_ATTEMPTS or get_previous_hash(db) == previous_hash:
                    raise
               logger.warning("Ledger head moved while appending payment %s; retrying", payment.id)


def _recompute(entry: PaymentLedger, payment: Payment) -> str:
     return compute_transaction_hash(
          payment.id,
          payment.invoice_id,
          payment.amount,
          payment.transaction_reference,
          entry.timestamp,
     )


def verify_ledger_entry(
     db: Session,
     ledger_id: Optional[int] = None,
     payment_id: Optional[int] = None
) -> Tuple[bool, str]:
     """
     Verify a ledger entry by recomputing the hash and comparing.

     Pass either ledger_id or payment_id to identify the entry.

     Returns:
          (success: bool, message: str)
          - (True, "Verification passed") if hash matches
          - (False, reason) if hash mismatch, missing record, or chain broken
     """
     if ledger_id is not None:
          entry = db.query(PaymentLedger).filter(PaymentLedger.id == ledger_id).first()
     elif payment_id is not None:
          entry = db.query(PaymentLedger).filter(PaymentLedger.payment_id == payment_id).first()
     else:
          return False, "Must provide ledger_id or payment_id"

     if entry is None:
          return False, "Ledger entry not found"

     payment = db.query(Payment).filter(Payment.id == entry.payment_id).first()
     if payment is None:
          return False, "Payment not found"

     computed = _recompute(entry, payment)
     if computed != entry.transaction_hash:
          return False, f"Hash mismatch: stored={entry.transaction_hash[:16]}..., computed={computed[:16]}..."

     # Chain link: previous_hash should match previous record's transaction_hash
     if entry.previous_hash != GENESIS_HASH:
          prev_entry = (
               db.query(PaymentLedger)
               .filter(PaymentLedger.id < entry.id)
               .order_by(desc(PaymentLedger.id))
               .limit(1)
               .first()
          )
          if prev_entry is None:
               return False, "Previous chain link not found"
          if prev_entry.transaction_hash != entry.previous_hash:
               return False, "Chain broken: previous_hash does not match previous record"

     return True, "Verification passed"


def verify_full_chain(db: Session) -> Tuple[bool, str, int]:
     """
     Verify the entire ledger chain from first to last entry.

     Returns:
          (all_valid: bool, message: str, entries_checked: int)
     """
     entries = db.query(PaymentLedger).order_by(PaymentLedger.id).all()
     if not entries:
          return True, "Chain is empty (no entries)", 0

     prev_hash = GENESIS_HASH
     checked = 0

     for entry in entries:
          if entry.previous_hash != prev_hash:
               return False, f"Chain broken at id={entry.id}: previous_hash mismatch", checked
          payment = db.query(Payment).filter(Payment.id == entry.payment_id).first()
          if not payment:
               return False, f"Payment not found for ledger id={entry.id}", checked
          if _recompute(entry, payment) != entry.transaction_hash:
               return False, f"Hash mismatch at ledger id={entry.id}", checked
          prev_hash = entry.transaction_hash
          checked += 1

     return True, "Full chain verification passed", checked
