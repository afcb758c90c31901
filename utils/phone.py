# utils/phone.py
"""
Safaricom subscriber number normalization.

Numbers are sent to Daraja as 12 digits: country code 254 followed by a
9-digit subscriber number starting with 7 or 1.
"""
import re

from exceptions import InvalidPhoneNumber

COUNTRY_CODE = "254"
PHONE_PATTERN = re.compile(r"^254[17]\d{8}$")


def normalize_phone_number(phone: str) -> str:
     """
     Normalize a phone number to 254XXXXXXXXX form.

     - strips every non-digit (spaces, dashes, a leading '+')
     - leading '0' is replaced by 254
     - a bare subscriber number starting with 7 or 1 gets 254 prepended

     The result is not validated; see ``validate_phone_number``.
     """
     cleaned = re.sub(r"\D", "", phone or "")
     if cleaned.startswith("0"):
          return COUNTRY_CODE + cleaned[1:]
     if cleaned.startswith("7") or cleaned.startswith("1"):
          return COUNTRY_CODE + cleaned
     return cleaned


def is_valid_phone_number(phone: str) -> bool:
     return bool(PHONE_PATTERN.match(normalize_phone_number(phone)))


def validate_phone_number(phone: str) -> str:
     """Return the normalized number or raise InvalidPhoneNumber."""
     normalized = normalize_phone_number(phone)
     if not PHONE_PATTERN.match(normalized):
          raise InvalidPhoneNumber(phone)
     return normalized
