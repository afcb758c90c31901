# config.py
"""
Application settings loaded from the environment (.env supported).

Settings are read once per application instance by ``create_app`` and kept on
``app.state.settings``; nothing here is mutated at runtime.
"""
import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional
from urllib.parse import quote_plus

from dotenv import load_dotenv

load_dotenv()


def _bool(value: Optional[str], default: bool = False) -> bool:
     if value is None:
          return default
     return value.strip().lower() in ("1", "true", "yes", "on")


def _build_database_url() -> str:
     """
     Resolve the database URL.

     DATABASE_URL wins when set. Otherwise the Azure SQL variables
     (DB_SERVER, DB_PORT, DB_USER, DB_PASS, DB_NAME) build a pymssql URL,
     and a local SQLite file is the last resort for development.
     """
     url = os.getenv("DATABASE_URL")
     if url:
          return url

     server = os.getenv("DB_SERVER")
     if server:
          user = quote_plus(os.getenv("DB_USER") or "")
          password = quote_plus(os.getenv("DB_PASS") or "")
          port = os.getenv("DB_PORT", "1433")
          name = os.getenv("DB_NAME")
          return f"mssql+pymssql://{user}:{password}@{server}:{port}/{name}"

     return "sqlite:///./hospital_billing.db"


@dataclass(frozen=True)
class Settings:
     database_url: str = "sqlite:///./hospital_billing.db"
     sql_echo: bool = False
     jwt_secret: str = "change-me"
     jwt_algorithm: str = "HS256"
     cors_origins: List[str] = field(default_factory=list)
     log_level: str = "INFO"

     # M-PESA (Daraja)
     mpesa_env: str = "sandbox"
     mpesa_consumer_key: str = ""
     mpesa_consumer_secret: str = ""
     mpesa_passkey: str = ""
     mpesa_shortcode: str = ""
     mpesa_callback_url: str = ""
     mpesa_timeout_seconds: int = 30
     stk_wait_seconds: float = 30
     manual_wait_seconds: float = 120

     # Billing
     vat_rate: Decimal = Decimal("0.16")
     business_name: str = "Kenya Hospital"

     @property
     def mpesa_base_url(self) -> str:
          if self.mpesa_env == "production":
               return "https://api.safaricom.co.ke"
          return "https://sandbox.safaricom.co.ke"

     @classmethod
     def from_env(cls) -> "Settings":
          origins = os.getenv("CORS_ORIGINS", "")
          return cls(
               database_url=_build_database_url(),
               sql_echo=_bool(os.getenv("SQL_ECHO")),
               jwt_secret=os.getenv("JWT_SECRET", "change-me"),
               cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
               log_level=os.getenv("LOG_LEVEL", "INFO"),
               mpesa_env=os.getenv("MPESA_ENV", "sandbox"),
               mpesa_consumer_key=os.getenv("MPESA_CONSUMER_KEY", ""),
               mpesa_consumer_secret=os.getenv("MPESA_CONSUMER_SECRET", ""),
               mpesa_passkey=os.getenv("MPESA_PASSKEY", ""),
               mpesa_shortcode=os.getenv("MPESA_SHORTCODE", ""),
               mpesa_callback_url=os.getenv("MPESA_CALLBACK_URL", "").rstrip("/"),
               mpesa_timeout_seconds=int(os.getenv("MPESA_TIMEOUT_SECONDS", "30")),
               stk_wait_seconds=float(os.getenv("MPESA_STK_WAIT_SECONDS", "30")),
               manual_wait_seconds=float(os.getenv("MPESA_MANUAL_WAIT_SECONDS", "120")),
               vat_rate=Decimal(os.getenv("VAT_RATE", "0.16")),
               business_name=os.getenv("BUSINESS_NAME", "Kenya Hospital"),
          )


def configure_logging(level: str = "INFO") -> None:
     """Configure root logging once for the process."""
     logging.basicConfig(
          level=getattr(logging, level.upper(), logging.INFO),
          format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
     )
