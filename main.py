# main.py
"""
Hospital billing API: invoices, counter payments, M-PESA collection and
reconciliation, and payment sessions.

``create_app`` builds one independent application (settings, database
session factory, gateway, notifier, reconciliation service and session
registry all hang off ``app.state``); ``app`` is the instance uvicorn serves.
"""
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import Settings, configure_logging
from database import build_engine, build_session_factory, check_connection, get_session_context
from exceptions import PaymentError
from routers.audit import router as audit_router
from routers.invoices import router as invoices_router
from routers.mpesa import router as mpesa_router
from routers.payments import router as payments_router
from routers.sessions import router as sessions_router
from services.mpesa_gateway import MpesaGateway
from services.notifier import CompletionNotifier
from services.payment_session import SessionRegistry
from services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)


def _push_initiator(gateway: MpesaGateway, reconciliation: ReconciliationService, session_factory: sessionmaker):
     """Send an STK push and remember it so its callback finds the invoice."""
     def push(phone_number, amount, account_reference):
          handle = gateway.initiate_push(
               phone_number, amount, account_reference,
               description=f"Payment for Invoice {account_reference}",
          )
          with get_session_context(session_factory) as db:
               reconciliation.register_push(db, handle)
          return handle
     return push


def create_app(
     settings: Optional[Settings] = None,
     session_factory: Optional[sessionmaker] = None,
     gateway: Optional[MpesaGateway] = None,
) -> FastAPI:
     settings = settings or Settings.from_env()
     configure_logging(settings.log_level)

     if session_factory is None:
          session_factory = build_session_factory(build_engine(settings))
     gateway = gateway or MpesaGateway(settings)
     notifier = CompletionNotifier()
     reconciliation = ReconciliationService(notifier)
     sessions = SessionRegistry()

     @asynccontextmanager
     async def lifespan(app: FastAPI):
          yield
          await sessions.shutdown()

     app = FastAPI(title="Hospital Billing API", lifespan=lifespan)

     app.state.settings = settings
     app.state.session_factory = session_factory
     app.state.gateway = gateway
     app.state.notifier = notifier
     app.state.reconciliation = reconciliation
     app.state.sessions = sessions
     app.state.push_initiator = _push_initiator(gateway, reconciliation, session_factory)

     # CORS
     app.add_middleware(
          CORSMiddleware,
          allow_origins=settings.cors_origins,
          allow_credentials=True,
          allow_methods=["*"],
          allow_headers=["*"],
     )

     @app.exception_handler(PaymentError)
     async def payment_error_handler(request: Request, exc: PaymentError):
          return JSONResponse(
               status_code=exc.status_code,
               content={"error": type(exc).__name__, "detail": exc.message},
          )

     @app.exception_handler(StarletteHTTPException)
     async def http_error_handler(request: Request, exc: StarletteHTTPException):
          if exc.status_code == 404 and exc.detail == "Not Found":
               return JSONResponse(status_code=404, content={"error": "Route not found"})
          return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=exc.headers)

     # 500 Fallback Middleware
     @app.middleware("http")
     async def error_middleware(request: Request, call_next):
          try:
               return await call_next(request)
          except Exception:
               logger.exception("Unhandled error on %s %s", request.method, request.url.path)
               return JSONResponse(status_code=500, content={"error": "Internal server error"})

     app.include_router(invoices_router)
     app.include_router(payments_router)
     app.include_router(mpesa_router)
     app.include_router(sessions_router)
     app.include_router(audit_router)

     @app.get("/health", tags=["health"])
     def health():
          if not check_connection(session_factory):
               return JSONResponse(status_code=503, content={"status": "unavailable", "database": "unreachable"})
          return {"status": "ok", "database": "ok"}

     return app


app = create_app()

if __name__ == "__main__":
     port = int(os.getenv("PORT", 10000))
     uvicorn.run("main:app", host="0.0.0.0", port=port, reload=True)
