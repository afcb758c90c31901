# dependencies.py
"""
Shared FastAPI dependencies: JWT auth and access to the per-app services
created by ``main.create_app``.
"""
from typing import Callable

from fastapi import Depends, HTTPException, Request
from jose import JWTError, jwt

from config import Settings
from services.mpesa_gateway import MpesaGateway
from services.payment_session import SessionRegistry
from services.reconciliation_service import ReconciliationService


def get_settings(request: Request) -> Settings:
     return request.app.state.settings


# Token Auth Dependency
def verify_token(request: Request) -> dict:
     auth = request.headers.get("Authorization")
     if not auth or not auth.startswith("Bearer "):
          raise HTTPException(status_code=401, detail="Missing token")
     token = auth.split(" ")[1]
     settings = get_settings(request)
     try:
          payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
          return payload
     except JWTError:
          raise HTTPException(status_code=403, detail="Invalid token")


def require_role(*roles: str) -> Callable[..., dict]:
     """Dependency factory: the token must carry one of ``roles``."""
     def checker(token: dict = Depends(verify_token)) -> dict:
          if token.get("role") not in roles:
               raise HTTPException(
                    status_code=403,
                    detail=f"Requires role: {', '.join(roles)}"
               )
          return token
     return checker


def current_user_id(token: dict) -> str:
     """Staff id recorded on payments and allocations."""
     user_id = token.get("id") or token.get("sub")
     if user_id is None:
          raise HTTPException(status_code=403, detail="Token has no user id")
     return str(user_id)


def get_gateway(request: Request) -> MpesaGateway:
     return request.app.state.gateway


def get_reconciliation(request: Request) -> ReconciliationService:
     return request.app.state.reconciliation


def get_registry(request: Request) -> SessionRegistry:
     return request.app.state.sessions
