# database.py
"""
SQLAlchemy database connection and session management.

This module provides:
- Database engine configuration (Azure SQL via pymssql in production,
  any SQLAlchemy URL through DATABASE_URL)
- Session factory for dependency injection (one per application, kept on
  ``app.state.session_factory`` by ``main.create_app``)
- Connection utilities

Usage:
     from database import get_session

     # In FastAPI routes:
     @router.get("/invoices")
     def list_invoices(db: Session = Depends(get_session)):
          return db.query(Invoice).all()
"""
import logging
from contextlib import contextmanager
from typing import Generator

from fastapi import Request
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from config import Settings

logger = logging.getLogger(__name__)


def build_engine(settings: Settings) -> Engine:
     """
     Create the SQLAlchemy engine for the configured database.

     SQLite gets its default pool and ``check_same_thread=False`` (FastAPI runs
     sync routes in a threadpool); server databases get a QueuePool.
     """
     url = settings.database_url
     if url.startswith("sqlite"):
          return create_engine(
               url,
               connect_args={"check_same_thread": False},
               echo=settings.sql_echo,
          )
     return create_engine(
          url,
          poolclass=QueuePool,
          pool_size=5,
          max_overflow=10,
          pool_timeout=30,
          pool_recycle=1800,  # Recycle connections after 30 minutes
          echo=settings.sql_echo,
     )


def build_session_factory(engine: Engine) -> sessionmaker:
     return sessionmaker(
          bind=engine,
          autocommit=False,
          autoflush=False,
          expire_on_commit=False,
     )


def get_session(request: Request) -> Generator[Session, None, None]:
     """
     FastAPI dependency that provides a database session from the
     application's session factory.

     Yields:
          Session: SQLAlchemy database session
     """
     session = request.app.state.session_factory()
     try:
          yield session
          session.commit()
     except Exception:
          session.rollback()
          raise
     finally:
          session.close()


@contextmanager
def get_session_context(factory: sessionmaker) -> Generator[Session, None, None]:
     """
     Context manager for database sessions (for use outside FastAPI routes).

     Usage:
          with get_session_context(app.state.session_factory) as db:
               invoices = db.query(Invoice).all()
     """
     session = factory()
     try:
          yield session
          session.commit()
     except Exception:
          session.rollback()
          raise
     finally:
          session.close()


def check_connection(factory: sessionmaker) -> bool:
     """
     Test database connectivity through ``factory``.

     Returns:
          bool: True if connection successful, False otherwise
     """
     try:
          with factory() as session:
               session.execute(text("SELECT 1"))
          return True
     except SQLAlchemyError as e:
          logger.error("Database connection failed: %s", e)
          return False
