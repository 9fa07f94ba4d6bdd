"""API dependencies"""

from typing import Generator, List

from fastapi import Depends
from sqlalchemy.orm import Session, sessionmaker

from intelpipe.core.config import settings
from intelpipe.core.db import SessionLocal
from intelpipe.core.loader import load_alert_conditions, load_source_configs
from intelpipe.schemas.config import AlertCondition, SourceConfig
from intelpipe.services.storage import IntelStore


def get_session_factory() -> sessionmaker:
    return SessionLocal


def get_db(factory: sessionmaker = Depends(get_session_factory)) -> Generator[Session, None, None]:
    """Database session per request"""
    db = factory()
    try:
        yield db
    finally:
        db.close()


def get_store(factory: sessionmaker = Depends(get_session_factory)) -> IntelStore:
    return IntelStore(factory)


def get_source_configs() -> List[SourceConfig]:
    return load_source_configs(settings.SOURCES_FILE)


def get_alert_conditions() -> List[AlertCondition]:
    return load_alert_conditions(settings.ALERTS_FILE)
