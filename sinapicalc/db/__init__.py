"""Database layer for sinapicalc with async SQLAlchemy."""

from sinapicalc.db.connection import get_session, init_db
from sinapicalc.db.models import (
    Base,
    CompositionChildModel,
    CompositionModel,
    CompositionResourceModel,
    ImportLogModel,
    PriceModel,
    ResourceModel,
)

__all__ = [
    "Base",
    "ResourceModel",
    "PriceModel",
    "CompositionModel",
    "CompositionResourceModel",
    "CompositionChildModel",
    "ImportLogModel",
    "get_session",
    "init_db",
]
