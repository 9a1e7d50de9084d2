from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, Optional

import sqlalchemy
from sqlalchemy import Column, String
from sqlalchemy.orm import declarative_base
from uuid_extension import uuid7

Base = declarative_base()


def new_id() -> str:
    """Time-ordered string id used as primary key for every record."""
    return str(uuid7())


class BaseModel(Base):
    __abstract__ = True
    id = Column(String, primary_key=True, default=new_id, index=True)
    created_at = Column(
        sqlalchemy.DateTime(timezone=True), server_default=sqlalchemy.func.now(), nullable=False
    )
    updated_at = Column(
        sqlalchemy.DateTime(timezone=True),
        server_default=sqlalchemy.func.now(),
        onupdate=sqlalchemy.func.now(),
        nullable=False,
    )

    def to_dict(self, exclude: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        """Column values as plain JSON-friendly python values (enums by value)."""
        skip = set(exclude or ())
        data = {}
        for column in self.__table__.columns:
            if column.name in skip:
                continue
            value = getattr(self, column.name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, datetime):
                value = value.isoformat()
            data[column.name] = value
        return data

# Note: Models will import this Base. Do not import models here to avoid circular imports.
# init_db() imports app.features.scan.models before create_all.
