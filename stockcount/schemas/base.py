"""
Base Schema Classes for Pydantic Models

RULE: All response schemas that read from ORM models inherit from
BaseResponseSchema; request bodies inherit from BaseCreateSchema.
"""

from datetime import datetime
from uuid import UUID
from pydantic import BaseModel, ConfigDict


class BaseResponseSchema(BaseModel):
    """
    Base class for all response schemas that read from ORM models.

    Features:
    - Enables from_attributes for ORM compatibility
    - Serializes UUIDs as strings and datetimes as ISO 8601
    """
    model_config = ConfigDict(
        from_attributes=True,
        json_encoders={
            UUID: str,
            datetime: lambda v: v.isoformat() if v else None,
        },
        populate_by_name=True,
    )


class BaseCreateSchema(BaseModel):
    """
    Base class for create/input schemas.

    Unknown fields are ignored so older clients keep working.
    """
    model_config = ConfigDict(
        extra='ignore',
    )
