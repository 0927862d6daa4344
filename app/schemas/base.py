"""
Base Schema Classes for Pydantic Models

RULE: All response schemas that use `from_attributes=True` MUST inherit from BaseResponseSchema.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID
from pydantic import BaseModel, ConfigDict


class BaseResponseSchema(BaseModel):
    """
    Base class for all response schemas that read from ORM models.

    Features:
    - Enables from_attributes for ORM compatibility
    - UUIDs and money serialize as strings in JSON
    - Consistent datetime serialization
    """
    model_config = ConfigDict(
        from_attributes=True,
        json_encoders={
            UUID: str,
            Decimal: str,
            datetime: lambda v: v.isoformat() if v else None,
        },
        populate_by_name=True,
    )


class BaseCreateSchema(BaseModel):
    """
    Base class for create/input schemas.

    Unknown fields are ignored (forward compatibility with collaborators).
    """
    model_config = ConfigDict(
        extra='ignore',
    )


class BaseUpdateSchema(BaseModel):
    """
    Base class for update/patch schemas.

    All fields are optional by default for partial updates.
    """
    model_config = ConfigDict(
        extra='ignore',
    )
