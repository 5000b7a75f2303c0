"""
Shared base classes for the logistics API schemas.

Response schemas that are built from ORM rows (orders, commission lines,
confirmations) inherit from BaseResponseSchema.
"""

from pydantic import BaseModel, ConfigDict


class BaseResponseSchema(BaseModel):
    """
    Reads attributes straight off ORM objects.

    Usage:
        class CommissionResponse(BaseResponseSchema):
            id: int
            amount: Decimal
    """
    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
    )


class BaseCreateSchema(BaseModel):
    """Request bodies. Unknown fields from older clients are dropped."""
    model_config = ConfigDict(extra='ignore')
