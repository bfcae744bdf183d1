"""
Base Pydantic schemas with common patterns.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    class Config:
        from_attributes = True
        validate_assignment = True
        use_enum_values = True


class TimestampedSchema(BaseSchema):
    """Schema with timestamp fields."""

    id: int
    created_at: datetime
    updated_at: datetime


class GatewaySchema(BaseModel):
    """
    Daraja шлёт PascalCase-ключи и иногда числа вместо строк (шорткод, MSISDN).
    Поля объявляем в snake_case с alias, лишние ключи игнорируем.
    """

    class Config:
        populate_by_name = True
        coerce_numbers_to_str = True
        extra = "ignore"


class ErrorResponse(BaseModel):
    """Error response schema."""

    error: str = Field(..., description="Error message")
    detail: Optional[str] = Field(None, description="Detailed error information")
    code: Optional[str] = Field(None, description="Error code")
