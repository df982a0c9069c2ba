from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict

from stockledger.app.db.models.core_types import ErrorCode


class OrderRead(BaseModel):
    id: int
    readable_id: str
    notes: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OrderIdPreview(BaseModel):
    preview_id: str
    date_prefix: str
    sequence: int
    note: str = "This is a preview. Actual ID assigned on order creation."


class OrderUpdateResult(BaseModel):
    success: bool
    order: OrderRead | None = None
    error_code: ErrorCode | None = None
    message: str | None = None
