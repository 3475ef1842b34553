"""
Receipt Schemas
===============

Pydantic schemas for receipt validation.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from entitled.models.app import Platform


class ReceiptRequest(BaseModel):
    """
    Request schema for receipt validation.

    iOS: ``transactionId`` or a StoreKit 2 signed transaction in
    ``receiptData``. Android: the purchase token in ``receiptData`` plus
    ``productId``.
    """

    model_config = ConfigDict(populate_by_name=True)

    app_user_id: str = Field(alias="appUserId", min_length=1, max_length=255)
    platform: Platform
    receipt_data: Optional[str] = Field(default=None, alias="receiptData")
    transaction_id: Optional[str] = Field(default=None, alias="transactionId", max_length=512)
    product_id: Optional[str] = Field(default=None, alias="productId", max_length=255)

    @model_validator(mode="after")
    def check_reference(self) -> "ReceiptRequest":
        if not self.receipt_data and not self.transaction_id:
            raise ValueError("Either receiptData or transactionId is required")
        if self.platform == Platform.ANDROID and not self.product_id:
            raise ValueError("productId is required for Google Play purchases")
        return self


class ReceiptResponse(BaseModel):
    """Response schema for receipt validation (subscriber snapshot)."""

    success: bool = True
    data: dict[str, Any]
