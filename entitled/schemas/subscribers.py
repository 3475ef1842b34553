"""
Subscriber Schemas
==================

Pydantic schemas for subscriber endpoints.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from entitled.models.subscriber import GrantSource


class SubscriberResponse(BaseModel):
    """Response schema for subscriber info."""

    success: bool = True
    data: dict[str, Any]


class AttributesRequest(BaseModel):
    """Attributes to merge; a null value deletes the key."""

    attributes: dict[str, Any]


class AliasRequest(BaseModel):
    """Another app user id known for the same subscriber."""

    alias: str = Field(min_length=1, max_length=255)


class GrantEntitlementRequest(BaseModel):
    """Request schema for a manual or promotional grant."""

    model_config = ConfigDict(populate_by_name=True)

    expires_date: Optional[datetime] = Field(default=None, alias="expiresDate")
    granted_by: Optional[str] = Field(default=None, alias="grantedBy", max_length=255)
    reason: Optional[str] = Field(default=None, max_length=1000)
    source: GrantSource = GrantSource.MANUAL

    def grant_source(self) -> GrantSource:
        """Store-sourced grants cannot be created by hand."""
        return GrantSource.MANUAL if self.source == GrantSource.STORE else self.source


class EntitlementChangeResponse(BaseModel):
    """Response schema for manual grant / revoke."""

    success: bool = True
    data: dict[str, Any]
    message: Optional[str] = None
