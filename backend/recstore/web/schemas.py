"""
Response schemas for the storage API.
"""
from typing import List

from pydantic import BaseModel, Field

from ..storage import Item, User


class RowAffected(BaseModel):
    """Response schema for writes."""
    row_affected: int = Field(..., description="Number of rows written or deleted")


class UserPage(BaseModel):
    """
    Response schema for a page of users.
    """
    cursor: str = Field(..., description="Cursor of the next page, empty on the last page")
    users: List[User] = Field(..., description="Users on this page")


class ItemPage(BaseModel):
    """
    Response schema for a page of items.
    """
    cursor: str = Field(..., description="Cursor of the next page, empty on the last page")
    items: List[Item] = Field(..., description="Items on this page")
