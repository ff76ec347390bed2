"""
Item API routes
===============

CRUD and paging over items.
"""

import logging

from fastapi import APIRouter, Depends, Query

from ...storage import Database, Item, ItemPatch
from ..dependencies import get_database
from ..schemas import ItemPage, RowAffected

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["items"])


@router.post(
    "/item",
    response_model=RowAffected,
    summary="Insert an item",
    description="Insert an item, replacing an existing one with the same ID"
)
def insert_item(item: Item, database: Database = Depends(get_database)):
    database.batch_insert_items([item])
    return RowAffected(row_affected=1)


@router.get("/item/{item_id}", response_model=Item, summary="Get item by ID")
def get_item(item_id: str, database: Database = Depends(get_database)):
    return database.get_item(item_id)


@router.delete("/item/{item_id}", response_model=RowAffected, summary="Delete item")
def delete_item(item_id: str, database: Database = Depends(get_database)):
    database.delete_item(item_id)
    return RowAffected(row_affected=1)


@router.patch("/item/{item_id}", response_model=RowAffected, summary="Modify item")
def modify_item(item_id: str, patch: ItemPatch, database: Database = Depends(get_database)):
    database.modify_item(item_id, patch)
    return RowAffected(row_affected=1)


@router.get(
    "/items",
    response_model=ItemPage,
    summary="List items",
    description="Page through visible items in ID order"
)
def get_items(
    cursor: str = Query("", description="Cursor from the previous page"),
    n: int = Query(100, description="Page size"),
    include_hidden: bool = Query(False, description="Include hidden items"),
    database: Database = Depends(get_database)
):
    cursor, items = database.get_items(cursor, n, include_hidden=include_hidden)
    return ItemPage(cursor=cursor, items=items)
