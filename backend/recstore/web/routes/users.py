"""
User API routes
===============

CRUD and paging over users.
"""

import logging

from fastapi import APIRouter, Depends, Query

from ...storage import Database, User, UserPatch
from ..dependencies import get_database
from ..schemas import RowAffected, UserPage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["users"])


@router.post(
    "/user",
    response_model=RowAffected,
    summary="Insert a user",
    description="Insert a user, replacing an existing one with the same ID"
)
def insert_user(user: User, database: Database = Depends(get_database)):
    database.batch_insert_users([user])
    return RowAffected(row_affected=1)


@router.get("/user/{user_id}", response_model=User, summary="Get user by ID")
def get_user(user_id: str, database: Database = Depends(get_database)):
    return database.get_user(user_id)


@router.delete("/user/{user_id}", response_model=RowAffected, summary="Delete user")
def delete_user(user_id: str, database: Database = Depends(get_database)):
    """
    Delete a user. The user's feedback is kept.
    """
    database.delete_user(user_id)
    return RowAffected(row_affected=1)


@router.patch("/user/{user_id}", response_model=RowAffected, summary="Modify user")
def modify_user(user_id: str, patch: UserPatch, database: Database = Depends(get_database)):
    database.modify_user(user_id, patch)
    return RowAffected(row_affected=1)


@router.get(
    "/users",
    response_model=UserPage,
    summary="List users",
    description="Page through users in ID order"
)
def get_users(
    cursor: str = Query("", description="Cursor from the previous page"),
    n: int = Query(100, description="Page size"),
    database: Database = Depends(get_database)
):
    cursor, users = database.get_users(cursor, n)
    return UserPage(cursor=cursor, users=users)
