"""
Feedback API routes
===================

Batch feedback insert and per-user feedback lookup.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, Query

from ...storage import Database, Feedback
from ..dependencies import get_database
from ..schemas import RowAffected

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["feedback"])


@router.post(
    "/feedback",
    response_model=RowAffected,
    summary="Insert feedback",
    description="""
    Insert a feedback batch. Missing users and items are created.
    Repeated keys count once in row_affected.

    With overwrite=false an existing key fails the whole batch with 409.
    """
)
def insert_feedback(
    feedback: List[Feedback],
    overwrite: bool = Query(True, description="Replace existing feedback"),
    database: Database = Depends(get_database)
):
    written = database.batch_insert_feedback(feedback, overwrite=overwrite)
    logger.info(f"Inserted {written} of {len(feedback)} feedback (overwrite={overwrite})")
    return RowAffected(row_affected=written)


@router.get(
    "/user/{user_id}/feedback/{feedback_type}",
    response_model=List[Feedback],
    summary="Get user feedback by type"
)
def get_user_feedback(
    user_id: str,
    feedback_type: str,
    database: Database = Depends(get_database)
):
    return database.get_user_feedback(user_id, feedback_types=[feedback_type])
