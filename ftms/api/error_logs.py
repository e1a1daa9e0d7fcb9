"""Error Logs API: captured request failures and hook warnings."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select, func, desc
from sqlalchemy.ext.asyncio import AsyncSession

from ftms.database import get_db
from ftms.models.error_log import ErrorLog, ErrorSeverity
from ftms.schemas import ErrorLogResponse

logger = logging.getLogger(__name__)
router = APIRouter()


class ErrorLogResolveRequest(BaseModel):
    resolution_notes: Optional[str] = None


@router.get("")
async def list_error_logs(
    severity: Optional[ErrorSeverity] = Query(None),
    resolved: Optional[bool] = Query(None),
    revenue_code: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """List error logs, newest first."""
    q = select(ErrorLog).order_by(desc(ErrorLog.created_at))

    if severity:
        q = q.where(ErrorLog.severity == severity)
    if resolved is not None:
        q = q.where(ErrorLog.resolved == resolved)
    if revenue_code:
        q = q.where(ErrorLog.revenue_code == revenue_code)
    if search:
        pattern = f"%{search}%"
        q = q.where(
            ErrorLog.message.ilike(pattern)
            | ErrorLog.error_type.ilike(pattern)
            | ErrorLog.request_path.ilike(pattern)
        )

    total = (await db.execute(select(func.count()).select_from(q.subquery()))).scalar() or 0
    result = await db.execute(q.offset(offset).limit(limit))

    return {
        "total": total,
        "offset": offset,
        "limit": limit,
        "items": [ErrorLogResponse.model_validate(log) for log in result.scalars().all()],
    }


@router.patch("/{log_id}/resolve", response_model=ErrorLogResponse)
async def resolve_error_log(
    log_id: int,
    data: ErrorLogResolveRequest,
    db: AsyncSession = Depends(get_db),
):
    entry = await db.get(ErrorLog, log_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="Error log not found")
    entry.resolved = True
    entry.resolution_notes = data.resolution_notes
    await db.commit()
    logger.info("Error log %d resolved", log_id)
    return ErrorLogResponse.model_validate(entry)
