"""Health check API routes.

Reports database connectivity and which reference months are loaded, so a
deployment can tell an empty catalogue apart from a broken one.
"""

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from sinapicalc.db.connection import get_db
from sinapicalc.resolution.queries import list_reference_months

router = APIRouter(prefix="/health", tags=["Health"])


@router.get("", status_code=status.HTTP_200_OK)
async def health_check(db: AsyncSession = Depends(get_db)):
    """Database status plus the newest reference month with prices."""
    try:
        months = await list_reference_months(db)
    except SQLAlchemyError as e:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "error", "database": "disconnected", "detail": str(e)},
        )

    return {
        "status": "ok" if months else "empty",
        "database": "connected",
        "latest_reference_month": months[0] if months else None,
        "reference_months": len(months),
    }
