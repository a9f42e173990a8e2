"""
Health API Routes
"""
from fastapi import APIRouter
from fastapi import status
from fastapi.responses import JSONResponse

from app.config import settings
from app.database import database_health

router = APIRouter()


@router.get("/health")
async def health_check() -> JSONResponse:
    """Application and database health"""
    db = database_health()
    ok = bool(db.get("ok"))
    return JSONResponse(
        status_code=status.HTTP_200_OK if ok else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "healthy" if ok else "degraded",
            "database": db,
            "gateway_configured": bool(settings.toss_secret_key.get_secret_value()),
        },
    )
