from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import  AsyncSession
from stockledger.db.dependencies import get_session
from stockledger.common.logging_setup import get_logger

logger = get_logger("stockledger.common")

home_router = APIRouter()


@home_router.get("/health")
async def health_check(session:AsyncSession=Depends(get_session)):
    try:
        await session.execute(select(1))
    except (SQLAlchemyError, OSError) as e:
        logger.error("health.db_unreachable", extra={"error": str(e)})
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database connection error")
    
    return {"status": "healthy"}
