from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.dependencies import get_current_active_user
from app.modules.dashboard import schemas
from app.modules.dashboard.services import DashboardService
from app.modules.users.models import User

router = APIRouter(prefix="/api/v1/dashboard", tags=["dashboard"])


@router.get("", response_model=schemas.DashboardResponse)
async def get_dashboard(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    """
    Dashboard statistics.

    - Account counts and balances per currency
    - Entry counts and totals by status
    - Payment totals and the most recent completed payments
    """
    return await DashboardService.get_dashboard(db, current_user)
