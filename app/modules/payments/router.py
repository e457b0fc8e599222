from fastapi import APIRouter, Depends, Header, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional

from app.core.database import get_db
from app.core.dependencies import get_current_active_user, get_ledger
from app.modules.ledger.engine import LedgerEngine
from app.modules.ledger.models import EntryStatus
from app.modules.ledger.schemas import EntryStatusEnum
from app.modules.payments import schemas
from app.modules.payments.services import PaymentService
from app.modules.users.models import User

router = APIRouter(prefix="/api/v1/payments", tags=["payments"])


@router.post("", response_model=schemas.PaymentResultResponse, status_code=status.HTTP_201_CREATED)
async def create_payment(
    payment_data: schemas.PaymentCreate,
    response: Response,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key", max_length=255),
    db: AsyncSession = Depends(get_db),
    ledger: LedgerEngine = Depends(get_ledger),
    current_user: User = Depends(get_current_active_user)
):
    """
    Make or schedule a payment.

    - A future `scheduled_for` stores the payment as `scheduled`; the balance
      is untouched until it is settled
    - Otherwise the account is debited now and the payment is `completed`
    """
    result = await PaymentService.schedule_payment(db, ledger, current_user, payment_data, idempotency_key)
    if result.replayed:
        response.status_code = status.HTTP_200_OK
        response.headers["Idempotent-Replay"] = "true"
    return {"entry": result.entry, "balance": result.balance, "replayed": result.replayed}


@router.get("", response_model=schemas.PaymentListResponse)
async def list_payments(
    status: Optional[EntryStatusEnum] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    """Get the 50 most recent payments of the current user"""
    payments = await PaymentService.list_payments(
        db,
        current_user.id,
        EntryStatus(status.value) if status else None
    )
    return {"results": len(payments), "payments": payments}


@router.get("/stats", response_model=schemas.PaymentStatsResponse)
async def get_payment_stats(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    """Total paid, number of completed payments and upcoming scheduled payments"""
    return await PaymentService.payment_stats(db, current_user.id)


@router.get("/{payment_id}", response_model=schemas.PaymentResponse)
async def get_payment(
    payment_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    """Get a single payment"""
    return await PaymentService.get_payment(db, payment_id, current_user)


@router.post("/{payment_id}/settle", response_model=schemas.PaymentResultResponse)
async def settle_payment(
    payment_id: int,
    db: AsyncSession = Depends(get_db),
    ledger: LedgerEngine = Depends(get_ledger),
    current_user: User = Depends(get_current_active_user)
):
    """Apply a scheduled payment now; fails with `insufficient_funds` if the balance is too low"""
    result = await PaymentService.settle_payment(db, ledger, payment_id, current_user)
    return {"entry": result.entry, "balance": result.balance, "replayed": result.replayed}


@router.post("/{payment_id}/cancel", response_model=schemas.PaymentResponse)
async def cancel_payment(
    payment_id: int,
    db: AsyncSession = Depends(get_db),
    ledger: LedgerEngine = Depends(get_ledger),
    current_user: User = Depends(get_current_active_user)
):
    """Cancel a scheduled payment; it is marked `failed` and never applied"""
    return await PaymentService.cancel_payment(db, ledger, payment_id, current_user)
