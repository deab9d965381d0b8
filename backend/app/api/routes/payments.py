"""
Payment routes: bank linking and participant charges.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from app.db.session import get_db
from app.models.user import User
from app.models.payment import Payment
from app.schemas.payment import LinkBankRequest, BankAccountResponse, ChargeRequest, PaymentResponse
from app.api.dependencies import (
    get_current_user, get_bank_link_provider, get_payment_worker, limit_failed_payment_requests
)
from app.services.bank_link_service import link_bank_account
from app.services.event_service import check_event_access
from app.services.payment_worker import PaymentJob

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post(
    "/link-bank",
    response_model=BankAccountResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(limit_failed_payment_requests)]
)
async def link_bank(
    request: LinkBankRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    provider=Depends(get_bank_link_provider)
):
    """Link a bank account from a Plaid public token."""
    return link_bank_account(db, current_user.id, request.public_token, provider)


@router.post(
    "/charge",
    response_model=PaymentResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(limit_failed_payment_requests)]
)
async def charge(
    request: ChargeRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    worker=Depends(get_payment_worker)
):
    """
    Start paying the caller's share of an event.

    The payment is recorded as processing and charged in the background.
    Repeating the request while a payment is processing or completed returns
    that payment without charging again.
    """
    reservation = worker.orchestrator.reserve(db, request.event_id, current_user.id)
    if reservation.needs_execution:
        worker.submit(PaymentJob(reservation.payment_id))
    return db.query(Payment).filter(Payment.id == reservation.payment_id).first()


@router.get("/{event_id}", response_model=PaymentResponse)
async def get_payment(
    event_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get the caller's payment for an event."""
    check_event_access(db, event_id, current_user.id)
    payment = db.query(Payment).filter(
        Payment.event_id == event_id,
        Payment.user_id == current_user.id
    ).first()
    if not payment:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Payment not found"
        )
    return payment
