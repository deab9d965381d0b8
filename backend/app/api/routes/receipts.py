"""
Receipt parsing routes.
"""
from fastapi import APIRouter, Depends
from app.models.user import User
from app.schemas.receipt import ReceiptParseRequest, ParsedReceipt
from app.api.dependencies import get_current_user
from app.services.receipt_service import parse_receipt_lines

router = APIRouter(prefix="/receipts", tags=["receipts"])


@router.post("/parse", response_model=ParsedReceipt)
async def parse_receipt(
    request: ReceiptParseRequest,
    current_user: User = Depends(get_current_user)
):
    """Turn OCR text lines into draft items."""
    return parse_receipt_lines(request.lines)
