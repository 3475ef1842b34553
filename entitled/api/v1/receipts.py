"""
Receipts API Endpoints
======================

Receipt validation called by the app backend (or the app itself) after a
purchase completes on the device.
"""

import logging

from fastapi import APIRouter

from entitled.dependencies import CurrentApp, DBSession
from entitled.schemas.common import ERROR_RESPONSES
from entitled.schemas.receipts import ReceiptRequest, ReceiptResponse
from entitled.services.receipts import ReceiptService

logger = logging.getLogger(__name__)

router = APIRouter(responses=ERROR_RESPONSES)


@router.post(
    "",
    response_model=ReceiptResponse,
)
async def validate_receipt(
    request: ReceiptRequest,
    app: CurrentApp,
    db: DBSession,
):
    """
    Validate a purchase with the store and return the subscriber snapshot.

    Errors:
    - 400 STORE_003 / RECEIPT_002: the store rejected the receipt
    - 422 RECEIPT_001: the product is not configured for this app
    - 422 STORE_001: store credentials are missing for this app
    - 503 STORE_002: the store is unreachable; retry later
    """
    service = ReceiptService(db)
    info = await service.validate_receipt(
        app,
        request.app_user_id,
        request.platform,
        receipt_data=request.receipt_data,
        transaction_id=request.transaction_id,
        product_id=request.product_id,
    )
    return ReceiptResponse(data=info)
