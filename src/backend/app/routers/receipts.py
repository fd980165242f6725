"""
Receipts API router: listing, stats, manual entry, edits and image parsing.
"""

from fastapi import APIRouter, Body, File, Form, HTTPException, Query, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from typing import Any, Dict, Optional
from datetime import date, datetime, timezone
from decimal import Decimal
import logging

from app.config import settings
from app.models.receipt import ManualReceiptRequest, ReceiptInsert, ReceiptList, ReceiptResponse, ReceiptUpdate
from app.services.errors import ExtractionRejectedError, ProviderUnavailableError
from app.services.ingestion import ReceiptProcessor
from app.services.llm import get_vision_service
from app.services.normalizer import normalize_category, normalize_currency, normalize_datetime
from app.utils.money import stringify_amount
from app.utils.supabase import get_supabase_client

router = APIRouter(prefix="/receipts", tags=["receipts"])
logger = logging.getLogger(__name__)

MANUAL_REQUIRED_FIELDS = ("datetime", "merchant", "category", "amount")
CENT = Decimal('0.01')


def _fetch_owned(supabase, receipt_id: str, user_id: str) -> Dict:
    """Load one receipt scoped to user_id or raise 404."""
    response = supabase.table('receipts').select('*').eq('id', receipt_id).eq(
        'user_id', user_id
    ).execute()

    if not response.data:
        raise HTTPException(status_code=404, detail="Receipt not found")
    return response.data[0]


def _to_decimal(value: Any) -> Decimal:
    """Stored amount as Decimal; unparseable values count as zero."""
    amount = stringify_amount(value)
    return Decimal(amount) if amount is not None else Decimal('0')


@router.get("", response_model=ReceiptList)
async def list_receipts(
    user_id: str = Query(..., description="User ID"),
    category: Optional[str] = Query(None, description="Filter by category ('all' for no filter)"),
    date_from: Optional[date] = Query(None, description="Start date (YYYY-MM-DD)"),
    date_to: Optional[date] = Query(None, description="End date (YYYY-MM-DD)"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum receipts returned")
):
    """
    List receipts for a user, newest purchase first.

    Filters:
    - category: Exact category match
    - date_from/date_to: Purchase date range, inclusive
    """
    try:
        supabase = get_supabase_client()

        query = supabase.table('receipts').select('*').eq('user_id', user_id)

        if category and category != 'all':
            query = query.eq('category', category.lower())

        if date_from:
            query = query.gte('datetime', date_from.isoformat())

        if date_to:
            query = query.lte('datetime', f"{date_to.isoformat()}T23:59:59.999Z")

        response = query.order('datetime', desc=True).limit(limit).execute()
        receipts = response.data or []

        return ReceiptList(count=len(receipts), receipts=receipts)

    except Exception as e:
        logger.error("Failed to fetch receipts", extra={
            "user_id": user_id,
            "error": str(e)
        }, exc_info=True)
        raise HTTPException(
            status_code=500,
            detail=f"Failed to fetch receipts: {str(e)}"
        )


@router.get("/stats/summary")
async def get_receipt_stats(user_id: str = Query(..., description="User ID")):
    """
    Get summary statistics for receipts.

    Returns:
        Grand total, current-month total, count and per-category totals
    """
    try:
        supabase = get_supabase_client()

        response = supabase.table('receipts').select(
            'amount,category,datetime'
        ).eq('user_id', user_id).execute()
        receipts = response.data or []

        month_prefix = datetime.now(timezone.utc).strftime('%Y-%m')
        total = Decimal('0')
        this_month = Decimal('0')
        by_category = {}

        for receipt in receipts:
            amount = _to_decimal(receipt.get('amount'))
            category = receipt.get('category') or 'other'

            total += amount
            if (receipt.get('datetime') or '').startswith(month_prefix):
                this_month += amount

            bucket = by_category.setdefault(category, {"total": Decimal('0'), "count": 0})
            bucket["total"] += amount
            bucket["count"] += 1

        for bucket in by_category.values():
            bucket["total"] = str(bucket["total"].quantize(CENT))

        return {
            "total": str(total.quantize(CENT)),
            "this_month": str(this_month.quantize(CENT)),
            "count": len(receipts),
            "by_category": by_category
        }

    except Exception as e:
        logger.error("Failed to fetch stats", extra={
            "user_id": user_id,
            "error": str(e)
        }, exc_info=True)
        raise HTTPException(
            status_code=500,
            detail=f"Failed to fetch stats: {str(e)}"
        )


@router.get("/{receipt_id}", response_model=ReceiptResponse)
async def get_receipt(receipt_id: str, user_id: str = Query(..., description="User ID")):
    """
    Get a single receipt by ID.

    Args:
        receipt_id: Receipt ID
        user_id: User ID (for authorization)
    """
    try:
        supabase = get_supabase_client()
        return _fetch_owned(supabase, receipt_id, user_id)

    except HTTPException:
        raise
    except Exception as e:
        logger.error("Failed to fetch receipt", extra={
            "receipt_id": receipt_id,
            "user_id": user_id,
            "error": str(e)
        }, exc_info=True)
        raise HTTPException(
            status_code=500,
            detail=f"Failed to fetch receipt: {str(e)}"
        )


@router.post("", status_code=201)
async def create_receipt(request: ManualReceiptRequest):
    """
    Create a receipt from the manual entry form.

    datetime, merchant, category and amount are required; currency
    defaults to USD.
    """
    missing = [field for field in MANUAL_REQUIRED_FIELDS if getattr(request, field) in (None, '')]
    if missing:
        raise HTTPException(
            status_code=400,
            detail=f"Missing required fields: {', '.join(MANUAL_REQUIRED_FIELDS)}"
        )

    amount = stringify_amount(request.amount)
    if amount is None:
        raise HTTPException(status_code=400, detail=f"Invalid amount: {request.amount}")

    purchased_at = normalize_datetime(request.datetime)
    if purchased_at is None:
        raise HTTPException(status_code=400, detail=f"Invalid datetime: {request.datetime}")

    try:
        supabase = get_supabase_client()

        response = supabase.table('receipts').insert({
            "user_id": request.user_id,
            "datetime": purchased_at,
            "merchant": request.merchant.strip(),
            "category": normalize_category(request.category),
            "amount": amount,
            "currency": normalize_currency(request.currency, 'USD'),
            "notes": request.notes,
            "status": "processed",
            "source_type": "manual"
        }).execute()

        if not response.data:
            raise HTTPException(status_code=500, detail="Failed to create receipt")

        logger.info("Created manual receipt", extra={
            "user_id": request.user_id,
            "receipt_id": response.data[0].get('id')
        })
        return {"success": True, "receipt": response.data[0]}

    except HTTPException:
        raise
    except Exception as e:
        logger.error("Failed to create receipt", extra={
            "user_id": request.user_id,
            "error": str(e)
        }, exc_info=True)
        raise HTTPException(
            status_code=500,
            detail=f"Failed to create receipt: {str(e)}"
        )


@router.post("/insert", status_code=201)
async def insert_receipt(payload: Dict[str, Any] = Body(...)):
    """
    Insert a receipt from a strictly validated JSON payload.

    Returns 400 with {"errors": [...]} when the payload does not validate.
    """
    try:
        receipt = ReceiptInsert.model_validate(payload)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        return JSONResponse(status_code=400, content={"errors": errors})

    try:
        supabase = get_supabase_client()

        response = supabase.table('receipts').insert({
            "user_id": str(receipt.user_id),
            "datetime": normalize_datetime(receipt.datetime or datetime.now(timezone.utc)),
            "merchant": receipt.merchant,
            "category": normalize_category(receipt.category),
            "amount": stringify_amount(receipt.amount),
            "currency": "USD",
            "source_email": receipt.source_email,
            "status": "processed",
            "source_type": "manual"
        }).execute()

        if not response.data:
            raise HTTPException(status_code=500, detail="Failed to insert receipt")

        return {"receipt": response.data[0]}

    except HTTPException:
        raise
    except Exception as e:
        logger.error("Failed to insert receipt", extra={
            "user_id": receipt.user_id,
            "error": str(e)
        }, exc_info=True)
        raise HTTPException(
            status_code=500,
            detail=f"Failed to insert receipt: {str(e)}"
        )


@router.put("/{receipt_id}")
async def update_receipt(
    receipt_id: str,
    update: ReceiptUpdate,
    user_id: str = Query(..., description="User ID")
):
    """
    Partially update a receipt; only provided fields change.
    """
    changes = update.model_dump(exclude_unset=True)

    if 'amount' in changes:
        changes['amount'] = stringify_amount(changes['amount'])
        if changes['amount'] is None:
            raise HTTPException(status_code=400, detail=f"Invalid amount: {update.amount}")
    if 'datetime' in changes:
        changes['datetime'] = normalize_datetime(changes['datetime'])
        if changes['datetime'] is None:
            raise HTTPException(status_code=400, detail=f"Invalid datetime: {update.datetime}")
    if 'category' in changes:
        changes['category'] = normalize_category(changes['category'])
    if 'currency' in changes:
        changes['currency'] = normalize_currency(changes['currency'], 'USD')

    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")

    try:
        supabase = get_supabase_client()
        _fetch_owned(supabase, receipt_id, user_id)

        response = supabase.table('receipts').update(changes).eq('id', receipt_id).eq(
            'user_id', user_id
        ).execute()

        logger.info("Updated receipt", extra={
            "receipt_id": receipt_id,
            "fields": list(changes)
        })
        return {"success": True, "receipt": response.data[0] if response.data else None}

    except HTTPException:
        raise
    except Exception as e:
        logger.error("Failed to update receipt", extra={
            "receipt_id": receipt_id,
            "user_id": user_id,
            "error": str(e)
        }, exc_info=True)
        raise HTTPException(
            status_code=500,
            detail=f"Failed to update receipt: {str(e)}"
        )


@router.delete("/{receipt_id}")
async def delete_receipt(receipt_id: str, user_id: str = Query(..., description="User ID")):
    """
    Delete a receipt.

    Args:
        receipt_id: Receipt ID
        user_id: User ID (for authorization)
    """
    try:
        supabase = get_supabase_client()
        _fetch_owned(supabase, receipt_id, user_id)

        supabase.table('receipts').delete().eq('id', receipt_id).eq('user_id', user_id).execute()

        logger.info("Deleted receipt", extra={"receipt_id": receipt_id})
        return {"message": "Receipt deleted successfully", "id": receipt_id}

    except HTTPException:
        raise
    except Exception as e:
        logger.error("Failed to delete receipt", extra={
            "receipt_id": receipt_id,
            "user_id": user_id,
            "error": str(e)
        }, exc_info=True)
        raise HTTPException(
            status_code=500,
            detail=f"Failed to delete receipt: {str(e)}"
        )


@router.post("/parse/image")
async def parse_receipt_image(
    file: Optional[UploadFile] = File(None),
    user_id: Optional[str] = Form(None),
    save: bool = Form(False)
):
    """
    Extract a receipt from a photo with the vision model.

    Args:
        file: Receipt image
        user_id: Owner, required when save is set
        save: Persist the extraction as a receipt

    Returns:
        Extracted receipt plus upload metadata
    """
    if file is None:
        raise HTTPException(status_code=400, detail="No receipt image uploaded")

    image_bytes = await file.read()
    if not image_bytes:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")

    if len(image_bytes) > settings.RECEIPT_UPLOAD_MAX_BYTES:
        max_mb = settings.RECEIPT_UPLOAD_MAX_BYTES / (1024 * 1024)
        raise HTTPException(
            status_code=400,
            detail=f"File too large: {len(image_bytes) / (1024 * 1024):.2f}MB. Maximum: {max_mb:g}MB"
        )

    if save and not user_id:
        raise HTTPException(status_code=400, detail="user_id is required to save a receipt")

    source = {
        "filename": file.filename,
        "mimetype": file.content_type,
        "size": len(image_bytes)
    }

    try:
        vision = get_vision_service()
        result = await run_in_threadpool(vision.extract_from_image, image_bytes, file.content_type)

        body = {
            "success": True,
            "extracted": result.receipt.model_dump(),
            "source": source
        }

        if save:
            processor = await run_in_threadpool(ReceiptProcessor)
            body["receipt"] = await run_in_threadpool(processor.save_extracted, user_id, result, source)

        return body

    except ProviderUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except ExtractionRejectedError as e:
        logger.warning("Receipt image rejected", extra={
            "filename": file.filename,
            "error": str(e)
        })
        raise HTTPException(status_code=422, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error("Failed to parse receipt image", extra={
            "filename": file.filename,
            "error": str(e)
        }, exc_info=True)
        raise HTTPException(
            status_code=500,
            detail=f"Failed to parse receipt image: {str(e)}"
        )
