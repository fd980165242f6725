"""
Gmail router for triggering receipt extraction from the connected mailbox.
"""

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel
from typing import Dict, List, Optional
import logging

from app.config import settings
from app.services.email import EmailService, RECEIPT_QUERY
from app.services.ingestion import ReceiptProcessor
from app.services.llm import get_llm_service

router = APIRouter(prefix="/gmail", tags=["gmail"])
logger = logging.getLogger(__name__)


class SyncRequest(BaseModel):
    """Request model for sync endpoint."""
    user_id: str
    days_back: Optional[int] = 7


class ProcessAllRequest(BaseModel):
    """Request model for the process-all endpoint."""
    user_id: str
    max_emails: Optional[int] = 50


def summarize_batch(message: str, results: List[Dict]) -> Dict:
    """Split batch results into stored receipts and per-email errors."""
    errors = [r for r in results if 'error' in r]
    receipts = [r for r in results if 'error' not in r]

    return {
        "message": message,
        "total": len(results),
        "success": len(receipts),
        "failed": len(errors),
        "receipts": receipts,
        "errors": errors
    }


@router.post("/sync")
def sync_emails(request: SyncRequest):
    """
    Extract receipts from emails received in the last days_back days.

    Args:
        request: Sync request with user_id and optional days_back

    Returns:
        Batch summary
    """
    try:
        processor = ReceiptProcessor()
        results = processor.process_recent_emails(
            user_id=request.user_id,
            days_back=request.days_back or 7
        )

        if not results:
            return summarize_batch("No new receipt emails found", results)
        return summarize_batch(f"Processed {len(results)} emails", results)

    except Exception as e:
        logger.error("Gmail sync failed", extra={
            "user_id": request.user_id,
            "error": str(e)
        }, exc_info=True)
        raise HTTPException(
            status_code=500,
            detail=f"Sync failed: {str(e)}"
        )


@router.post("/process-all")
def process_all_emails(request: ProcessAllRequest):
    """
    Extract receipts from up to max_emails receipt-like emails, any age.
    """
    try:
        processor = ReceiptProcessor()
        results = processor.process_all_emails(
            user_id=request.user_id,
            max_emails=request.max_emails or 50
        )

        if not results:
            return summarize_batch("No receipt emails found", results)
        return summarize_batch(f"Processed {len(results)} emails", results)

    except Exception as e:
        logger.error("Processing all emails failed", extra={
            "user_id": request.user_id,
            "error": str(e)
        }, exc_info=True)
        raise HTTPException(
            status_code=500,
            detail=f"Processing failed: {str(e)}"
        )


@router.post("/process-email/{email_id}")
def process_email(email_id: str, user_id: str = Query(..., description="User ID")):
    """
    Extract the receipt from a single email.

    Returns:
        The stored receipt (existing one if the email was already processed)
    """
    try:
        processor = ReceiptProcessor()
        receipt = processor.process_email(user_id, email_id)
        return {"success": True, "receipt": receipt}

    except Exception as e:
        raise HTTPException(
            status_code=500,
            detail=f"Failed to process email: {str(e)}"
        )


@router.get("/search")
def search_emails(
    query: str = Query(RECEIPT_QUERY, description="Gmail search query"),
    max_results: int = Query(10, ge=1, le=100, description="Maximum messages")
):
    """List message stubs matching a Gmail query."""
    try:
        email_service = EmailService()
        messages = email_service.search_messages(query, max_results)
        return {"count": len(messages), "messages": messages}

    except Exception as e:
        logger.error("Gmail search failed", extra={
            "query": query,
            "error": str(e)
        }, exc_info=True)
        raise HTTPException(
            status_code=500,
            detail=f"Search failed: {str(e)}"
        )


@router.get("/email/{email_id}")
def get_email(email_id: str):
    """Fetch one email flattened to subject, sender, date and body."""
    try:
        email_service = EmailService()
        return email_service.get_email(email_id)

    except Exception as e:
        logger.error("Failed to fetch email", extra={
            "email_id": email_id,
            "error": str(e)
        }, exc_info=True)
        raise HTTPException(
            status_code=500,
            detail=f"Failed to fetch email: {str(e)}"
        )


@router.get("/status")
async def gmail_status():
    """
    Check if the Gmail pipeline is configured and ready.

    Returns:
        Configuration status
    """
    llm_providers = get_llm_service().pipeline.configured_providers()

    config_status = {
        "gmail_configured": EmailService.is_configured(),
        "llm_configured": bool(llm_providers),
        "supabase_connected": bool(settings.SUPABASE_URL and
                                   settings.SUPABASE_SERVICE_KEY)
    }

    return {
        "ready": all(config_status.values()),
        "config": config_status,
        "llm_providers": llm_providers
    }
