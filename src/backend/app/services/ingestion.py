"""
Receipt processing: turns emails and image extractions into persisted receipt rows.
Idempotent per (user_id, email_id); failed extractions leave a placeholder row.
"""

import json
import logging
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional

from app.config import settings
from app.models.receipt import ExtractedReceipt
from app.services.email import EmailService, RECEIPT_QUERY
from app.services.llm import ExtractionResult, LLMService, get_llm_service
from app.services.normalizer import normalize_datetime
from app.utils.money import stringify_amount
from app.utils.supabase import get_supabase_client

logger = logging.getLogger(__name__)


def status_for_confidence(confidence: Optional[str]) -> str:
    """Low-confidence extractions go to manual review."""
    return 'manual_review' if confidence == 'low' else 'processed'


def _now_iso() -> str:
    return normalize_datetime(datetime.now(timezone.utc))


class ReceiptProcessor:
    """Service for extracting receipts from emails and storing them."""

    def __init__(
        self,
        email_service: Optional[EmailService] = None,
        llm_service: Optional[LLMService] = None,
        supabase=None
    ):
        """Initialize processor; collaborators are created on first use unless given."""
        self._email_service = email_service
        self.llm_service = llm_service or get_llm_service()
        self.supabase = supabase or get_supabase_client()

    @property
    def email_service(self) -> EmailService:
        if self._email_service is None:
            self._email_service = EmailService()
        return self._email_service

    def _receipt_row(self, user_id: str, receipt: ExtractedReceipt, **extra) -> Dict:
        """
        Build a receipts table row from a canonical receipt.

        Supabase-py JSON encoder stores money as strings, so amounts are
        rendered with two decimals.
        """
        row = {
            "user_id": user_id,
            "datetime": receipt.datetime or _now_iso(),
            "merchant": receipt.merchant,
            "category": receipt.category,
            "amount": stringify_amount(receipt.amount),
            "currency": receipt.currency or "USD",
            "notes": receipt.notes,
            "confidence": receipt.confidence,
            "items": [item.model_dump() for item in receipt.items],
            "tax": stringify_amount(receipt.tax),
            "tip": stringify_amount(receipt.tip),
            "status": status_for_confidence(receipt.confidence),
        }
        row.update(extra)
        return row

    def _insert(self, row: Dict) -> Dict:
        response = self.supabase.table('receipts').insert(row).execute()
        if not response.data:
            raise RuntimeError("Failed to create receipt record")
        return response.data[0]

    def _find_existing(self, user_id: str, email_id: str) -> Optional[Dict]:
        response = self.supabase.table('receipts').select('*').eq(
            'user_id', user_id
        ).eq('email_id', email_id).limit(1).execute()

        return response.data[0] if response.data else None

    def _record_failure(self, user_id: str, email_id: str, error: Exception) -> None:
        """Write a placeholder row so the attempt is not lost."""
        try:
            self.supabase.table('receipts').insert({
                "user_id": user_id,
                "email_id": email_id,
                "datetime": _now_iso(),
                "merchant": "Unknown",
                "category": "other",
                "amount": "0.00",
                "currency": "USD",
                "status": "failed",
                "source_type": "email",
                "notes": f"Processing failed: {error}"
            }).execute()
        except Exception:
            logger.error("Failed to create error record", extra={
                "user_id": user_id,
                "email_id": email_id
            }, exc_info=True)

    def process_email(self, user_id: str, email_id: str) -> Dict:
        """
        Extract and store the receipt contained in one email.

        Args:
            user_id: Owner of the receipt
            email_id: Gmail message ID

        Returns:
            The stored receipt row (existing row if already processed)

        Raises:
            Exception: The extraction or storage error, after a failed
                placeholder row has been written
        """
        try:
            existing = self._find_existing(user_id, email_id)
            if existing and existing.get('status') != 'failed':
                logger.info("Email already processed", extra={
                    "user_id": user_id,
                    "email_id": email_id
                })
                return existing

            if existing:
                # Retry: replace the earlier failure placeholder
                self.supabase.table('receipts').delete().eq('id', existing['id']).execute()

            email = self.email_service.get_email(email_id)

            logger.info("Processing email", extra={
                "user_id": user_id,
                "email_id": email_id,
                "subject": email.get('subject')
            })

            result = self.llm_service.extract_receipt_data(
                email.get('body', ''),
                {
                    'subject': email.get('subject'),
                    'from': email.get('from'),
                    'date': email.get('date')
                }
            )

            receipt = result.receipt
            row = self._receipt_row(
                user_id,
                receipt,
                datetime=receipt.datetime or normalize_datetime(email.get('date')) or _now_iso(),
                email_id=email.get('id') or email_id,
                source_type='email',
                source_email=email.get('from'),
                subject=email.get('subject'),
                raw_email_content=email.get('body'),
                llm_response=json.dumps(result.audit_payload())
            )
            stored = self._insert(row)

            logger.info("Processed receipt", extra={
                "email_id": email_id,
                "merchant": receipt.merchant,
                "amount": receipt.amount,
                "currency": receipt.currency,
                "status": row['status']
            })
            return stored

        except Exception as e:
            logger.error("Error processing email", extra={
                "user_id": user_id,
                "email_id": email_id,
                "error": str(e)
            }, exc_info=True)
            self._record_failure(user_id, email_id, e)
            raise

    def _process_batch(self, user_id: str, messages: List[Dict]) -> List[Dict]:
        results = []
        for message in messages:
            try:
                results.append(self.process_email(user_id, message['id']))
                # Stay under provider rate limits
                time.sleep(settings.EMAIL_BATCH_DELAY_SECONDS)
            except Exception as e:
                logger.warning("Failed to process email in batch", extra={
                    "email_id": message['id'],
                    "error": str(e)
                })
                results.append({"id": message['id'], "error": str(e)})
        return results

    def process_recent_emails(self, user_id: str, days_back: int = 7) -> List[Dict]:
        """
        Process receipt-like emails from the last days_back days.

        Returns:
            One entry per email: a receipt row, or {"id", "error"}
        """
        messages = self.email_service.get_recent_receipts(days_back)

        logger.info("Starting email sync", extra={
            "user_id": user_id,
            "days_back": days_back,
            "message_count": len(messages)
        })

        if not messages:
            return []
        return self._process_batch(user_id, messages)

    def process_all_emails(self, user_id: str, max_emails: int = 50) -> List[Dict]:
        """Process up to max_emails receipt-like emails regardless of age."""
        messages = self.email_service.search_messages(RECEIPT_QUERY, max_emails)

        logger.info("Processing all receipt emails", extra={
            "user_id": user_id,
            "message_count": len(messages)
        })

        if not messages:
            return []
        return self._process_batch(user_id, messages)

    def save_extracted(self, user_id: str, result: ExtractionResult, source: Dict) -> Dict:
        """
        Store a receipt extracted from an uploaded image.

        Args:
            user_id: Owner of the receipt
            result: Vision extraction result
            source: Uploaded-file metadata (filename, mimetype, size)
        """
        audit = result.audit_payload()
        audit["source"] = source

        row = self._receipt_row(
            user_id,
            result.receipt,
            source_type='upload',
            llm_response=json.dumps(audit)
        )
        stored = self._insert(row)

        logger.info("Stored uploaded receipt", extra={
            "user_id": user_id,
            "filename": source.get('filename'),
            "status": row['status']
        })
        return stored
