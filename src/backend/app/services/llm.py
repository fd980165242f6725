"""
LLM extraction services for email text and receipt images.

Both services run the same pipeline (provider call -> clean -> normalize
-> validate) and differ in prompt, provider list and ExtractionProfile.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from app.models.receipt import ExtractedReceipt
from app.services.errors import AllProvidersFailedError, EmptyResponseError, ProviderUnavailableError
from app.services.normalizer import (
    EMAIL_PROFILE,
    VALID_CATEGORIES,
    VALID_CONFIDENCE,
    VISION_PROFILE,
    ExtractionProfile,
    parse_response,
)
from app.services.providers import GeminiVisionProvider, ImagePrompt, LLMProvider, default_text_providers

logger = logging.getLogger(__name__)

EMAIL_CONTENT_MAX_CHARS = 3000


@dataclass
class ExtractionResult:
    """A validated receipt plus what produced it, kept for auditing."""
    receipt: ExtractedReceipt
    provider: str
    raw_response: str

    def audit_payload(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "raw_response": self.raw_response,
            "extracted": self.receipt.model_dump(),
        }


class ExtractionPipeline:
    """
    Ordered provider fallback around parse_response.

    Providers are tried strictly in sequence; unconfigured ones are skipped
    and the first validated receipt wins.
    """

    def __init__(self, providers: Sequence[LLMProvider], profile: ExtractionProfile):
        self.providers = list(providers)
        self.profile = profile

    def configured_providers(self) -> List[str]:
        return [p.name for p in self.providers if p.is_configured()]

    def attempt(self, provider: LLMProvider, payload: Any) -> ExtractionResult:
        """
        Run one provider and parse its reply.

        Raises:
            EmptyResponseError, MalformedJSONError, MissingFieldError, or
            whatever the provider client raises
        """
        raw_text = provider.call(payload)
        if not raw_text:
            raise EmptyResponseError(f"No response returned from {provider.label}")

        receipt = parse_response(raw_text, self.profile, source=provider.label)
        return ExtractionResult(receipt=receipt, provider=provider.name, raw_response=raw_text)

    def extract(self, payload: Any) -> ExtractionResult:
        """
        Return the first provider result that normalizes and validates.

        Raises:
            AllProvidersFailedError: Nothing configured, or every attempt failed
        """
        failures = []

        for provider in self.providers:
            if not provider.is_configured():
                logger.debug("Skipping unconfigured LLM provider", extra={
                    "provider": provider.name
                })
                continue

            logger.info("Trying LLM provider", extra={
                "provider": provider.name,
                "profile": self.profile.name
            })

            try:
                result = self.attempt(provider, payload)
            except Exception as e:
                logger.warning("LLM provider failed", extra={
                    "provider": provider.name,
                    "error": str(e)
                })
                failures.append((provider.name, str(e)))
                continue

            logger.info("Extracted receipt", extra={
                "provider": provider.name,
                "merchant": result.receipt.merchant,
                "amount": result.receipt.amount,
                "confidence": result.receipt.confidence
            })
            return result

        logger.error("All LLM providers failed", extra={
            "profile": self.profile.name,
            "failures": failures
        })
        raise AllProvidersFailedError(failures)


class LLMService:
    """Extract receipt data from email content with provider fallback."""

    def __init__(self, providers: Optional[Sequence[LLMProvider]] = None):
        self.pipeline = ExtractionPipeline(
            providers if providers is not None else default_text_providers(),
            EMAIL_PROFILE
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.pipeline.configured_providers())

    def build_prompt(self, email_content: str, metadata: Optional[Dict] = None) -> str:
        """Build the email extraction prompt."""
        metadata = metadata or {}
        body = (email_content or "")[:EMAIL_CONTENT_MAX_CHARS]

        return f"""You are a JSON-only API that extracts receipt data from emails.

IMPORTANT: Return ONLY valid JSON. No markdown, no code blocks, no explanations, no extra text.

Email Subject: {metadata.get('subject') or 'N/A'}
Email From: {metadata.get('from') or 'N/A'}
Email Date: {metadata.get('date') or 'N/A'}

Email Content:
{body}

Return this exact JSON structure (replace values, keep structure):
{{
  "date": "YYYY-MM-DD",
  "merchant": "merchant name",
  "category": "{'|'.join(VALID_CATEGORIES)}",
  "amount": "123.45",
  "currency": "USD",
  "items": "brief description or null",
  "confidence": "{'|'.join(VALID_CONFIDENCE)}"
}}

Rules:
- date: Purchase date in YYYY-MM-DD format (use the email date if not found)
- merchant: Company/store name from the receipt
- category: MUST be one of the listed options
- amount: The TOTAL AMOUNT PAID as a number (e.g., "711.75"). Look for "Total", "Amount paid", "Total due", "Charged", or the largest amount.
- currency: 3-letter ISO code matching the currency symbol ($ = USD, € = EUR, £ = GBP, ₱ = PHP, ¥ = JPY)
- items: Short description of what was purchased
- confidence: high if amount and merchant are clear, medium if some are unclear, low if guessing

Return ONLY the JSON object, nothing else."""

    def extract_receipt_data(self, email_content: str, metadata: Optional[Dict] = None) -> ExtractionResult:
        """
        Extract a receipt from an email body.

        Args:
            email_content: Plain-text email body
            metadata: Optional subject/from/date headers

        Returns:
            ExtractionResult from the first provider that succeeded

        Raises:
            AllProvidersFailedError: No provider produced a valid receipt
        """
        prompt = self.build_prompt(email_content, metadata)
        return self.pipeline.extract(prompt)


class ReceiptVisionService:
    """Extract receipt data from a photographed receipt (single provider)."""

    def __init__(self, provider: Optional[LLMProvider] = None):
        self.provider = provider or GeminiVisionProvider()
        self.pipeline = ExtractionPipeline([self.provider], VISION_PROFILE)

    @property
    def is_configured(self) -> bool:
        return self.provider.is_configured()

    def build_prompt(self) -> str:
        return f"""You are a computer vision system that reads receipts and returns structured JSON.

CRITICAL: Reply with ONLY valid JSON. No markdown, comments, explanations, or text.

Extract the following fields from the receipt image:
{{
  "datetime": "ISO 8601 purchase datetime (use local receipt time; if only a date is present, use \\"<date>T12:00:00\\" with UTC as the best-guess timezone)",
  "merchant": "Store or merchant name",
  "category": "one of {' | '.join(VALID_CATEGORIES)}",
  "amount": "numeric total amount paid",
  "currency": "3-letter ISO currency code, infer from symbol",
  "notes": "short human readable summary of the purchase or null",
  "confidence": "one of {' | '.join(VALID_CONFIDENCE)}",
  "items": [
    {{
      "description": "item label",
      "quantity": number or null,
      "price": "per-item price as numeric string or null",
      "total": "line total as numeric string or null"
    }}
  ],
  "tax": "numeric tax amount or null",
  "tip": "numeric tip amount or null"
}}

Rules:
- amount must equal the final total charged on the receipt.
- Infer currency from symbols ($, €, £, etc).
- If uncertain, set confidence to "low" and leave ambiguous numeric fields null.
- Return null for fields that cannot be reliably determined.
- Keep numbers as strings that can be parsed into decimals (e.g., "123.45").
- Ensure JSON is syntactically valid."""

    def extract_from_image(self, image_bytes: bytes, mime_type: Optional[str] = None) -> ExtractionResult:
        """
        Extract a receipt from image bytes.

        Errors are not aggregated: the caller gets the specific failure
        (malformed JSON, missing field) so it can report it directly.

        Raises:
            ProviderUnavailableError: Vision provider has no API key
            ValueError: No image bytes given
        """
        if not self.is_configured:
            raise ProviderUnavailableError(self.provider.label)

        if not image_bytes or not isinstance(image_bytes, (bytes, bytearray)):
            raise ValueError("A valid image buffer is required")

        payload = ImagePrompt(
            image_bytes=bytes(image_bytes),
            mime_type=mime_type or "image/jpeg",
            prompt=self.build_prompt()
        )

        logger.info("Extracting receipt from image", extra={
            "provider": self.provider.name,
            "mime_type": payload.mime_type,
            "size_bytes": len(payload.image_bytes)
        })
        return self.pipeline.attempt(self.provider, payload)


# Singleton instances
_llm_service = None
_vision_service = None


def get_llm_service() -> LLMService:
    """Get or create LLM service instance"""
    global _llm_service
    if _llm_service is None:
        _llm_service = LLMService()
    return _llm_service


def get_vision_service() -> ReceiptVisionService:
    """Get or create vision service instance"""
    global _vision_service
    if _vision_service is None:
        _vision_service = ReceiptVisionService()
    return _vision_service
