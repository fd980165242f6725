"""
Gmail access for receipt emails.
Reads the configured mailbox, walks MIME parts recursively and hands plain text to the extractor.
"""

import base64
import logging
import re
from typing import List, Dict, Optional, Tuple
from datetime import datetime, timedelta
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
import html2text

from app.config import settings

logger = logging.getLogger(__name__)

RECEIPT_QUERY = "label:receipts OR subject:(receipt OR order OR invoice)"
RECENT_RECEIPT_QUERY = "(label:receipts OR subject:(receipt OR order OR invoice OR purchase))"

_ADDRESS_IN_BRACKETS = re.compile(r'<([^>]+)>')


class EmailService:
    """Service for interacting with Gmail API."""

    def __init__(self):
        """Initialize Gmail service with OAuth credentials."""
        self.creds = None
        self.service = None
        self._initialize_service()

    @staticmethod
    def is_configured() -> bool:
        return bool(settings.GMAIL_CLIENT_ID and
                    settings.GMAIL_CLIENT_SECRET and
                    settings.GMAIL_REFRESH_TOKEN)

    def _initialize_service(self):
        """Set up Gmail API service with credentials."""
        if not self.is_configured():
            raise RuntimeError("Gmail API is not configured. Please connect a Gmail account.")

        try:
            self.creds = Credentials(
                token=None,
                refresh_token=settings.GMAIL_REFRESH_TOKEN,
                token_uri="https://oauth2.googleapis.com/token",
                client_id=settings.GMAIL_CLIENT_ID,
                client_secret=settings.GMAIL_CLIENT_SECRET,
                scopes=['https://www.googleapis.com/auth/gmail.readonly']
            )

            self.service = build('gmail', 'v1', credentials=self.creds)
            logger.debug("Gmail service initialized successfully")

        except Exception:
            logger.error("Failed to initialize Gmail service", exc_info=True)
            raise

    def search_messages(self, query: str = RECEIPT_QUERY, max_results: int = 10) -> List[Dict]:
        """
        Search the mailbox.

        Args:
            query: Gmail search query
            max_results: Maximum number of messages to return

        Returns:
            List of message stubs with id and threadId
        """
        try:
            results = self.service.users().messages().list(
                userId='me',
                q=query,
                maxResults=max_results
            ).execute()

            messages = results.get('messages', [])
            logger.debug("Listed messages from Gmail", extra={
                "count": len(messages),
                "query": query
            })
            return messages

        except HttpError:
            logger.error("Gmail API error searching messages", extra={
                "query": query
            }, exc_info=True)
            raise

    def get_recent_receipts(self, days_back: int = 7, max_results: int = 50) -> List[Dict]:
        """List likely receipt emails received in the last days_back days."""
        after = (datetime.now() - timedelta(days=days_back)).strftime("%Y/%m/%d")
        return self.search_messages(f"{RECENT_RECEIPT_QUERY} after:{after}", max_results)

    def get_message(self, message_id: str) -> Dict:
        """Get the full Gmail message object by ID."""
        try:
            return self.service.users().messages().get(
                userId='me',
                id=message_id,
                format='full'
            ).execute()

        except HttpError:
            logger.error("Error fetching message", extra={
                "message_id": message_id
            }, exc_info=True)
            raise

    def get_email(self, message_id: str) -> Dict:
        """Fetch a message and return it parsed (see parse_email)."""
        return self.parse_email(self.get_message(message_id))

    def extract_email_body(self, message: Dict) -> Tuple[Optional[str], Optional[str]]:
        """
        Extract email body content (HTML and/or plain text).

        The first part of each type wins.

        Args:
            message: Full Gmail message object

        Returns:
            Tuple of (html_body, text_body)
        """
        html_body = None
        text_body = None

        def get_body_from_part(part):
            """Recursively extract body from message parts."""
            nonlocal html_body, text_body

            mime_type = part.get('mimeType', '')
            body = part.get('body', {})

            if body.get('data') and mime_type in ('text/html', 'text/plain'):
                try:
                    decoded = base64.urlsafe_b64decode(body['data']).decode('utf-8', errors='replace')

                    if mime_type == 'text/html' and html_body is None:
                        html_body = decoded
                    elif mime_type == 'text/plain' and text_body is None:
                        text_body = decoded
                except (ValueError, TypeError) as e:
                    logger.warning("Error decoding body part", extra={
                        "mime_type": mime_type,
                        "error": str(e)
                    })

            for subpart in part.get('parts', []):
                get_body_from_part(subpart)

        get_body_from_part(message.get('payload', {}))

        return html_body, text_body

    def convert_html_to_text(self, html_content: str) -> str:
        """
        Convert HTML email to clean text.

        Args:
            html_content: HTML string

        Returns:
            Plain text version
        """
        h = html2text.HTML2Text()
        h.ignore_links = True
        h.ignore_images = True
        h.ignore_emphasis = True
        h.body_width = 0  # Don't wrap lines

        return h.handle(html_content).strip()

    def extract_email_metadata(self, message: Dict) -> Dict:
        """
        Extract useful metadata from message headers.

        Args:
            message: Gmail message object

        Returns:
            Dictionary with subject, from, to, date
        """
        metadata = {
            'subject': None,
            'from': None,
            'to': None,
            'date': None
        }

        for header in message.get('payload', {}).get('headers', []):
            name = header.get('name', '').lower()
            if name in metadata and metadata[name] is None:
                metadata[name] = header.get('value')

        return metadata

    @staticmethod
    def extract_address(from_header: Optional[str]) -> Optional[str]:
        """Reduce 'Name <user@example.com>' to 'user@example.com'."""
        if not from_header:
            return None
        match = _ADDRESS_IN_BRACKETS.search(from_header)
        return match.group(1) if match else from_header.strip()

    def parse_email(self, message: Dict) -> Dict:
        """
        Flatten a Gmail message into the fields the extractor needs.

        Plain text is preferred; HTML-only bodies are converted to text.
        The body is truncated to EMAIL_BODY_MAX_CHARS.
        """
        metadata = self.extract_email_metadata(message)
        html_body, text_body = self.extract_email_body(message)

        if text_body and text_body.strip():
            body = text_body
        elif html_body:
            body = self.convert_html_to_text(html_body)
        else:
            body = ''

        body = re.sub(r'[ \t]+', ' ', body).strip()

        return {
            'id': message.get('id'),
            'thread_id': message.get('threadId'),
            'subject': metadata['subject'],
            'from': self.extract_address(metadata['from']),
            'to': metadata['to'],
            'date': metadata['date'],
            'body': body[:settings.EMAIL_BODY_MAX_CHARS],
            'snippet': message.get('snippet'),
            'labels': message.get('labelIds', [])
        }
