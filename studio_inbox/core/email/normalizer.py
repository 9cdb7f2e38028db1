"""
Message normalization.

Turns a RawMessage handed over by a transport adapter into the canonical
NormalizedMessage: decoded headers, addresses split into address/name
lists, best-effort text and HTML bodies, flags mapped from IMAP names,
and attachment metadata (content is never kept).

MIME handling is deliberately shallow: the standard library parser with
the modern policy does the heavy lifting and anything it cannot decode is
replaced rather than rejected.
"""
import email
import hashlib
import logging
import re
from email import policy
from email.header import decode_header
from email.message import Message
from email.utils import getaddresses, parseaddr, parsedate_to_datetime
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from bs4 import BeautifulSoup

from .models import (
    AttachmentInfo,
    IMAP_FLAG_MAP,
    Importance,
    NormalizedMessage,
    RawMessage,
    to_naive_utc,
)
from studio_inbox.core.database.models import utcnow

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 200

# Non-standard charsets seen in the wild
ENCODING_MAP = {
    'x-unknown': 'utf-8',
    'x-euc-jp': 'euc-jp',
    'x-sjis': 'shift-jis',
    'x-gb2312': 'gb2312',
    'x-big5': 'big5',
}

_MSGID_RE = re.compile(r'<[^<>\s]+>')
_WS_RE = re.compile(r'\s+')


def parse_message_ids(value: Optional[str]) -> List[str]:
    """Split an In-Reply-To/References header into angle-bracketed ids, in order."""
    if not value:
        return []
    ids = _MSGID_RE.findall(value)
    if not ids:
        # Some clients omit the brackets
        ids = [f"<{token.strip('<>')}>" for token in value.split() if token.strip('<>')]
    seen = []
    for msg_id in ids:
        if msg_id not in seen:
            seen.append(msg_id)
    return seen


def normalize_message_id(value: Optional[str]) -> Optional[str]:
    ids = parse_message_ids(value)
    return ids[0] if ids else None


class MessageNormalizer:
    """Maps transport messages to NormalizedMessage"""

    def normalize(self, raw: RawMessage) -> NormalizedMessage:
        """
        Normalize one raw message.

        Args:
            raw: Message as fetched by the transport (RFC822 source or
                 pre-parsed headers)

        Returns:
            NormalizedMessage with a guaranteed message_id
        """
        msg = self._parse(raw)
        if msg is not None:
            headers = {key: str(value) for key, value in msg.items()}
            body_html, body_text = self._extract_body(msg, raw.remote_id)
            attachments = raw.attachments or self._extract_attachments(msg)
        else:
            headers = dict(raw.headers)
            body_html, body_text = raw.body_html, raw.body_text
            attachments = raw.attachments

        lookup = {k.lower(): v for k, v in headers.items()}

        subject = self._decode_header(lookup.get('subject', '')).strip()
        from_email, from_name = self._extract_email_with_name(lookup.get('from', ''))
        to_emails, to_names = self._extract_emails_with_names(lookup.get('to', ''))
        cc_emails, _ = self._extract_emails_with_names(lookup.get('cc', ''))
        bcc_emails, _ = self._extract_emails_with_names(lookup.get('bcc', ''))
        reply_to, _ = self._extract_email_with_name(lookup.get('reply-to', ''))

        date_sent = self._parse_date_safe(lookup.get('date'), raw.remote_id)
        date_received = to_naive_utc(raw.internal_date) or date_sent or utcnow()

        message_id = normalize_message_id(lookup.get('message-id'))
        if not message_id:
            message_id = self._synthesize_message_id(raw, from_email, subject, date_sent)
            logger.debug(f"Message {raw.remote_id} has no Message-ID, using {message_id}")

        if body_text is None and body_html:
            body_text = self._html_to_text(body_html)

        return NormalizedMessage(
            message_id=message_id,
            remote_message_id=raw.remote_id,
            in_reply_to=normalize_message_id(lookup.get('in-reply-to')),
            references=parse_message_ids(lookup.get('references')),
            from_email=from_email.lower(),
            from_name=from_name,
            to_emails=[a.lower() for a in to_emails],
            to_names=to_names,
            cc_emails=[a.lower() for a in cc_emails],
            bcc_emails=[a.lower() for a in bcc_emails],
            reply_to=reply_to.lower() or None,
            subject=subject,
            body_text=body_text,
            body_html=body_html,
            preview_text=self._preview(body_text),
            date_sent=date_sent,
            date_received=date_received,
            size_bytes=raw.size if raw.size is not None else (len(raw.raw) if raw.raw else None),
            importance=self._importance(lookup),
            remote_flags=self.map_flags(raw.flags),
            has_attachments=bool(attachments),
            attachment_count=len(attachments),
            attachments=attachments,
            flags_changed_at=to_naive_utc(raw.flags_changed_at),
        )

    @staticmethod
    def map_flags(flags: List[str]) -> Dict[str, bool]:
        """IMAP system flags -> remote-owned message flags (absent flag = False)"""
        present = {f.decode() if isinstance(f, bytes) else str(f) for f in flags}
        present = {f.lower() for f in present}
        return {
            field: imap_flag.lower() in present
            for imap_flag, field in IMAP_FLAG_MAP.items()
        }

    def _parse(self, raw: RawMessage) -> Optional[Message]:
        if not raw.raw:
            return None
        try:
            return email.message_from_bytes(raw.raw, policy=policy.default)
        except Exception as e:
            logger.error(f"Failed to parse message {raw.remote_id}: {e}")
            return None

    def _synthesize_message_id(self, raw: RawMessage, from_email: str,
                               subject: str, date_sent: Optional[datetime]) -> str:
        # Stable across re-fetch: derived from content, not from the remote uid alone
        seed = "|".join([
            from_email.lower(),
            subject,
            date_sent.isoformat() if date_sent else "",
            raw.remote_id if not (from_email or subject or date_sent) else "",
        ])
        digest = hashlib.sha1(seed.encode('utf-8')).hexdigest()[:24]
        return f"<{digest}@generated.studio-inbox>"

    def _decode_header(self, header) -> str:
        """Decode an RFC 2047 header with fallbacks for unknown charsets"""
        if not header:
            return ""
        header = str(header)

        decoded_parts = []
        try:
            parts = decode_header(header)
        except Exception:
            return header

        for part, encoding in parts:
            if isinstance(part, bytes):
                decoded_parts.append(self._decode_bytes(part, encoding))
            else:
                decoded_parts.append(part)

        return _WS_RE.sub(' ', ''.join(decoded_parts))

    def _decode_bytes(self, payload: bytes, charset: Optional[str]) -> str:
        charset = (charset or 'utf-8').lower()
        charset = ENCODING_MAP.get(charset, charset)
        # MIME types occasionally show up as charsets
        if charset.startswith(('text/', 'application/')):
            charset = 'utf-8'
        try:
            return payload.decode(charset, errors='replace')
        except LookupError:
            logger.debug(f"Unknown charset '{charset}', falling back to utf-8")
            return payload.decode('utf-8', errors='replace')

    def _extract_email_with_name(self, header: str) -> Tuple[str, Optional[str]]:
        """
        Extract email address and display name separately.

        Args:
            header: Email header (e.g., "John Doe <john@example.com>")

        Returns:
            (email_address, display_name) tuple
        """
        if not header:
            return ("", None)

        name, addr = parseaddr(self._decode_header(header))
        if name:
            name = name.strip('"').strip("'").strip()
        return (addr.strip(), name or None)

    def _extract_emails_with_names(self, header: str) -> Tuple[List[str], List[str]]:
        """Extract all addresses of a list header with their display names (aligned)"""
        addresses = []
        names = []
        if not header:
            return addresses, names

        for name, addr in getaddresses([self._decode_header(header)]):
            if addr:
                addresses.append(addr.strip())
                clean_name = name.strip('"').strip("'").strip() if name else ""
                names.append(clean_name)
        return addresses, names

    def _parse_date_safe(self, date_str: Optional[str], uid: str) -> Optional[datetime]:
        """
        Parse a Date header into naive UTC.
        Dates more than a day in the future or before 1970 are discarded.
        """
        if not date_str:
            return None
        try:
            parsed = parsedate_to_datetime(str(date_str))
        except (TypeError, ValueError, IndexError) as e:
            logger.warning(f"Message {uid}: failed to parse date '{date_str}': {e}")
            return None
        if parsed is None:
            return None

        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)

        if parsed > utcnow() + timedelta(days=1):
            logger.warning(f"Message {uid}: date {parsed} is in the future, ignoring")
            return None
        if parsed.year < 1970:
            logger.warning(f"Message {uid}: date {parsed} is before 1970, ignoring")
            return None
        return parsed

    def _extract_body(self, msg: Message, uid: str) -> Tuple[Optional[str], Optional[str]]:
        """
        Extract HTML and text body.

        Returns: (html_body, text_body)
        """
        html_body = None
        text_body = None

        parts = msg.walk() if msg.is_multipart() else [msg]
        for part in parts:
            if part.is_multipart() or self._is_attachment_part(part):
                continue
            content_type = part.get_content_type()
            if content_type not in ('text/plain', 'text/html'):
                continue
            try:
                payload = part.get_payload(decode=True)
            except Exception as e:
                logger.debug(f"Message {uid}: undecodable {content_type} part: {e}")
                continue
            if not payload:
                continue
            decoded = self._decode_bytes(payload, part.get_content_charset())
            if content_type == 'text/plain' and text_body is None:
                text_body = decoded
            elif content_type == 'text/html' and html_body is None:
                html_body = decoded

        return html_body, text_body

    def _is_attachment_part(self, part: Message) -> bool:
        """Explicit attachments and inline parts that carry a filename"""
        if part.get_content_maintype() == 'multipart':
            return False
        disposition = part.get_content_disposition()
        if disposition == 'attachment':
            return True
        return bool(part.get_filename())

    def _extract_attachments(self, msg: Message) -> List[AttachmentInfo]:
        infos = []
        for part in msg.walk():
            if not self._is_attachment_part(part):
                continue
            content_type = part.get_content_type()
            filename = part.get_filename() or f"unnamed.{part.get_content_subtype() or 'bin'}"
            try:
                payload = part.get_payload(decode=True) or b""
            except Exception:
                payload = b""
            infos.append(AttachmentInfo(
                filename=self._decode_header(filename).strip(),
                content_type=content_type,
                size=len(payload),
                content_id=(part.get('Content-ID') or None),
            ))
        return infos

    def _html_to_text(self, html: str) -> str:
        """Visible text of an HTML body, entities decoded"""
        soup = BeautifulSoup(html, 'html.parser')
        for tag in soup(["script", "style"]):
            tag.decompose()
        # Tracking pixels
        for tag in soup.find_all(['img'], {'width': '1', 'height': '1'}):
            tag.decompose()
        return _WS_RE.sub(' ', soup.get_text(" ")).strip()

    def _preview(self, body_text: Optional[str]) -> Optional[str]:
        if not body_text:
            return None
        preview = _WS_RE.sub(' ', body_text).strip()
        if len(preview) > PREVIEW_LENGTH:
            preview = preview[:PREVIEW_LENGTH - 3].rstrip() + "..."
        return preview or None

    def _importance(self, headers: Dict[str, str]) -> Importance:
        value = (headers.get('importance') or '').strip().lower()
        if value in ('high', 'low'):
            return Importance(value)
        # X-Priority: 1 (Highest) .. 5 (Lowest)
        priority = (headers.get('x-priority') or '').strip()[:1]
        if priority in ('1', '2'):
            return Importance.HIGH
        if priority in ('4', '5'):
            return Importance.LOW
        return Importance.NORMAL
