"""
IMAP/SMTP transport.

Incoming mail via IMAPClient, outgoing via smtplib. Both libraries block,
so every public coroutine hands the work to a worker thread with
asyncio.to_thread; one IMAP connection is opened per fetch and closed
afterwards.

Watermarks have the form ``<UIDVALIDITY>:<UID>``. A changed UIDVALIDITY
invalidates the watermark and the folder is fetched as if new.
"""
import asyncio
import logging
import smtplib
import socket
import ssl
import time
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, format_datetime
from typing import Dict, List, Optional, Sequence, Tuple

from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError, LoginError

from studio_inbox.core.config import get_settings
from .errors import MailConnectionError
from .models import ComposedMessage, ConnectionTestResult, RawMessage, to_naive_utc
from .transport import ConnectionConfig, FolderRef, MailTransport, validate_connection_config

logger = logging.getLogger(__name__)

FETCH_BATCH_SIZE = 100
FLAG_HEADER_FIELDS = 'BODY.PEEK[HEADER.FIELDS (MESSAGE-ID FROM SUBJECT DATE)]'
FLAG_HEADER_KEY = b'BODY[HEADER.FIELDS (MESSAGE-ID FROM SUBJECT DATE)]'

RETRYABLE_PATTERNS = (
    'timed out', 'timeout', 'connection reset', 'connection refused',
    'broken pipe', 'network', 'temporary', 'unavailable', 'eof',
)


def parse_watermark(value: Optional[str]) -> Tuple[Optional[int], Optional[int]]:
    """'<uidvalidity>:<uid>' -> (uidvalidity, uid); anything else -> (None, None)"""
    if not value or ':' not in value:
        return None, None
    validity, _, uid = value.partition(':')
    try:
        return int(validity), int(uid)
    except ValueError:
        return None, None


def _is_retryable(error: Exception) -> bool:
    if isinstance(error, (socket.timeout, ConnectionError)):
        return True
    message = str(error).lower()
    return any(pattern in message for pattern in RETRYABLE_PATTERNS)


class ImapTransport(MailTransport):
    """MailTransport for IMAP/SMTP servers (password or pre-issued OAuth2 token)"""

    def __init__(self, timeout: Optional[int] = None, fetch_limit: Optional[int] = None,
                 max_connect_attempts: int = 3, retry_base_delay: float = 2.0):
        """
        Args:
            timeout: Network timeout in seconds (default: IMAP_TIMEOUT_SECONDS)
            fetch_limit: Max new messages per folder pass (default: SYNC_FETCH_LIMIT)
            max_connect_attempts: Connection attempts for retryable network errors
            retry_base_delay: First backoff delay; doubles per attempt
        """
        settings = get_settings()
        self.timeout = timeout or settings.imap_timeout_seconds
        self.smtp_timeout = settings.smtp_timeout_seconds
        self.fetch_limit = fetch_limit or settings.sync_fetch_limit
        self.max_connect_attempts = max_connect_attempts
        self.retry_base_delay = retry_base_delay

    # ------------------------------------------------------------------
    # MailTransport
    # ------------------------------------------------------------------

    async def test_connection(self, config: ConnectionConfig) -> ConnectionTestResult:
        config = config.with_provider_defaults()
        validate_connection_config(config)
        return await asyncio.to_thread(self._test_connection_sync, config)

    async def fetch_messages(self, account: ConnectionConfig, folder: FolderRef,
                             since: Optional[str]) -> List[RawMessage]:
        return await asyncio.to_thread(self._fetch_sync, account, folder, since)

    async def send_message(self, account: ConnectionConfig, message: ComposedMessage) -> str:
        return await asyncio.to_thread(self._send_sync, account, message)

    def next_watermark(self, previous: Optional[str], messages: Sequence[RawMessage]) -> Optional[str]:
        best = parse_watermark(previous)
        for raw in messages:
            if raw.flags_only:
                continue
            validity, uid = parse_watermark(raw.remote_id)
            if uid is None:
                continue
            if best[0] != validity or best[1] is None or uid > best[1]:
                best = (validity, uid)
        if best[1] is None:
            return previous
        return f"{best[0]}:{best[1]}"

    # ------------------------------------------------------------------
    # IMAP
    # ------------------------------------------------------------------

    def connect(self, config: ConnectionConfig) -> IMAPClient:
        """
        Open and authenticate an IMAP connection, retrying network errors
        with exponential backoff. Login failures are not retried.

        Raises:
            MailConnectionError
        """
        last_error = None
        for attempt in range(self.max_connect_attempts):
            if attempt > 0:
                wait_time = self.retry_base_delay * (2 ** (attempt - 1))
                logger.info(f"Retry {attempt}/{self.max_connect_attempts - 1}: waiting {wait_time}s before reconnecting...")
                time.sleep(wait_time)

            try:
                logger.info(f"Connecting to IMAP server {config.incoming_server}:{config.incoming_port} "
                            f"(timeout: {self.timeout}s, attempt {attempt + 1}/{self.max_connect_attempts})")
                use_ssl = config.incoming_security in ('ssl', 'tls')
                client = IMAPClient(
                    host=config.incoming_server,
                    port=config.incoming_port,
                    ssl=use_ssl,
                    timeout=self.timeout,
                )
                if config.incoming_security == 'starttls':
                    client.starttls(ssl.create_default_context())

                if config.auth_type == 'oauth2':
                    client.oauth2_login(config.login, config.secret)
                else:
                    client.login(config.login, config.secret)
                # Aware datetimes for INTERNALDATE
                client.normalise_times = False
                logger.info(f"Successfully logged in as {config.login}")
                return client

            except LoginError as e:
                logger.error(f"IMAP login rejected for {config.login}: {e}")
                raise MailConnectionError(
                    f"Authentication failed for {config.login}",
                    details={"permanent": True},
                ) from e
            except (IMAPClientError, OSError) as e:
                last_error = e
                if _is_retryable(e) and attempt < self.max_connect_attempts - 1:
                    logger.warning(f"Connection attempt {attempt + 1} failed (retryable): {e}")
                    continue
                logger.error(f"Connection to {config.incoming_server} failed: {e}")
                break

        raise MailConnectionError(
            f"Cannot connect to {config.incoming_server}:{config.incoming_port}: {last_error}"
        ) from last_error

    def disconnect(self, client: Optional[IMAPClient]):
        if client is None:
            return
        try:
            client.logout()
        except Exception as e:
            logger.debug(f"Error during logout: {e}")

    def _test_connection_sync(self, config: ConnectionConfig) -> ConnectionTestResult:
        details: Dict[str, str] = {}
        client = None
        try:
            client = self.connect(config)
            folders = client.list_folders()
            details["imap"] = f"ok ({len(folders)} folders)"
        except MailConnectionError as e:
            return ConnectionTestResult(success=False, message=e.message, details={"imap": "failed"})
        finally:
            self.disconnect(client)

        try:
            server = self._smtp_connect(config)
            server.quit()
            details["smtp"] = "ok"
        except MailConnectionError as e:
            details["smtp"] = "failed"
            return ConnectionTestResult(success=False, message=e.message, details=details)

        return ConnectionTestResult(success=True, message="Connection successful", details=details)

    def _fetch_sync(self, config: ConnectionConfig, folder: FolderRef, since: Optional[str]) -> List[RawMessage]:
        client = self.connect(config)
        try:
            try:
                status = client.select_folder(folder.remote_name, readonly=True)
            except IMAPClientError as e:
                raise MailConnectionError(f"Cannot open folder {folder.remote_name}: {e}") from e

            validity = int(status.get(b'UIDVALIDITY', 0) or 0)
            known_validity, last_uid = parse_watermark(since)
            if known_validity is not None and known_validity != validity:
                logger.warning(f"UIDVALIDITY of {folder.remote_name} changed ({known_validity} -> {validity}), refetching")
                last_uid = None

            all_uids = sorted(client.search(['ALL']))
            if last_uid is None:
                # First pass: most recent messages only
                new_uids = all_uids[-self.fetch_limit:]
                old_uids = []
            else:
                new_uids = [uid for uid in all_uids if uid > last_uid][:self.fetch_limit]
                old_uids = [uid for uid in all_uids if uid <= last_uid][-self.fetch_limit:]

            logger.info(f"{folder.remote_name}: {len(new_uids)} new, {len(old_uids)} to reconcile")
            messages = self._fetch_full(client, validity, new_uids)
            messages.extend(self._fetch_flags(client, validity, old_uids))
            return messages

        except (IMAPClientError, OSError) as e:
            raise MailConnectionError(f"IMAP error in {folder.remote_name}: {e}") from e
        finally:
            self.disconnect(client)

    def _fetch_full(self, client: IMAPClient, validity: int, uids: List[int]) -> List[RawMessage]:
        messages = []
        for i in range(0, len(uids), FETCH_BATCH_SIZE):
            batch = uids[i:i + FETCH_BATCH_SIZE]
            data = client.fetch(batch, ['BODY.PEEK[]', 'FLAGS', 'INTERNALDATE', 'RFC822.SIZE'])
            for uid in batch:
                item = data.get(uid)
                if not item:
                    logger.warning(f"No data returned for message {uid}")
                    continue
                raw = item.get(b'BODY[]') or item.get(b'RFC822')
                messages.append(RawMessage(
                    remote_id=f"{validity}:{uid}",
                    raw=raw,
                    flags=self._flag_names(item.get(b'FLAGS', ())),
                    size=item.get(b'RFC822.SIZE'),
                    internal_date=self._internal_date(item.get(b'INTERNALDATE')),
                ))
        return messages

    def _fetch_flags(self, client: IMAPClient, validity: int, uids: List[int]) -> List[RawMessage]:
        messages = []
        for i in range(0, len(uids), FETCH_BATCH_SIZE):
            batch = uids[i:i + FETCH_BATCH_SIZE]
            data = client.fetch(batch, ['FLAGS', FLAG_HEADER_FIELDS, 'INTERNALDATE'])
            for uid in batch:
                item = data.get(uid)
                if not item:
                    continue
                messages.append(RawMessage(
                    remote_id=f"{validity}:{uid}",
                    raw=item.get(FLAG_HEADER_KEY) or None,
                    flags=self._flag_names(item.get(b'FLAGS', ())),
                    internal_date=self._internal_date(item.get(b'INTERNALDATE')),
                    flags_only=True,
                ))
        return messages

    @staticmethod
    def _flag_names(flags) -> List[str]:
        return [f.decode() if isinstance(f, bytes) else str(f) for f in flags]

    @staticmethod
    def _internal_date(value) -> Optional[datetime]:
        if not isinstance(value, datetime):
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return to_naive_utc(value)

    # ------------------------------------------------------------------
    # SMTP
    # ------------------------------------------------------------------

    def _smtp_connect(self, config: ConnectionConfig) -> smtplib.SMTP:
        try:
            if config.outgoing_security == 'ssl':
                server = smtplib.SMTP_SSL(config.outgoing_server, config.outgoing_port, timeout=self.smtp_timeout)
            else:
                server = smtplib.SMTP(config.outgoing_server, config.outgoing_port, timeout=self.smtp_timeout)
                if config.outgoing_security in ('starttls', 'tls'):
                    server.starttls()

            if config.auth_type == 'oauth2':
                token = f"user={config.login}\x01auth=Bearer {config.secret}\x01\x01"
                server.auth('XOAUTH2', lambda challenge=None: token)
            else:
                server.login(config.login, config.secret)
            return server

        except smtplib.SMTPAuthenticationError as e:
            raise MailConnectionError(
                f"SMTP authentication failed for {config.login}",
                details={"permanent": True},
            ) from e
        except (smtplib.SMTPException, OSError) as e:
            raise MailConnectionError(
                f"Cannot connect to {config.outgoing_server}:{config.outgoing_port}: {e}"
            ) from e

    def build_mime(self, config: ConnectionConfig, message: ComposedMessage):
        if message.body_html:
            msg = MIMEMultipart('alternative')
            msg.attach(MIMEText(message.body_text or "", 'plain', 'utf-8'))
            msg.attach(MIMEText(message.body_html, 'html', 'utf-8'))
        else:
            msg = MIMEText(message.body_text or "", 'plain', 'utf-8')

        msg['From'] = formataddr((message.from_name or "", message.from_email))
        msg['To'] = ', '.join(message.to_emails)
        if message.cc_emails:
            msg['Cc'] = ', '.join(message.cc_emails)
        msg['Subject'] = message.subject
        msg['Message-ID'] = message.message_id
        msg['Date'] = format_datetime(datetime.now(timezone.utc))

        # Threading headers (for replies)
        if message.in_reply_to:
            msg['In-Reply-To'] = message.in_reply_to
        if message.references:
            msg['References'] = message.references
        elif message.in_reply_to:
            msg['References'] = message.in_reply_to

        if message.importance.value == 'high':
            msg['Importance'] = 'High'
            msg['X-Priority'] = '1'
        elif message.importance.value == 'low':
            msg['Importance'] = 'Low'
            msg['X-Priority'] = '5'
        return msg

    def _send_sync(self, config: ConnectionConfig, message: ComposedMessage) -> str:
        recipients = list(message.to_emails) + list(message.cc_emails) + list(message.bcc_emails)
        if not recipients:
            raise MailConnectionError("Message has no recipients", details={"permanent": True})

        msg = self.build_mime(config, message)
        server = self._smtp_connect(config)
        try:
            server.send_message(msg, from_addr=message.from_email, to_addrs=recipients)
        except smtplib.SMTPRecipientsRefused as e:
            raise MailConnectionError(f"Recipients refused: {', '.join(e.recipients)}",
                                      details={"permanent": True}) from e
        except (smtplib.SMTPException, OSError) as e:
            raise MailConnectionError(f"SMTP error sending {message.message_id}: {e}") from e
        finally:
            try:
                server.quit()
            except (smtplib.SMTPException, OSError):
                pass

        logger.info(f"Message sent to {len(recipients)} recipient(s): {message.subject}")
        logger.debug(f"Message-ID: {message.message_id}")
        return message.message_id
