"""
Delivery Module

Hands a filtered message to the next stage of mail delivery. Every backend
implements deliver(message, recipient, sender) and raises DeliveryError on
failure. Also holds the loop-prevention header helpers and the retry
combinator used by the filter supervisor.
"""

import hashlib
import hmac
import logging
import os
import shutil
import smtplib
import socket
import subprocess
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple

from .errors import DeliveryError, RetriesExhausted
from .message_parser import RAW_ENCODING, RAW_ERRORS, parse_headers, prepend_header

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = 'X-Processed-By-Security-Filter'


@dataclass
class DeliveryOutcome:
    backend: str
    success: bool
    attempt: int
    error: Optional[str] = None


@dataclass
class RetryResult:
    value: Any
    attempts: List[DeliveryOutcome] = field(default_factory=list)


def _split_headers(raw: bytes) -> Tuple[bytes, bytes, bytes]:
    """Return (header block, blank-line separator, body); headers only when no blank line"""
    crlf = raw.find(b'\r\n\r\n')
    lf = raw.find(b'\n\n')
    if crlf != -1 and (lf == -1 or crlf <= lf):
        return raw[:crlf], b'\r\n\r\n', raw[crlf + 4:]
    if lf != -1:
        return raw[:lf], b'\n\n', raw[lf + 2:]
    return raw, b'', b''


def _is_marker_line(line: bytes) -> bool:
    return line.lower().startswith(IDEMPOTENCY_HEADER.lower().encode('ascii') + b':')


def marker_token(raw: bytes, key: str) -> str:
    """HMAC over the Message-ID and Subject, so the marker cannot be copied onto other mail"""
    header_block = _split_headers(raw)[0].decode(RAW_ENCODING, RAW_ERRORS)
    headers = {name.lower(): value for name, value in parse_headers(header_block).items()}
    material = f"{headers.get('message-id', '')}\n{headers.get('subject', '')}"
    return hmac.new(key.encode('utf-8'), material.encode(RAW_ENCODING, RAW_ERRORS),
                    hashlib.sha256).hexdigest()


def has_idempotency_header(raw: bytes, key: str) -> bool:
    """True only when a marker header carries the token this filter would stamp"""
    expected = marker_token(raw, key).encode('ascii')
    marker_length = len(IDEMPOTENCY_HEADER) + 1
    for line in _split_headers(raw)[0].splitlines():
        if _is_marker_line(line) and hmac.compare_digest(line[marker_length:].strip(), expected):
            return True
    return False


def strip_idempotency_header(raw: bytes) -> bytes:
    """Drop every marker header line, folded continuations included"""
    header_block, separator, body = _split_headers(raw)
    kept = []
    dropping = False
    for line in header_block.splitlines(keepends=True):
        if dropping and line[:1] in (b' ', b'\t'):
            continue
        dropping = _is_marker_line(line)
        if not dropping:
            kept.append(line)
    return b''.join(kept).rstrip(b'\r\n') + separator + body


def ensure_idempotency_header(raw: bytes, key: str) -> bytes:
    """Mark the message as filtered so a redelivery is not filtered again"""
    if has_idempotency_header(raw, key):
        return raw
    raw = strip_idempotency_header(raw)
    return prepend_header(raw, IDEMPOTENCY_HEADER, marker_token(raw, key))


def retry_call(operation: Callable[[], Any], max_retries: int, delay: float,
               sleep: Callable[[float], None] = time.sleep,
               is_retryable: Callable[[Exception], bool] = lambda e: True,
               label: str = 'pipeline') -> RetryResult:
    """
    Call operation up to max_retries times with a fixed delay between tries.

    Non-retryable exceptions propagate immediately. When every attempt
    fails, RetriesExhausted carries the attempt outcomes and last error.
    """
    attempts: List[DeliveryOutcome] = []
    max_retries = max(1, int(max_retries))
    last_error: Optional[Exception] = None

    for attempt in range(1, max_retries + 1):
        try:
            value = operation()
        except Exception as e:
            if not is_retryable(e):
                raise
            last_error = e
            attempts.append(DeliveryOutcome(label, False, attempt, f"{type(e).__name__}: {e}"))
            logger.warning(f"{label} attempt {attempt}/{max_retries} failed: {type(e).__name__}: {e}")
            if attempt < max_retries and delay > 0:
                sleep(delay)
            continue

        attempts.append(DeliveryOutcome(label, True, attempt))
        logger.info(f"{label} attempt {attempt}/{max_retries} succeeded")
        return RetryResult(value, attempts)

    raise RetriesExhausted(attempts, last_error)


class DeliveryBackend:
    """One way of handing a message on"""
    name = 'base'

    def deliver(self, message: bytes, recipient: str, sender: Optional[str] = None) -> None:
        raise NotImplementedError


class SmtpBackend(DeliveryBackend):
    """Relay to the smart host (normally the MTA's re-injection listener)"""
    name = 'smtp'

    def __init__(self, host: str = '127.0.0.1', port: int = 10026, helo_name: str = 'localhost',
                 use_tls: bool = False, connect_timeout: int = 30, timeout: int = 60,
                 smtp_factory: Callable[..., Any] = smtplib.SMTP):
        self.host = host
        self.port = int(port)
        self.helo_name = helo_name
        self.use_tls = use_tls
        self.connect_timeout = connect_timeout
        self.timeout = timeout
        self.smtp_factory = smtp_factory

    def _expect(self, step: str, reply, accepted):
        code, text = reply
        if code not in accepted:
            if isinstance(text, bytes):
                text = text.decode('utf-8', 'replace')
            raise DeliveryError(self.name, f"{step} rejected by {self.host}:{self.port}: {code} {text}")

    def deliver(self, message: bytes, recipient: str, sender: Optional[str] = None) -> None:
        smtp = None
        try:
            smtp = self.smtp_factory(self.host, self.port, timeout=self.connect_timeout)
            sock = getattr(smtp, 'sock', None)
            if sock is not None:
                sock.settimeout(self.timeout)

            if self.use_tls:
                self._expect('EHLO', smtp.ehlo(self.helo_name), (250,))
                self._expect('STARTTLS', smtp.starttls(), (220,))
                self._expect('EHLO', smtp.ehlo(self.helo_name), (250,))
            else:
                self._expect('HELO', smtp.helo(self.helo_name), (250,))

            self._expect('MAIL FROM', smtp.mail(sender or ''), (250,))
            self._expect('RCPT TO', smtp.rcpt(recipient), (250, 251))
            self._expect('DATA', smtp.data(message), (250,))
            smtp.quit()
            smtp = None
            logger.info(f"Delivered to {recipient} via SMTP {self.host}:{self.port}")
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(self.name, f"{self.host}:{self.port}: {e}") from e
        finally:
            if smtp is not None:
                try:
                    smtp.close()
                except OSError:
                    pass


class SendmailBackend(DeliveryBackend):
    """Inject locally through a sendmail-compatible program"""
    name = 'sendmail'

    def __init__(self, sendmail_path: str = '/usr/sbin/sendmail', timeout: int = 60,
                 runner: Callable[..., Any] = subprocess.run):
        self.sendmail_path = sendmail_path
        self.timeout = timeout
        self.runner = runner

    def deliver(self, message: bytes, recipient: str, sender: Optional[str] = None) -> None:
        cmd = [self.sendmail_path, '-i', '-f', sender or '<>', '--', recipient]
        try:
            result = self.runner(cmd, input=message, capture_output=True, timeout=self.timeout)
        except (OSError, subprocess.SubprocessError) as e:
            raise DeliveryError(self.name, f"{self.sendmail_path}: {e}") from e
        if result.returncode != 0:
            stderr = (result.stderr or b'').decode('utf-8', 'replace').strip()
            raise DeliveryError(self.name, f"exit {result.returncode}: {stderr}")
        logger.info(f"Delivered to {recipient} via {self.sendmail_path}")


def _envelope(message: bytes, recipient: str, sender: Optional[str]) -> bytes:
    message = prepend_header(message, 'X-Envelope-To', recipient)
    return prepend_header(message, 'X-Envelope-From', sender or '<>')


def _spool_filename() -> str:
    now = time.time()
    return f"{int(now)}.{int((now % 1) * 1000000):06d}.{os.getpid()}.{socket.gethostname()}"


class QueueDropBackend(DeliveryBackend):
    """Drop the message straight into the MTA queue directory"""
    name = 'queue-drop'

    def __init__(self, queue_dir: str, owner: Optional[str] = 'postfix', mode: int = 0o644):
        self.queue_dir = queue_dir
        self.owner = owner
        self.mode = mode

    def deliver(self, message: bytes, recipient: str, sender: Optional[str] = None) -> None:
        path = os.path.join(self.queue_dir, _spool_filename())
        try:
            with open(path, 'wb') as f:
                f.write(_envelope(message, recipient, sender))
            os.chmod(path, self.mode)
            if self.owner:
                shutil.chown(path, user=self.owner)
        except (OSError, LookupError) as e:
            raise DeliveryError(self.name, f"{path}: {e}") from e
        logger.info(f"Queued message for {recipient} at {path}")


class PickupBackend(DeliveryBackend):
    """Write into a pickup directory through a temporary name and rename"""
    name = 'pickup'

    def __init__(self, pickup_dir: str):
        self.pickup_dir = pickup_dir

    def deliver(self, message: bytes, recipient: str, sender: Optional[str] = None) -> None:
        filename = _spool_filename()
        tmp_path = os.path.join(self.pickup_dir, f".{filename}.tmp")
        final_path = os.path.join(self.pickup_dir, filename)
        try:
            os.makedirs(self.pickup_dir, exist_ok=True)
            with open(tmp_path, 'wb') as f:
                f.write(_envelope(message, recipient, sender))
            os.rename(tmp_path, final_path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise DeliveryError(self.name, f"{final_path}: {e}") from e
        logger.info(f"Dropped message for {recipient} into {final_path}")


class LdaBackend(DeliveryBackend):
    """Hand the message to the local delivery agent for the recipient's mailbox"""
    name = 'lda'

    def __init__(self, lda_path: str, resolver, timeout: int = 60,
                 runner: Callable[..., Any] = subprocess.run):
        self.lda_path = lda_path
        self.resolver = resolver
        self.timeout = timeout
        self.runner = runner

    def deliver(self, message: bytes, recipient: str, sender: Optional[str] = None) -> None:
        user = self.resolver.resolve(recipient)
        cmd = [self.lda_path, '-d', user, '-a', recipient]
        if sender:
            cmd += ['-f', sender]
        try:
            result = self.runner(cmd, input=message, capture_output=True, timeout=self.timeout)
        except (OSError, subprocess.SubprocessError) as e:
            raise DeliveryError(self.name, f"{self.lda_path}: {e}") from e
        if result.returncode != 0:
            stderr = (result.stderr or b'').decode('utf-8', 'replace').strip()
            raise DeliveryError(self.name, f"exit {result.returncode} for {user}: {stderr}")
        logger.info(f"Delivered to mailbox {user} via {self.lda_path}")


def create_backend(config, resolver=None, runner: Callable[..., Any] = subprocess.run,
                   smtp_factory: Callable[..., Any] = smtplib.SMTP) -> DeliveryBackend:
    """Build the backend selected by delivery.method"""
    d = config.config['delivery']
    method = d['method']
    if method == 'smtp':
        return SmtpBackend(d['smtp_host'], d['smtp_port'], d['helo_name'], d['use_tls'],
                           d['connect_timeout'], d['timeout'], smtp_factory=smtp_factory)
    if method == 'sendmail':
        return SendmailBackend(d['sendmail_path'], d['timeout'], runner=runner)
    if method == 'queue-drop':
        return QueueDropBackend(d['queue_dir'], d['queue_owner'])
    if method == 'pickup':
        return PickupBackend(d['pickup_dir'])
    if method == 'lda':
        if resolver is None:
            raise ValueError("lda delivery needs an alias resolver")
        return LdaBackend(d['lda_path'], resolver, d['timeout'], runner=runner)
    raise ValueError(f"unknown delivery method '{method}'")


