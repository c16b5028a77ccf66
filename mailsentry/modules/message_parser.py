"""
Message Parser Module

Splits the raw message handed over by Postfix into a header map and body,
and works out who the message is actually for.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Optional

from email_validator import EmailNotValidError, validate_email

from .errors import ParseError, RecipientNotFound

logger = logging.getLogger(__name__)

HEADER_LINE = re.compile(r'^([!-9;-~]+):[ \t]*(.*)$')
EMAIL_SHAPED = re.compile(r'[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}')
ANGLE_ADDRESS = re.compile(r'<([^<>\s]+)>')
RECEIVED_IP = re.compile(r'\[(\d{1,3}(?:\.\d{1,3}){3})\]')

RECIPIENT_HEADERS = ('To', 'Delivered-To', 'X-Original-To')
RECIPIENT_ENV_VARS = ('ORIGINAL_RECIPIENT', 'RECIPIENT', 'MAILSENTRY_RECIPIENT')
SENDER_HEADERS = ('from', 'sender', 'reply-to', 'return-path')

# Non-ASCII bytes survive decode/encode unchanged
RAW_ENCODING = 'utf-8'
RAW_ERRORS = 'surrogateescape'


@dataclass(frozen=True)
class ParsedMessage:
    """Header map plus raw body of one inbound message"""
    headers: Dict[str, str] = field(default_factory=dict)
    header_block: str = ''
    body: str = ''
    raw_size: int = 0
    line_ending: str = '\n'

    @property
    def subject(self) -> str:
        return self.get_header('Subject', '')

    @property
    def sender(self) -> str:
        return self.get_header('From', '')

    def get_header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Exact-case lookup first, then case-insensitive"""
        if name in self.headers:
            return self.headers[name]
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default

    def has_header(self, name: str) -> bool:
        return self.get_header(name) is not None

    def to_bytes(self) -> bytes:
        text = self.header_block + self.line_ending + self.line_ending + self.body
        return text.encode(RAW_ENCODING, RAW_ERRORS)


def _split_header_body(raw: bytes):
    """Return (header bytes, body bytes, line ending) split on the first blank line"""
    crlf = raw.find(b'\r\n\r\n')
    lf = raw.find(b'\n\n')
    if crlf == -1 and lf == -1:
        raise ParseError("no blank line between headers and body")
    if crlf != -1 and (lf == -1 or crlf <= lf):
        return raw[:crlf], raw[crlf + 4:], '\r\n'
    return raw[:lf], raw[lf + 2:], '\n'


def parse_headers(header_block: str) -> Dict[str, str]:
    """Parse 'Name: value' lines; anything else continues the previous header"""
    headers: Dict[str, str] = {}
    current = None
    for line in header_block.splitlines():
        match = HEADER_LINE.match(line)
        if match and not line[:1].isspace():
            current = match.group(1)
            headers[current] = match.group(2).strip()
        elif current is not None:
            continuation = line.strip()
            if continuation:
                headers[current] = f"{headers[current]} {continuation}".strip()
    return headers


def parse_message(raw: bytes) -> ParsedMessage:
    """Build a ParsedMessage from raw bytes read off stdin"""
    if not raw or not raw.strip():
        raise ParseError("empty message")

    header_bytes, body_bytes, line_ending = _split_header_body(raw)
    header_block = header_bytes.decode(RAW_ENCODING, RAW_ERRORS)
    headers = parse_headers(header_block)
    if not headers:
        raise ParseError("no parseable header lines")

    return ParsedMessage(
        headers=headers,
        header_block=header_block,
        body=body_bytes.decode(RAW_ENCODING, RAW_ERRORS),
        raw_size=len(raw),
        line_ending=line_ending,
    )


def detect_line_ending(raw: bytes) -> str:
    return '\r\n' if b'\r\n' in raw[:4096] else '\n'


def prepend_header(raw: bytes, name: str, value: str) -> bytes:
    """Put a header line in front of the existing header block"""
    eol = detect_line_ending(raw)
    return f"{name}: {value}{eol}".encode(RAW_ENCODING, RAW_ERRORS) + raw


def normalize_address(value: str) -> Optional[str]:
    """
    Pull one usable address out of a header or argument value.

    Prefers an address in angle brackets, then a value that validates as an
    address on its own, then the first email-shaped substring.
    """
    if not value:
        return None
    value = value.strip()

    bracketed = ANGLE_ADDRESS.search(value)
    if bracketed and EMAIL_SHAPED.fullmatch(bracketed.group(1)):
        return bracketed.group(1)

    try:
        return validate_email(value, check_deliverability=False).normalized
    except EmailNotValidError:
        pass

    shaped = EMAIL_SHAPED.search(value)
    if shaped:
        return shaped.group(0)
    return None


def _argument_value(argv: Iterable[str], option: str) -> Optional[str]:
    prefix = f"--{option}="
    for arg in argv:
        if arg.startswith(prefix):
            return arg[len(prefix):]
    return None


def resolve_recipient(message: ParsedMessage, argv: Iterable[str] = (),
                      environ: Optional[Mapping[str, str]] = None,
                      mail_domain: str = '') -> str:
    """Work through the recipient sources in order until one yields an address"""
    argv = list(argv)
    environ = environ or {}

    for name in RECIPIENT_HEADERS:
        address = normalize_address(message.get_header(name, ''))
        if address:
            logger.debug(f"Recipient from {name} header: {address}")
            return address

    for var in RECIPIENT_ENV_VARS:
        address = normalize_address(environ.get(var, ''))
        if address:
            logger.debug(f"Recipient from environment {var}: {address}")
            return address

    address = normalize_address(_argument_value(argv, 'recipient') or '')
    if address:
        logger.debug(f"Recipient from --recipient: {address}")
        return address

    for arg in argv:
        if arg.startswith('--') or '@' not in arg:
            continue
        address = normalize_address(arg)
        if address:
            logger.debug(f"Recipient from argument: {address}")
            return address

    if mail_domain:
        suffix = '@' + mail_domain.lower()
        for name, value in message.headers.items():
            if name.lower() in SENDER_HEADERS:
                continue
            for candidate in EMAIL_SHAPED.findall(value):
                if candidate.lower().endswith(suffix):
                    logger.debug(f"Recipient from {name} header on {mail_domain}: {candidate}")
                    return candidate

    raise RecipientNotFound("no recipient in headers, environment or arguments")


def envelope_sender(message: ParsedMessage, argv: Iterable[str] = ()) -> Optional[str]:
    """--sender= argument, then Return-Path, then From"""
    explicit = _argument_value(argv, 'sender')
    if explicit is not None:
        return normalize_address(explicit)
    for name in ('Return-Path', 'From'):
        value = message.get_header(name, '')
        if value.strip() == '<>':
            return None
        address = normalize_address(value)
        if address:
            return address
    return None


def extract_client_ip(message: ParsedMessage) -> Optional[str]:
    """First bracketed IPv4 address in the Received header"""
    received = message.get_header('Received', '')
    match = RECEIVED_IP.search(received)
    return match.group(1) if match else None
