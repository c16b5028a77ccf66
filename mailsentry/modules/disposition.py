"""
Disposition Module

Maps a classification plus the configured spam action to one outcome
(allow, headers, quarantine, reject), applies the message transforms for
it and carries it out through the delivery callable.
"""

import logging
import math
import re
import socket
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import Callable, Dict, List, Optional

from .errors import QuarantineError
from .message_parser import ParsedMessage, RAW_ENCODING, RAW_ERRORS
from .threat_detection import ThreatAnalysisResult

logger = logging.getLogger(__name__)

ACTIONS = ('allow', 'headers', 'quarantine', 'reject')
# Highest first when several categories cross their threshold
CATEGORY_PRECEDENCE = ('virus', 'phishing', 'spam')
SPAM_HEADERS = ('X-Spam-Flag', 'X-Spam-Score', 'X-Spam-Level', 'X-Spam-Status', 'X-Spam-Report')
MAX_HEADER_VALUE = 200
HEADER_START = re.compile(r'^([!-9;-~]+):')

Deliver = Callable[[bytes, str, Optional[str]], None]


@dataclass
class ClassificationResult:
    results: Dict[str, ThreatAnalysisResult] = field(default_factory=dict)
    source: str = 'rules'
    fingerprint: Optional[object] = None

    @property
    def primary(self) -> Optional[ThreatAnalysisResult]:
        """The threat result driving the disposition, if any category fired"""
        threats = {name: r for name, r in self.results.items() if r.is_threat}
        if not threats:
            return None
        for name in CATEGORY_PRECEDENCE:
            if name in threats:
                return threats[name]
        return max(threats.values(), key=lambda r: r.total_score)

    @property
    def is_threat(self) -> bool:
        return self.primary is not None


@dataclass
class ProcessingDecision:
    action: str
    reason: str
    message: bytes
    recipient: str
    sender: Optional[str] = None
    bounce_to: Optional[str] = None
    category: Optional[str] = None
    score: int = 0


def spam_level(score) -> str:
    return '*' * max(0, min(10, math.floor(score)))


def safe_header_value(value, max_length: int = MAX_HEADER_VALUE) -> str:
    """Single-line ASCII header value, truncated"""
    text = str(value).encode('ascii', errors='replace').decode('ascii')
    text = re.sub(r'[\r\n\t\x00-\x1f\x7f]', ' ', text).strip()
    if len(text) > max_length:
        text = text[:max_length - 3] + "..."
    return text


def _header_lines(header_block: str) -> List[List[str]]:
    """Group physical header lines into logical headers (first line + continuations)"""
    groups: List[List[str]] = []
    for line in header_block.splitlines():
        if groups and (line[:1].isspace() or not HEADER_START.match(line)):
            groups[-1].append(line)
        else:
            groups.append([line])
    return groups


def _header_name(group: List[str]) -> str:
    match = HEADER_START.match(group[0])
    return match.group(1).lower() if match else ''


def _rebuild(message: ParsedMessage, groups: List[List[str]], body: str) -> bytes:
    eol = message.line_ending
    header_block = eol.join(line for group in groups for line in group)
    return (header_block + eol + eol + body).encode(RAW_ENCODING, RAW_ERRORS)


def append_footer(message: ParsedMessage, footer: str) -> bytes:
    """Body plus the footer once, after the original content"""
    if not footer:
        return message.to_bytes()
    eol = message.line_ending
    footer_text = eol.join(footer.splitlines())
    body = message.body
    if body.rstrip().endswith(footer_text.rstrip()):
        return message.to_bytes()
    if body and not body.endswith(eol):
        body += eol
    body += footer_text + eol
    return _rebuild(message, _header_lines(message.header_block), body)


def tag_headers(message: ParsedMessage, result: ThreatAnalysisResult, subject_tag: str) -> bytes:
    """Add X-Spam-* headers and prefix the subject with the tag once"""
    wanted = {name.lower() for name in SPAM_HEADERS}
    groups = [g for g in _header_lines(message.header_block) if _header_name(g) not in wanted]

    subject = message.subject
    if subject_tag and not subject.startswith(subject_tag):
        new_subject = f"{subject_tag} {subject}".strip()
        subject_line = [f"Subject: {new_subject}"]
        for index, group in enumerate(groups):
            if _header_name(group) == 'subject':
                groups[index] = subject_line
                break
        else:
            groups.append(subject_line)

    status = (f"Yes, score={result.total_score} required={result.threshold} "
              f"category={result.category}")
    groups.extend([
        ["X-Spam-Flag: YES"],
        [f"X-Spam-Score: {result.total_score}"],
        [f"X-Spam-Level: {spam_level(result.total_score)}"],
        [f"X-Spam-Status: {safe_header_value(status)}"],
        [f"X-Spam-Report: {safe_header_value(result.report or 'fingerprint match')}"],
    ])
    return _rebuild(message, groups, message.body)


def build_bounce(original: ParsedMessage, to: str, text: str, reason: str,
                 hostname: Optional[str] = None) -> bytes:
    """Non-delivery report for the sender of a rejected message"""
    hostname = hostname or socket.getfqdn()
    bounce = EmailMessage()
    bounce['From'] = f"MAILER-DAEMON@{hostname}"
    bounce['To'] = to
    bounce['Subject'] = "Undelivered Mail Returned to Sender"
    bounce['Date'] = formatdate(localtime=True)
    bounce['Message-ID'] = make_msgid(domain=hostname)
    bounce['Auto-Submitted'] = 'auto-replied'

    original_headers = ''
    if original is not None:
        original_headers = (original.header_block.encode(RAW_ENCODING, RAW_ERRORS)
                            .decode('utf-8', 'replace').replace('\r\n', '\n'))
    content = (
        f"{text}\n\n"
        f"Reason: {reason}\n\n"
        f"----- Original message headers -----\n"
        f"{original_headers}\n"
    )
    bounce.set_content(content)
    return bounce.as_bytes()


class DispositionRouter:
    """Decides and applies the per-message disposition"""

    def __init__(self, action: str = 'quarantine', subject_tag: str = '***SPAM***',
                 footer: str = '', bounce_message: str = '', quarantine=None,
                 hostname: Optional[str] = None):
        if action not in ACTIONS:
            raise ValueError(f"unknown spam action '{action}'")
        self.action = action
        self.subject_tag = subject_tag
        self.footer = footer
        self.bounce_message = bounce_message
        self.quarantine = quarantine
        self.hostname = hostname

    @classmethod
    def from_config(cls, config, quarantine) -> 'DispositionRouter':
        spam = config.config['spam']
        return cls(spam['action'], spam['subject_tag'], spam['footer'],
                   spam['bounce_message'], quarantine)

    def decide(self, classification: ClassificationResult, message: ParsedMessage,
               recipient: str, sender: Optional[str]) -> ProcessingDecision:
        primary = classification.primary
        if primary is None:
            return ProcessingDecision('allow', 'clean', append_footer(message, self.footer),
                                      recipient, sender)

        reason = (f"{primary.category} score {primary.total_score} >= {primary.threshold}"
                  f" ({classification.source}: {primary.report or 'fingerprint match'})")
        decision = ProcessingDecision(self.action, reason, message.to_bytes(), recipient, sender,
                                      category=primary.category, score=primary.total_score)

        if self.action == 'allow':
            decision.message = append_footer(message, self.footer)
        elif self.action == 'headers':
            decision.message = tag_headers(message, primary, self.subject_tag)
        elif self.action == 'reject':
            decision.bounce_to = sender

        logger.info(f"Disposition {decision.action} for {recipient}: {reason}")
        return decision

    def execute(self, decision: ProcessingDecision, deliver: Deliver,
                original: Optional[ParsedMessage] = None) -> str:
        """Carry out a decision; returns the action actually taken"""
        if decision.action in ('allow', 'headers'):
            deliver(decision.message, decision.recipient, decision.sender)
            return decision.action

        if decision.action == 'quarantine':
            try:
                self.quarantine.store(decision.message, decision.recipient, decision.reason)
                return 'quarantine'
            except QuarantineError as e:
                logger.error(f"Quarantine failed for {decision.recipient}, rejecting instead: {e}")
                decision.action = 'reject'
                decision.bounce_to = decision.sender

        self.send_bounce(decision.bounce_to, self.bounce_message, decision.reason, deliver, original)
        return 'reject'

    def send_bounce(self, to: Optional[str], text: str, reason: str, deliver: Deliver,
                    original: Optional[ParsedMessage] = None) -> bool:
        """Bounce through the normal delivery path with a null envelope sender"""
        if not to:
            logger.warning(f"No sender to bounce to, message discarded: {reason}")
            return False
        bounce = build_bounce(original, to, text, reason, self.hostname)
        deliver(bounce, to, None)
        logger.info(f"Bounce sent to {to}")
        return True
