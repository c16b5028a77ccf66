"""
Fingerprint Classifier Module

Keyed, date-scoped content hashes used to recognise messages that were
already classified, so repeats skip the rule engine entirely.

Version 1 chains three HMAC-SHA256 steps: primary key over subject|body,
secondary key over that, then the current date (YYYY-MM-DD) as key. The
same content therefore hashes differently on different days. Legacy
records (plain SHA256 of subject hash + body hash) are still honoured and
migrated to version 1 the first time they match.
"""

import hashlib
import hmac
import logging
import re
from dataclasses import dataclass
from datetime import date
from enum import Enum, IntEnum
from typing import Optional, Tuple

from bs4 import BeautifulSoup

from .errors import PersistenceError

logger = logging.getLogger(__name__)

DEFAULT_KEYS = ('MAILSENTRY_CONTENT_KEY', 'MAILSENTRY_ROUTE_KEY')
PREVIEW_LENGTH = 200
WHITESPACE = re.compile(r'\s+')
# Tags and comments only; character references stay as written so legacy hashes match
MARKUP = re.compile(r'<!--.*?-->|<[A-Za-z/!?][^>]*>', re.S)


class HashVersion(IntEnum):
    LEGACY = 0
    V1 = 1


class Verdict(Enum):
    SPAM = 'spam'
    CLEAN = 'clean'

    @property
    def is_spam(self) -> bool:
        return self is Verdict.SPAM

    @classmethod
    def from_flag(cls, is_spam) -> 'Verdict':
        return cls.SPAM if is_spam else cls.CLEAN


@dataclass(frozen=True)
class Fingerprint:
    subject_hash: str
    body_hash: str
    combined_hash: str
    version: HashVersion = HashVersion.V1

    @property
    def legacy_combined_hash(self) -> str:
        return legacy_hash(self.subject_hash, self.body_hash)


def normalize_subject(subject: str) -> str:
    return (subject or '').strip().lower()


def normalize_body(body: str) -> str:
    """Strip tags, collapse whitespace runs to one space, trim. Entities are not decoded."""
    return WHITESPACE.sub(' ', MARKUP.sub('', body or '')).strip()


def body_preview(body: str) -> str:
    """Readable sample for operators: markup dropped, entities decoded"""
    body = body or ''
    if '<' in body:
        body = BeautifulSoup(body, 'html.parser').get_text()
    return WHITESPACE.sub(' ', body).strip()[:PREVIEW_LENGTH]


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode('utf-8', 'surrogateescape')).hexdigest()


def _hmac(key: str, text: str) -> str:
    return hmac.new(key.encode('utf-8'), text.encode('utf-8', 'surrogateescape'),
                    hashlib.sha256).hexdigest()


def legacy_hash(subject_hash: str, body_hash: str) -> str:
    """Unkeyed, undated combined hash written by older releases"""
    return _sha256(subject_hash + body_hash)


def compute_fingerprint(subject: str, body: str, today: Optional[date] = None,
                        keys: Tuple[str, str] = DEFAULT_KEYS) -> Fingerprint:
    clean_subject = normalize_subject(subject)
    clean_body = normalize_body(body)
    day = (today or date.today()).strftime('%Y-%m-%d')

    primary_key, secondary_key = keys
    step1 = _hmac(primary_key, f"{clean_subject}|{clean_body}")
    step2 = _hmac(secondary_key, step1)
    combined = _hmac(day, step2)

    return Fingerprint(
        subject_hash=_sha256(clean_subject),
        body_hash=_sha256(clean_body),
        combined_hash=combined,
        version=HashVersion.V1,
    )


class FingerprintClassifier:
    """Looks up and records verdicts for content fingerprints"""

    def __init__(self, store, keys: Tuple[str, str] = DEFAULT_KEYS, today=None):
        self.store = store
        self.keys = keys
        # Callable returning the date used for version 1 hashes
        self._today = today or date.today

    @classmethod
    def from_config(cls, store, config) -> 'FingerprintClassifier':
        fp = config.config['fingerprint']
        return cls(store, keys=(fp['primary_key'], fp['secondary_key']))

    def fingerprint(self, subject: str, body: str) -> Fingerprint:
        return compute_fingerprint(subject, body, today=self._today(), keys=self.keys)

    def lookup(self, fingerprint: Fingerprint, subject: str = '', body: str = '') -> Optional[Verdict]:
        """
        Return the stored verdict for a fingerprint, or None.

        A version 1 hit counts one more occurrence. On a miss the legacy hash
        is tried; a legacy hit writes a version 1 record with the same
        verdict and samples before returning.
        """
        if self.store is None:
            return None
        try:
            record = self.store.get_fingerprint(fingerprint.combined_hash)
            if record is not None:
                self.store.touch_fingerprint(fingerprint.combined_hash)
                verdict = Verdict.from_flag(record.is_spam)
                logger.info(f"Fingerprint hit {fingerprint.combined_hash[:12]}: {verdict.value} "
                            f"(seen {record.count + 1} times)")
                return verdict

            legacy = self.store.get_fingerprint(fingerprint.legacy_combined_hash)
            if legacy is None:
                return None

            verdict = Verdict.from_flag(legacy.is_spam)
            self.store.upsert_fingerprint(
                subject_hash=fingerprint.subject_hash,
                body_hash=fingerprint.body_hash,
                combined_hash=fingerprint.combined_hash,
                hash_version=HashVersion.V1,
                is_spam=verdict.is_spam,
                sample_subject=legacy.sample_subject or subject,
                sample_body_preview=legacy.sample_body_preview or body_preview(body),
                count=(legacy.count or 0) + 1,
                first_seen=legacy.first_seen,
            )
            logger.info(f"Legacy fingerprint {legacy.combined_hash[:12]} migrated to "
                        f"{fingerprint.combined_hash[:12]}: {verdict.value}")
            return verdict
        except PersistenceError as e:
            logger.warning(f"Fingerprint lookup unavailable, continuing with rules: {e}")
            return None

    def record(self, subject: str, body: str, verdict: Verdict,
               fingerprint: Optional[Fingerprint] = None) -> Optional[Fingerprint]:
        """Insert or count a fingerprint; a repeat keeps history and takes the new verdict"""
        fingerprint = fingerprint or self.fingerprint(subject, body)
        if self.store is None:
            return fingerprint
        try:
            self.store.upsert_fingerprint(
                subject_hash=fingerprint.subject_hash,
                body_hash=fingerprint.body_hash,
                combined_hash=fingerprint.combined_hash,
                hash_version=fingerprint.version,
                is_spam=verdict.is_spam,
                sample_subject=subject,
                sample_body_preview=body_preview(body),
            )
            logger.debug(f"Recorded fingerprint {fingerprint.combined_hash[:12]} as {verdict.value}")
        except PersistenceError as e:
            logger.warning(f"Could not record fingerprint: {e}")
        return fingerprint

    def correct(self, subject: str, body: str, verdict: Verdict) -> bool:
        """
        Override the verdict for content (false positive / false negative).

        Counters are left alone. When only a legacy record exists it is
        upgraded to a version 1 record carrying the corrected verdict.
        """
        fingerprint = self.fingerprint(subject, body)
        if self.store.set_fingerprint_verdict(fingerprint.combined_hash, verdict.is_spam):
            logger.info(f"Corrected fingerprint {fingerprint.combined_hash[:12]} to {verdict.value}")
            return True

        legacy = self.store.get_fingerprint(fingerprint.legacy_combined_hash)
        if legacy is None:
            return False
        self.store.set_fingerprint_verdict(legacy.combined_hash, verdict.is_spam)
        self.store.upsert_fingerprint(
            subject_hash=fingerprint.subject_hash,
            body_hash=fingerprint.body_hash,
            combined_hash=fingerprint.combined_hash,
            hash_version=HashVersion.V1,
            is_spam=verdict.is_spam,
            sample_subject=legacy.sample_subject or subject,
            sample_body_preview=legacy.sample_body_preview or body_preview(body),
            count=legacy.count or 1,
            first_seen=legacy.first_seen,
        )
        logger.info(f"Corrected legacy fingerprint {legacy.combined_hash[:12]} to {verdict.value}")
        return True

    def similar(self, subject: str, body: str, limit: int = 10):
        fingerprint = self.fingerprint(subject, body)
        return self.store.similar_fingerprints(fingerprint.subject_hash, fingerprint.body_hash, limit)
