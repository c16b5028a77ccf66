#!/usr/bin/env python3
"""
MailSentry Email Filter

Postfix pipe(8) content filter. Reads one message on stdin, classifies it
(fingerprint short-circuit, then declarative rules), applies the configured
disposition and hands the result to the configured delivery backend. The
whole pipeline is retried a bounded number of times; when every attempt
fails the configured system-error fallback (pass, fail, quarantine) runs
against the original bytes.

Exit codes (sysexits.h):
    0   disposition reached (delivered, tagged, quarantined or bounced)
    65  EX_DATAERR, empty or unparseable input
    75  EX_TEMPFAIL, nothing could be done, Postfix will retry

master.cf:
    mailsentry unix - n n - 10 pipe
      flags=Rq user=mailsentry null_sender=
      argv=/opt/mailsentry/venv/bin/mailsentry-filter --sender=${sender} --recipient=${recipient}
"""

import logging
import os
import sys
import time
from typing import Callable, List, Optional

import requests

from mailsentry.config import FilterConfig
from mailsentry.modules.delivery import (IDEMPOTENCY_HEADER, create_backend,
                                         ensure_idempotency_header, has_idempotency_header,
                                         retry_call)
from mailsentry.modules.disposition import (ClassificationResult, DispositionRouter,
                                            append_footer, safe_header_value)
from mailsentry.modules.email_database import PolicyDatabaseHandler
from mailsentry.modules.errors import (DeliveryError, MailSentryError, ParseError,
                                       PersistenceError, QuarantineError,
                                       RecipientResolutionError, RemoteSyncError,
                                       RetriesExhausted)
from mailsentry.modules.fingerprint import FingerprintClassifier, Verdict
from mailsentry.modules.message_parser import (envelope_sender, extract_client_ip,
                                               parse_message, prepend_header,
                                               resolve_recipient)
from mailsentry.modules.performance import PerformanceMonitor
from mailsentry.modules.policy_sync import PolicySyncClient
from mailsentry.modules.quarantine_manager import (AliasResolver, QuarantineManager,
                                                   SystemErrorArea)
from mailsentry.modules.threat_detection import (RuleCache, RuleHit, ThreatAnalysisResult,
                                                 ThreatDetectionEngine)

EX_OK = 0
EX_DATAERR = 65
EX_TEMPFAIL = 75

FALLBACK_LOG_DIR = '/tmp/mailsentry'
LOG_FORMAT = '%(asctime)s [%(levelname)s] %(process)d %(name)s: %(message)s'

logger = logging.getLogger('mailsentry.email_filter')

# Disposition -> daily stats column
STATS_KIND = {
    'quarantine': 'quarantine',
    'reject': 'bounce',
    'headers': 'spam',
}


# ============================================================================
# LOGGING
# ============================================================================

def safe_log(message: str, level: int = logging.INFO, max_length: int = 500):
    """Log with a length limit; message content can be arbitrarily long"""
    if isinstance(message, str) and len(message) > max_length:
        message = message[:max_length - 3] + "..."
    logger.log(level, message)


def _file_handler(path: str, fallback_name: str) -> logging.FileHandler:
    try:
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        return logging.FileHandler(path)
    except OSError:
        os.makedirs(FALLBACK_LOG_DIR, exist_ok=True)
        return logging.FileHandler(os.path.join(FALLBACK_LOG_DIR, fallback_name))


def setup_logging(config: FilterConfig) -> logging.Logger:
    """
    Send package logs to the filter log, errors additionally to the error log.

    Nothing goes to stderr: Postfix includes pipe stderr in bounces.
    """
    log = config.config['log']
    package_logger = logging.getLogger('mailsentry')
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    level = getattr(logging, str(log['level']).upper(), logging.INFO)
    package_logger.setLevel(level)
    package_logger.propagate = False

    formatter = logging.Formatter(LOG_FORMAT)
    main_handler = _file_handler(log['file_path'], 'filter.log')
    main_handler.setFormatter(formatter)
    package_logger.addHandler(main_handler)

    error_handler = _file_handler(log['error_log_path'], 'error.log')
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)
    package_logger.addHandler(error_handler)

    for warning in config.warnings:
        package_logger.warning(f"Config: {warning}")
    return package_logger


def emergency_logging() -> logging.Logger:
    """Error log in the fallback directory, for when the configuration itself is unusable"""
    package_logger = logging.getLogger('mailsentry')
    package_logger.propagate = False
    try:
        handler = _file_handler(os.path.join(FALLBACK_LOG_DIR, 'error.log'), 'error.log')
    except OSError:
        handler = logging.NullHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    package_logger.addHandler(handler)
    return package_logger


# ============================================================================
# FILTER
# ============================================================================

class MailFilter:
    """One filter invocation: pipeline, retry supervisor and fallback"""

    def __init__(self, config: FilterConfig, store=None, backend=None,
                 argv: Optional[List[str]] = None, environ=None,
                 sleep: Callable[[float], None] = time.sleep,
                 session=requests, hostname: Optional[str] = None,
                 monitor: Optional[PerformanceMonitor] = None):
        self.config = config
        self.argv = list(argv or [])
        self.environ = os.environ if environ is None else environ
        self.sleep = sleep
        self.monitor = monitor or PerformanceMonitor()

        self.store = store if store is not None else self._open_store()

        mail = config.config['mail']
        self.resolver = AliasResolver(mail['aliases_file'], mail['domain'])
        spam = config.config['spam']
        self.quarantine = QuarantineManager(self.resolver, spam['maildir_path_template'],
                                            spam['quarantine_folder'])
        self.router = DispositionRouter(spam['action'], spam['subject_tag'], spam['footer'],
                                        spam['bounce_message'], self.quarantine, hostname)
        self.backend = backend or create_backend(config, self.resolver)
        self.system_errors = SystemErrorArea(config.config['error']['quarantine_dir'])
        self.marker_key = config.config['fingerprint']['primary_key']

        self.classifier = FingerprintClassifier.from_config(self.store, config)
        self.rule_cache = RuleCache(self.store)
        self.engine = ThreatDetectionEngine(self.rule_cache, config.category_thresholds())
        self.sync_client = (PolicySyncClient.from_config(config, self.store, session)
                            if self.store is not None else None)

        self._classification: Optional[ClassificationResult] = None

    def _open_store(self):
        try:
            return PolicyDatabaseHandler.from_config(self.config)
        except PersistenceError as e:
            logger.warning(f"Policy store unavailable, running on rules alone: {e}")
            return None

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def deliver(self, message: bytes, recipient: str, sender: Optional[str]):
        marked = ensure_idempotency_header(message, self.marker_key)
        self.backend.deliver(marked, recipient, sender)

    def classify(self, parsed) -> ClassificationResult:
        """Fingerprint short-circuit, else rule evaluation for every category"""
        if has_idempotency_header(parsed.to_bytes(), self.marker_key):
            logger.info("Message already carries the filter marker, skipping classification")
            return ClassificationResult(source='bypass')
        if parsed.has_header(IDEMPOTENCY_HEADER):
            logger.warning("Ignoring filter marker that does not verify for this message")

        spam = self.config.config['spam']
        subject, body = parsed.subject, parsed.body
        fingerprint = None

        if spam['hash_detection']:
            fingerprint = self.classifier.fingerprint(subject, body)
            verdict = self.classifier.lookup(fingerprint, subject, body)
            if verdict is Verdict.CLEAN:
                return ClassificationResult(source='fingerprint', fingerprint=fingerprint)
            if verdict is Verdict.SPAM:
                threshold = self.engine.categories['spam'].threshold
                hit = ThreatAnalysisResult('spam', threshold,
                                           [RuleHit('fingerprint', threshold, fingerprint.combined_hash[:16])],
                                           threshold)
                return ClassificationResult({'spam': hit}, 'fingerprint', fingerprint)

        results = self.engine.analyze_all(parsed.headers, body)
        self.monitor.record_phase('rules')
        classification = ClassificationResult(results, 'rules', fingerprint)

        if classification.is_threat and fingerprint is not None:
            self.classifier.record(subject, body, Verdict.SPAM, fingerprint)
            self._report(parsed, fingerprint)
        return classification

    def _report(self, parsed, fingerprint):
        if self.sync_client is None:
            return
        try:
            self.sync_client.report_if_new(fingerprint, parsed.subject, parsed.body,
                                           parsed.headers, extract_client_ip(parsed))
        except (RemoteSyncError, PersistenceError) as e:
            logger.warning(f"Spam report skipped: {e}")

    def process(self, raw: bytes) -> str:
        """One full attempt: parse, classify, decide, deliver"""
        parsed = parse_message(raw)
        self.monitor.record_phase('parse')
        recipient = resolve_recipient(parsed, self.argv, self.environ,
                                      self.config.config['mail']['domain'])
        sender = envelope_sender(parsed, self.argv)

        # Classification side effects (counters, reports) happen once per message
        if self._classification is None:
            self._classification = self.classify(parsed)
            self.monitor.record_phase('classify')
        classification = self._classification

        decision = self.router.decide(classification, parsed, recipient, sender)
        action = self.router.execute(decision, self.deliver, parsed)
        self.monitor.record_phase('deliver')
        self.monitor.record_result(classification.source, action, decision.score)
        safe_log(f"{action.upper()}: {recipient} from {sender or '<>'} "
                 f"subject='{parsed.subject[:100]}' ({decision.reason})")
        self._record_outcome(parsed, recipient, sender, classification, decision, action)
        return action

    def _record_outcome(self, parsed, recipient, sender, classification, decision, action):
        if self.store is None:
            return
        try:
            kind = STATS_KIND.get(action, 'spam' if classification.is_threat else 'clean')
            self.store.increment_stats(kind)
            if classification.is_threat:
                self.store.log_spam(recipient, sender or '', parsed.subject,
                                    parsed.get_header('Message-ID', ''), decision.reason,
                                    action, decision.score)
        except PersistenceError as e:
            logger.warning(f"Could not record statistics: {e}")

    # ------------------------------------------------------------------
    # Supervisor
    # ------------------------------------------------------------------

    def run(self, raw: bytes) -> int:
        """Run the pipeline under retry; returns the process exit code"""
        self.monitor.record_email_size(len(raw or b''))
        error = self.config.config['error']

        try:
            retry_call(
                lambda: self.process(raw),
                max_retries=error['max_retries'],
                delay=float(error['retry_delay_seconds']),
                sleep=self.sleep,
                is_retryable=lambda e: not isinstance(e, (ParseError, RecipientResolutionError)),
            )
            return EX_OK
        except ParseError as e:
            logger.error(f"Unparseable message ({len(raw or b'')} bytes): {e}")
            return EX_DATAERR
        except RecipientResolutionError as e:
            logger.error(f"Recipient resolution failed: {e}")
            return self.fallback(raw, e)
        except RetriesExhausted as e:
            logger.error(f"Processing failed after {len(e.attempts)} attempt(s): {e.last_error}",
                         exc_info=e.last_error)
            return self.fallback(raw, e.last_error)

    def fallback(self, raw: bytes, error: Exception) -> int:
        """Apply error.on_system_error to the original message bytes"""
        policy = self.config.config['error']['on_system_error']
        detail = f"{type(error).__name__}: {error}"
        logger.warning(f"Applying system-error policy '{policy}': {detail}")

        try:
            parsed = parse_message(raw)
        except ParseError:
            parsed = None
        sender = envelope_sender(parsed, self.argv) if parsed is not None else None

        try:
            if policy == 'quarantine':
                self.system_errors.store(raw, detail)
                self.monitor.record_result('fallback', 'system-error', 0)
                return EX_OK

            if policy == 'fail':
                sent = self.router.send_bounce(sender, "Your message could not be processed "
                                               "by the recipient's mail filter.", detail,
                                               self.deliver, parsed)
                self.monitor.record_result('fallback', 'bounce' if sent else 'discard', 0)
                return EX_OK

            if parsed is None:
                logger.error("Cannot pass through: original message is unparseable")
                return EX_TEMPFAIL
            recipient = resolve_recipient(parsed, self.argv, self.environ,
                                          self.config.config['mail']['domain'])
            message = raw
            if self.config.config['error']['fail_safe_mode']:
                message = append_footer(parsed, self.config.config['error']['fail_safe_footer'])
                message = prepend_header(message, 'X-System-Error', safe_header_value(detail))
            self.deliver(message, recipient, sender)
            self.monitor.record_result('fallback', 'pass', 0)
            logger.warning(f"Delivered unfiltered message to {recipient}")
            return EX_OK
        except (RecipientResolutionError, DeliveryError, QuarantineError) as e:
            logger.error(f"System-error fallback '{policy}' failed: {e}", exc_info=True)
            return EX_TEMPFAIL


# ============================================================================
# MAIN
# ============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    try:
        config = FilterConfig()
        setup_logging(config)
    except Exception as e:
        emergency_logging()
        logger.critical(f"Filter configuration failed: {e}", exc_info=True)
        return EX_TEMPFAIL

    try:
        raw = sys.stdin.buffer.read()
        mail_filter = MailFilter(config, argv=argv)
        code = mail_filter.run(raw)
        mail_filter.monitor.log_performance(logger.info)
        return code
    except MailSentryError as e:
        logger.critical(f"Filter aborted: {e}", exc_info=True)
        return EX_TEMPFAIL
    except Exception as e:
        logger.critical(f"Unexpected filter failure: {e}", exc_info=True)
        return EX_TEMPFAIL


if __name__ == '__main__':
    sys.exit(main())
