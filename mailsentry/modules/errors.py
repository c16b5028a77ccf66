"""
Error types raised by the MailSentry filter modules.

The top-level filter decides what is fatal: parse errors abort the run,
recipient and delivery errors go through the system-error fallback, rule and
persistence errors only degrade detection.
"""


class MailSentryError(Exception):
    """Base class for all filter errors"""


class ParseError(MailSentryError):
    """Raw input is empty or has no header/body separator"""


class RecipientResolutionError(MailSentryError):
    """No usable recipient address could be determined"""


class RecipientNotFound(RecipientResolutionError):
    pass


class RuleCompilationError(MailSentryError):
    """A detection algorithm could not be turned into a matcher"""

    def __init__(self, rule_name: str, reason: str):
        self.rule_name = rule_name
        self.reason = reason
        super().__init__(f"rule '{rule_name}': {reason}")


class PersistenceError(MailSentryError):
    """Policy store unavailable or a query failed"""


class DeliveryError(MailSentryError):
    """A delivery backend could not hand the message on"""

    def __init__(self, backend: str, detail: str):
        self.backend = backend
        self.detail = detail
        super().__init__(f"{backend}: {detail}")


class RetriesExhausted(MailSentryError):
    """Every attempt of a retried operation failed"""

    def __init__(self, attempts, last_error: Exception):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"gave up after {len(attempts)} attempt(s): {last_error}")


class QuarantineError(MailSentryError):
    """Message could not be written to a holding area"""


class RemoteSyncError(MailSentryError):
    """Remote policy service request failed"""
