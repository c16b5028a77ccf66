"""MailSentry - Postfix content filter with rule scoring and fingerprint dedup"""

__version__ = "1.2.0"
