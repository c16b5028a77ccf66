"""
MailSentry configuration management

Builds one nested config dict from built-in defaults, the JSON config file
and environment variables (optionally loaded from a .env file).

Location: /etc/mailsentry/filter_config.json, /etc/mailsentry/.env
"""

import copy
import json
import logging
import os
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv
from sqlalchemy.engine import URL

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = '/etc/mailsentry/filter_config.json'
DEFAULT_ENV_FILE = '/etc/mailsentry/.env'

SPAM_ACTIONS = ('reject', 'quarantine', 'allow', 'headers')
SYSTEM_ERROR_POLICIES = ('pass', 'fail', 'quarantine')
DELIVERY_METHODS = ('smtp', 'sendmail', 'queue-drop', 'pickup', 'lda')

SPAM_THRESHOLD_MIN = 30
SPAM_THRESHOLD_MAX = 90

DEFAULTS: Dict[str, Dict[str, Any]] = {
    "spam": {
        "threshold": 70,
        "action": "quarantine",
        "quarantine_folder": ".Spam",
        "maildir_path_template": "/home/{user}/Maildir",
        "hash_detection": True,
        "subject_tag": "***SPAM***",
        "footer": "",
        "bounce_message": "Your message was rejected by the recipient's content filter.",
    },
    # Fixed thresholds for the non-spam categories
    "categories": {
        "phishing": {"threshold": 50},
        "virus": {"threshold": 80},
    },
    "error": {
        "on_system_error": "pass",
        "max_retries": 3,
        "retry_delay_seconds": 5,
        "fail_safe_mode": True,
        "fail_safe_footer": "WARNING: this message could not be scanned for spam or viruses.",
        "quarantine_dir": "/var/spool/mailsentry/system-error",
    },
    "delivery": {
        "method": "smtp",
        "smtp_host": "127.0.0.1",
        "smtp_port": 10026,
        "helo_name": "localhost",
        "use_tls": False,
        "connect_timeout": 30,
        "timeout": 60,
        "sendmail_path": "/usr/sbin/sendmail",
        "queue_dir": "/var/spool/postfix/maildrop",
        "queue_owner": "postfix",
        "pickup_dir": "/var/spool/mailsentry/pickup",
        "lda_path": "/usr/lib/dovecot/dovecot-lda",
    },
    "mail": {
        "domain": "",
        "aliases_file": "/etc/aliases",
    },
    "database": {
        "url": "",
        "path": "/var/lib/mailsentry/security.db",
        "busy_retries": 5,
        "busy_delay": 0.2,
        "cache_ttl": 300,
    },
    "api": {
        "enabled": False,
        "endpoint": "",
        "client_id": "",
        "api_key": "",
        "timeout": 10,
    },
    "log": {
        "file_path": "/var/log/mailsentry/filter.log",
        "error_log_path": "/var/log/mailsentry/errors/error.log",
        "level": "INFO",
    },
    "fingerprint": {
        "primary_key": "MAILSENTRY_CONTENT_KEY",
        "secondary_key": "MAILSENTRY_ROUTE_KEY",
    },
}


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


# Environment variable -> (section, key, caster)
ENV_OVERRIDES = {
    'MAILSENTRY_SPAM_THRESHOLD': ('spam', 'threshold', int),
    'MAILSENTRY_SPAM_ACTION': ('spam', 'action', str),
    'MAILSENTRY_QUARANTINE_FOLDER': ('spam', 'quarantine_folder', str),
    'MAILSENTRY_MAILDIR_TEMPLATE': ('spam', 'maildir_path_template', str),
    'MAILSENTRY_HASH_DETECTION': ('spam', 'hash_detection', _to_bool),
    'MAILSENTRY_ON_SYSTEM_ERROR': ('error', 'on_system_error', str),
    'MAILSENTRY_MAX_RETRIES': ('error', 'max_retries', int),
    'MAILSENTRY_RETRY_DELAY': ('error', 'retry_delay_seconds', float),
    'MAILSENTRY_FAIL_SAFE': ('error', 'fail_safe_mode', _to_bool),
    'MAILSENTRY_DELIVERY_METHOD': ('delivery', 'method', str),
    'MAILSENTRY_SMTP_HOST': ('delivery', 'smtp_host', str),
    'MAILSENTRY_SMTP_PORT': ('delivery', 'smtp_port', int),
    'MAILSENTRY_SMTP_TIMEOUT': ('delivery', 'timeout', int),
    'MAILSENTRY_MAIL_DOMAIN': ('mail', 'domain', str),
    'MAILSENTRY_DB_URL': ('database', 'url', str),
    'MAILSENTRY_DB_PATH': ('database', 'path', str),
    'MAILSENTRY_API_ENABLED': ('api', 'enabled', _to_bool),
    'MAILSENTRY_API_ENDPOINT': ('api', 'endpoint', str),
    'MAILSENTRY_API_CLIENT_ID': ('api', 'client_id', str),
    'MAILSENTRY_API_KEY': ('api', 'api_key', str),
    'MAILSENTRY_LOG_FILE': ('log', 'file_path', str),
    'MAILSENTRY_ERROR_LOG': ('log', 'error_log_path', str),
    'MAILSENTRY_LOG_LEVEL': ('log', 'level', str),
    'MAILSENTRY_FINGERPRINT_KEY': ('fingerprint', 'primary_key', str),
    'MAILSENTRY_FINGERPRINT_SECONDARY_KEY': ('fingerprint', 'secondary_key', str),
}


# (section, key) -> caster; a bad value falls back to the default with a warning
NUMERIC_SETTINGS = {
    ('error', 'max_retries'): int,
    ('error', 'retry_delay_seconds'): float,
    ('delivery', 'smtp_port'): int,
    ('delivery', 'connect_timeout'): int,
    ('delivery', 'timeout'): int,
    ('database', 'busy_retries'): int,
    ('database', 'busy_delay'): float,
    ('database', 'cache_ttl'): int,
    ('api', 'timeout'): int,
}


class FilterConfig:
    """Centralized configuration management"""

    def __init__(self, config_path: Optional[str] = None, env_file: Optional[str] = None,
                 environ: Optional[Mapping[str, str]] = None,
                 overrides: Optional[Dict[str, Dict[str, Any]]] = None):
        self.config = copy.deepcopy(DEFAULTS)
        # Kept until logging is configured; stderr ends up in MTA bounces
        self.warnings: List[str] = []

        if environ is None:
            load_dotenv(env_file or os.getenv('MAILSENTRY_ENV_FILE', DEFAULT_ENV_FILE))
            environ = os.environ
        self.environ = environ

        self.config_path = config_path or environ.get('MAILSENTRY_CONFIG', DEFAULT_CONFIG_PATH)
        self._load_config_file(self.config_path)
        self._load_environment(environ)
        if overrides:
            self._merge(overrides)
        self._validate()

    def _merge(self, data: Dict[str, Any]):
        for section, values in data.items():
            if isinstance(values, dict) and isinstance(self.config.get(section), dict):
                for key, value in values.items():
                    if isinstance(value, dict) and isinstance(self.config[section].get(key), dict):
                        self.config[section][key].update(value)
                    else:
                        self.config[section][key] = value
            else:
                self.config[section] = values

    def _load_config_file(self, path: str):
        """Load overrides from the JSON config file if present"""
        if not path or not os.path.exists(path):
            return
        try:
            with open(path, 'r') as f:
                data = json.load(f)
            if not isinstance(data, dict):
                self.warnings.append(f"Config file {path} is not a JSON object, ignoring")
                return
            # Keys starting with _comment are documentation only
            data = {k: v for k, v in data.items() if not k.startswith('_comment')}
            self._merge(data)
        except (OSError, ValueError) as e:
            self.warnings.append(f"Could not load config file {path}: {e}")

    def _load_environment(self, environ: Mapping[str, str]):
        for env_name, (section, key, caster) in ENV_OVERRIDES.items():
            raw = environ.get(env_name)
            if raw is None or raw == '':
                continue
            try:
                self.config[section][key] = caster(raw)
            except ValueError:
                self.warnings.append(f"Invalid value for {env_name}: {raw!r}, keeping {self.config[section][key]!r}")

    def _validate(self):
        spam = self.config['spam']
        try:
            threshold = int(spam['threshold'])
        except (TypeError, ValueError):
            self.warnings.append(f"Invalid spam.threshold {spam['threshold']!r}, using 70")
            threshold = DEFAULTS['spam']['threshold']
        clamped = max(SPAM_THRESHOLD_MIN, min(SPAM_THRESHOLD_MAX, threshold))
        if clamped != threshold:
            self.warnings.append(f"spam.threshold {threshold} outside {SPAM_THRESHOLD_MIN}-{SPAM_THRESHOLD_MAX}, using {clamped}")
        spam['threshold'] = clamped

        self._check_choice('spam', 'action', SPAM_ACTIONS)
        self._check_choice('error', 'on_system_error', SYSTEM_ERROR_POLICIES)
        self._check_choice('delivery', 'method', DELIVERY_METHODS)

        error = self.config['error']
        for (section, key), caster in NUMERIC_SETTINGS.items():
            self._coerce(section, key, caster)
        if error['max_retries'] < 1:
            self.warnings.append(f"error.max_retries {error['max_retries']} < 1, using 1")
            error['max_retries'] = 1
        if error['retry_delay_seconds'] < 0:
            error['retry_delay_seconds'] = 0

        self._validate_categories()

    def _coerce(self, section: str, key: str, caster):
        value = self.config[section][key]
        try:
            self.config[section][key] = caster(value)
        except (TypeError, ValueError):
            default = DEFAULTS[section][key]
            self.warnings.append(f"Invalid {section}.{key} {value!r}, using {default!r}")
            self.config[section][key] = default

    def _validate_categories(self):
        categories = self.config.get('categories')
        if not isinstance(categories, dict):
            self.warnings.append(f"Invalid categories {categories!r}, using defaults")
            categories = self.config['categories'] = copy.deepcopy(DEFAULTS['categories'])

        for name, values in list(categories.items()):
            try:
                categories[name] = {**values, 'threshold': int(values['threshold'])}
            except (KeyError, TypeError, ValueError):
                default = DEFAULTS['categories'].get(name, {}).get('threshold')
                if default is None:
                    self.warnings.append(f"Invalid categories.{name} {values!r}, ignoring category")
                    del categories[name]
                else:
                    self.warnings.append(f"Invalid categories.{name} {values!r}, using threshold {default}")
                    categories[name] = {'threshold': default}

    def _check_choice(self, section: str, key: str, choices):
        value = str(self.config[section][key]).lower()
        if value not in choices:
            default = DEFAULTS[section][key]
            self.warnings.append(f"Invalid {section}.{key} {value!r}, using {default!r}")
            value = default
        self.config[section][key] = value

    def get(self, section: str, key: str, default: Any = None) -> Any:
        return self.config.get(section, {}).get(key, default)

    def category_thresholds(self) -> Dict[str, int]:
        """Score thresholds per threat category"""
        thresholds = {'spam': int(self.config['spam']['threshold'])}
        for name, values in self.config.get('categories', {}).items():
            thresholds[name] = values['threshold']
        return thresholds

    @property
    def database_url(self) -> str:
        """SQLAlchemy URL: explicit url, else MySQL from DB_* variables, else SQLite"""
        url = self.config['database'].get('url')
        if url:
            return url
        if self.environ.get('DB_HOST') and self.environ.get('DB_NAME'):
            try:
                port = int(self.environ.get('DB_PORT') or 3306)
            except ValueError:
                logger.warning(f"Invalid DB_PORT {self.environ['DB_PORT']!r}, using 3306")
                port = 3306
            # URL.create escapes credentials that contain @, / or :
            return URL.create(
                'mysql+pymysql',
                username=self.environ.get('DB_USER', 'mailsentry'),
                password=self.environ.get('DB_PASSWORD', ''),
                host=self.environ['DB_HOST'],
                port=port,
                database=self.environ['DB_NAME'],
            ).render_as_string(hide_password=False)
        return f"sqlite:///{self.config['database']['path']}"
