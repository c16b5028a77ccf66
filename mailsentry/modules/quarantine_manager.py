#!/usr/bin/env python3
"""
Quarantine Manager Module
Handles spam folder delivery into recipient maildirs and the system-error
holding area used when filtering itself fails.
"""

import datetime
import logging
import os
import shutil
import socket
import time
from typing import Dict, List, Optional

from .errors import QuarantineError, RecipientResolutionError
from .disposition import safe_header_value
from .message_parser import prepend_header

logger = logging.getLogger(__name__)

MAX_ALIAS_DEPTH = 10


class AliasResolver:
    """Maps a recipient address to the local mailbox user through the aliases file"""

    def __init__(self, aliases_file: str = '/etc/aliases', mail_domain: str = ''):
        self.aliases_file = aliases_file
        self.mail_domain = (mail_domain or '').lower()
        self._aliases: Optional[Dict[str, List[str]]] = None

    def _load_aliases(self) -> Dict[str, List[str]]:
        aliases: Dict[str, List[str]] = {}
        if not self.aliases_file or not os.path.exists(self.aliases_file):
            return aliases
        try:
            with open(self.aliases_file, 'r') as f:
                for line in f:
                    line = line.strip()
                    if not line or line.startswith('#') or ':' not in line:
                        continue
                    name, targets = line.split(':', 1)
                    aliases[name.strip().lower()] = [t.strip() for t in targets.split(',') if t.strip()]
        except OSError as e:
            logger.warning(f"Could not read aliases file {self.aliases_file}: {e}")
        return aliases

    @property
    def aliases(self) -> Dict[str, List[str]]:
        if self._aliases is None:
            self._aliases = self._load_aliases()
        return self._aliases

    def resolve(self, recipient: str) -> str:
        """Return the mailbox username for a recipient address"""
        if not recipient or '@' not in recipient:
            raise RecipientResolutionError(f"not an address: {recipient!r}")
        local, domain = recipient.rsplit('@', 1)
        user = local.split('+', 1)[0].lower()
        if not user:
            raise RecipientResolutionError(f"empty local part in {recipient!r}")

        seen = set()
        for _ in range(MAX_ALIAS_DEPTH):
            targets = self.aliases.get(user)
            if not targets or user in seen:
                break
            seen.add(user)
            # Pipes, files and :include: are not mailboxes
            local_targets = [t for t in targets if not t.startswith(('|', '/', ':include:', '"'))]
            if not local_targets:
                break
            target = local_targets[0]
            if '@' in target:
                target_local, target_domain = target.rsplit('@', 1)
                if self.mail_domain and target_domain.lower() != self.mail_domain:
                    break
                target = target_local
            user = target.lower()

        logger.debug(f"Resolved {recipient} to mailbox user {user}")
        return user


def _maildir_filename(suffix: str) -> str:
    now = time.time()
    return f"{int(now)}.M{int((now % 1) * 1000000)}P{os.getpid()}.{socket.gethostname()}.{suffix}"


def ensure_maildir(path: str):
    for sub in ('cur', 'new', 'tmp'):
        os.makedirs(os.path.join(path, sub), mode=0o700, exist_ok=True)


def write_maildir_message(folder: str, message: bytes, suffix: str = 'spam') -> str:
    """Write through tmp/ and rename into new/"""
    ensure_maildir(folder)
    filename = _maildir_filename(suffix)
    tmp_path = os.path.join(folder, 'tmp', filename)
    final_path = os.path.join(folder, 'new', filename)
    with open(tmp_path, 'wb') as f:
        f.write(message)
    os.rename(tmp_path, final_path)
    return final_path


class QuarantineManager:
    """Manage spam folder quarantine operations"""

    def __init__(self, resolver: AliasResolver, maildir_template: str = '/home/{user}/Maildir',
                 folder: str = '.Spam'):
        self.resolver = resolver
        self.maildir_template = maildir_template
        self.folder = folder

    @classmethod
    def from_config(cls, config) -> 'QuarantineManager':
        spam = config.config['spam']
        mail = config.config['mail']
        resolver = AliasResolver(mail['aliases_file'], mail['domain'])
        return cls(resolver, spam['maildir_path_template'], spam['quarantine_folder'])

    def folder_for(self, recipient: str) -> str:
        user = self.resolver.resolve(recipient)
        domain = recipient.rsplit('@', 1)[-1]
        try:
            maildir = self.maildir_template.format(user=user, domain=domain, email=recipient)
        except (KeyError, IndexError) as e:
            raise QuarantineError(f"bad maildir template {self.maildir_template!r}: {e}")
        return os.path.join(maildir, self.folder)

    def store(self, message: bytes, recipient: str, reason: str) -> str:
        """
        Write a message into the recipient's spam folder.

        Raises QuarantineError when the mailbox cannot be resolved or the
        folder cannot be created or written.
        """
        try:
            folder = self.folder_for(recipient)
        except RecipientResolutionError as e:
            raise QuarantineError(f"cannot resolve mailbox for {recipient}: {e}")

        tagged = prepend_header(message, 'X-Quarantine-Reason', safe_header_value(reason))
        try:
            path = write_maildir_message(folder, tagged)
        except OSError as e:
            raise QuarantineError(f"cannot write to {folder}: {e}")

        self._fix_ownership(folder, path, self.resolver.resolve(recipient))
        logger.info(f"Quarantined message for {recipient} to {path}")
        return path

    @staticmethod
    def _fix_ownership(folder: str, path: str, user: str):
        # Only possible when running as root
        if os.geteuid() != 0:
            return
        try:
            for target in (folder, os.path.join(folder, 'cur'), os.path.join(folder, 'new'),
                           os.path.join(folder, 'tmp'), path):
                shutil.chown(target, user=user, group=user)
        except (LookupError, OSError) as e:
            logger.warning(f"Could not hand quarantine file to {user}: {e}")


class SystemErrorArea:
    """Holding area for messages that could not be filtered"""

    def __init__(self, directory: str):
        self.directory = directory

    def store(self, message: bytes, error_detail: str) -> str:
        detail = ' '.join(str(error_detail).split())[:500]
        tagged = prepend_header(message, 'X-System-Error', detail)
        tagged = prepend_header(tagged, 'X-System-Error-Time', datetime.datetime.now().isoformat())
        try:
            path = write_maildir_message(self.directory, tagged, suffix='eml')
        except OSError as e:
            raise QuarantineError(f"cannot write to system-error area {self.directory}: {e}")
        logger.warning(f"Message held in system-error area: {path}")
        return path
