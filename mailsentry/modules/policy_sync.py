"""
Policy Sync Module

Client for the remote policy service: pulls detection rules per category
and reports newly seen spam content and source addresses, each at most
once per 24 hours (tracked through the policy store cache).
"""

import logging
import socket
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional

import requests

from .errors import RemoteSyncError

logger = logging.getLogger(__name__)

SENT_TTL = 86400
VERSION_TTL = 30 * 86400


class PolicySyncClient:
    """Talks JSON over HTTPS to the policy service"""

    def __init__(self, endpoint: str, client_id: str, api_key: str, store,
                 session=requests, timeout: int = 10, hostname: Optional[str] = None):
        self.endpoint = (endpoint or '').rstrip('/')
        self.client_id = client_id
        self.api_key = api_key
        self.store = store
        self.session = session
        self.timeout = timeout
        self.hostname = hostname or socket.gethostname()

    @classmethod
    def from_config(cls, config, store, session=requests) -> Optional['PolicySyncClient']:
        api = config.config['api']
        if not api['enabled'] or not api['endpoint']:
            return None
        return cls(api['endpoint'], api['client_id'], api['api_key'], store,
                   session=session, timeout=api['timeout'])

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
            "X-Client-ID": self.client_id,
        }

    def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.endpoint}{path}"
        try:
            response = getattr(self.session, method)(url, headers=self._headers(),
                                                     timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise RemoteSyncError(f"{method.upper()} {path} failed: {e}") from e

        if response.status_code != 200:
            raise RemoteSyncError(f"{method.upper()} {path} returned HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as e:
            raise RemoteSyncError(f"{method.upper()} {path} returned invalid JSON: {e}") from e

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def sync_rules(self, categories: Iterable[str], rule_cache=None) -> int:
        """Pull the current rule set for each category and upsert it locally"""
        synced = 0
        for category in categories:
            version_key = f"rules_version_{category}"
            version = self.store.get_cache(version_key) or 0
            payload = self._request('get', '/rules', params={
                'category': category,
                'client_id': self.client_id,
                'version': version,
            })

            if isinstance(payload, Mapping):
                records = payload.get('rules', [])
                new_version = payload.get('version', version)
            elif isinstance(payload, list):
                records, new_version = payload, version
            else:
                raise RemoteSyncError(f"unexpected rules payload for {category}: {type(payload).__name__}")

            for record in records:
                self._apply_rule(category, record)
                synced += 1

            self.store.set_cache(version_key, new_version, VERSION_TTL)
            logger.info(f"Synced {len(records)} {category} rule(s), version {new_version}")

        if rule_cache is not None:
            rule_cache.invalidate()
        return synced

    def _apply_rule(self, category: str, record: Mapping[str, Any]):
        if not isinstance(record, Mapping):
            raise RemoteSyncError(f"malformed rule record: {record!r}")
        if record.get('deleted') and record.get('id') is not None:
            self.store.delete_rule(int(record['id']))
            return
        data = dict(record)
        data.setdefault('category', category)
        missing = [key for key in ('name', 'detection_type', 'pattern') if not data.get(key)]
        if missing:
            raise RemoteSyncError(f"rule record missing {', '.join(missing)}: {record!r}")
        self.store.sync_rule(data)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _report(self, subject: str, body: str, headers: Mapping[str, str], metadata: Dict[str, Any]):
        self._request('post', '/spam/report', json={
            'hostname': self.hostname,
            'client_id': self.client_id,
            'subject': subject,
            'body': body,
            'headers': dict(headers),
            'metadata': metadata,
            'timestamp': int(time.time()),
        })

    def report_if_new(self, fingerprint, subject: str, body: str,
                      headers: Mapping[str, str], client_ip: Optional[str] = None) -> List[str]:
        """
        Report spam content once per fingerprint and the source once per IP.

        Returns the kinds of report actually sent ('content', 'ip').
        """
        sent = []
        hash_key = f"sent_hash_{fingerprint.combined_hash}"
        if self.store.get_cache(hash_key) is None:
            metadata = {
                'type': 'content_hash',
                'subject_hash': fingerprint.subject_hash,
                'body_hash': fingerprint.body_hash,
                'combined_hash': fingerprint.combined_hash,
            }
            if client_ip:
                metadata['client_ip'] = client_ip
            self._report(subject, body, headers, metadata)
            self.store.set_cache(hash_key, True, SENT_TTL)
            sent.append('content')

        if client_ip:
            ip_key = f"sent_ip_{client_ip}"
            if self.store.get_cache(ip_key) is None:
                self._report(subject, body, headers, {
                    'type': 'ip_report',
                    'client_ip': client_ip,
                    'subject_hash': fingerprint.subject_hash,
                    'body_hash': fingerprint.body_hash,
                })
                self.store.set_cache(ip_key, True, SENT_TTL)
                sent.append('ip')

        if sent:
            logger.info(f"Reported {', '.join(sent)} for {fingerprint.combined_hash[:12]}")
        return sent
