#!/usr/bin/env python3
"""
Detection Rule Sync
Pulls the current detection rules per category from the remote policy
service into the local policy store. Meant for cron, e.g. every 15 minutes:

    */15 * * * * mailsentry /opt/mailsentry/venv/bin/mailsentry-sync-rules
"""

import argparse
import logging
import sys

import requests

from mailsentry.config import FilterConfig
from mailsentry.modules.email_database import PolicyDatabaseHandler
from mailsentry.modules.errors import PersistenceError, RemoteSyncError
from mailsentry.modules.policy_sync import PolicySyncClient
from mailsentry.modules.threat_detection import DEFAULT_THRESHOLDS

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def main(argv=None, config=None, session=requests):
    parser = argparse.ArgumentParser(description='Sync MailSentry detection rules from the policy service')
    parser.add_argument('--config', help='Path to filter_config.json')
    parser.add_argument(
        '--category',
        action='append',
        help='Category to sync (repeatable, default: all configured categories)'
    )
    args = parser.parse_args(argv)

    config = config or FilterConfig(config_path=args.config)
    categories = args.category or sorted(set(DEFAULT_THRESHOLDS) | set(config.category_thresholds()))

    try:
        store = PolicyDatabaseHandler.from_config(config)
    except PersistenceError as e:
        logger.error(f"Policy store unavailable: {e}")
        return 1

    client = PolicySyncClient.from_config(config, store, session=session)
    if client is None:
        logger.error("Remote policy service is disabled (api.enabled / api.endpoint)")
        return 1

    try:
        count = client.sync_rules(categories)
    except (RemoteSyncError, PersistenceError) as e:
        logger.error(f"Rule sync failed, local rules unchanged from this point: {e}")
        return 1

    logger.info(f"Synced {count} rule record(s) for {', '.join(categories)}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
