#!/usr/bin/env python3
"""
Spam Pattern Administration
Inspect and maintain the fingerprint table and statistics in the policy store.

Commands:
    list [--clean]           recently seen spam (or clean) patterns
    search TERM              spam patterns whose sample subject/body contain TERM
    remove ID                unblock one spam pattern
    correct FILE --verdict   override the verdict for a message's content
    similar FILE             spam patterns sharing the subject or body of a message
    stats [--days N]         pattern and daily message statistics
    test FILE                classify a message without delivering it
    clean-cache              drop expired cache entries
"""

import argparse
import logging
import sys

from mailsentry.config import FilterConfig
from mailsentry.modules.email_database import PolicyDatabaseHandler
from mailsentry.modules.errors import MailSentryError
from mailsentry.modules.fingerprint import FingerprintClassifier, Verdict
from mailsentry.modules.message_parser import parse_message
from mailsentry.modules.threat_detection import RuleCache, ThreatDetectionEngine

logging.basicConfig(
    level=logging.WARNING,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _load_message(path: str):
    with open(path, 'rb') as f:
        return parse_message(f.read())


def _print_patterns(rows):
    if not rows:
        print("No patterns found")
        return
    for row in rows:
        preview = (row.sample_body_preview or '')[:60]
        print(f"{row.id:>6}  x{row.count:<5} last={row.last_seen:%Y-%m-%d %H:%M}  "
              f"{(row.sample_subject or '')[:50]!r}  {preview!r}")


def cmd_list(store, config, args):
    _print_patterns(store.list_fingerprints(is_spam=not args.clean, limit=args.limit))


def cmd_search(store, config, args):
    _print_patterns(store.search_fingerprints(args.term, limit=args.limit))


def cmd_remove(store, config, args):
    if store.remove_fingerprint(args.id):
        print(f"Removed spam pattern {args.id}")
        return 0
    print(f"No spam pattern with id {args.id}")
    return 1


def cmd_correct(store, config, args):
    message = _load_message(args.file)
    classifier = FingerprintClassifier.from_config(store, config)
    verdict = Verdict(args.verdict)
    if classifier.correct(message.subject, message.body, verdict):
        print(f"Marked as {verdict.value}: {message.subject!r}")
    else:
        classifier.record(message.subject, message.body, verdict)
        print(f"Recorded new {verdict.value} pattern: {message.subject!r}")
    return 0


def cmd_similar(store, config, args):
    message = _load_message(args.file)
    classifier = FingerprintClassifier.from_config(store, config)
    _print_patterns(classifier.similar(message.subject, message.body, args.limit))


def cmd_stats(store, config, args):
    stats = store.fingerprint_stats()
    print(f"Spam patterns:        {stats['total_patterns']}")
    print(f"Clean patterns:       {stats['clean_patterns']}")
    print(f"Blocked messages:     {stats['total_blocked_emails']}")
    print(f"Most blocked pattern: {stats['max_blocks_single_pattern']}")
    print(f"Oldest pattern:       {stats['oldest_pattern'] or '-'}")
    print(f"Newest block:         {stats['newest_block'] or '-'}")
    print()
    print(f"{'date':<12}{'total':>8}{'spam':>8}{'clean':>8}{'bounced':>9}{'quarant.':>10}")
    for day in store.get_stats(args.days):
        print(f"{day['date']!s:<12}{day['total_emails']:>8}{day['spam_emails']:>8}"
              f"{day['clean_emails']:>8}{day['bounced_emails']:>9}{day['quarantined_emails']:>10}")


def cmd_test(store, config, args):
    """Read-only classification: no counters are touched, nothing is delivered"""
    message = _load_message(args.file)
    classifier = FingerprintClassifier.from_config(store, config)
    fingerprint = classifier.fingerprint(message.subject, message.body)
    record = store.get_fingerprint(fingerprint.combined_hash)
    print(f"Subject:     {message.subject!r}")
    print(f"Fingerprint: {fingerprint.combined_hash}")
    if record is not None:
        print(f"Known as:    {Verdict.from_flag(record.is_spam).value} (seen {record.count} times)")

    engine = ThreatDetectionEngine(RuleCache(store), config.category_thresholds())
    threat = False
    for name, result in engine.analyze_all(message.headers, message.body).items():
        flag = 'THREAT' if result.is_threat else 'ok'
        threat = threat or result.is_threat
        print(f"{name:<10} {result.total_score:>4}/{result.threshold:<4} {flag:<7} {result.report}")
    return 2 if threat else 0


def cmd_clean_cache(store, config, args):
    print(f"Removed {store.clean_cache()} expired cache entries")


def build_parser():
    parser = argparse.ArgumentParser(description='Manage MailSentry spam patterns')
    parser.add_argument('--config', help='Path to filter_config.json')
    parser.add_argument('--db-url', help='Override the policy store URL')
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('list', help='List recent spam patterns')
    p.add_argument('--clean', action='store_true', help='List clean patterns instead')
    p.add_argument('--limit', type=int, default=50)
    p.set_defaults(func=cmd_list)

    p = sub.add_parser('search', help='Search spam patterns by text')
    p.add_argument('term')
    p.add_argument('--limit', type=int, default=20)
    p.set_defaults(func=cmd_search)

    p = sub.add_parser('remove', help='Remove (unblock) a spam pattern')
    p.add_argument('id', type=int)
    p.set_defaults(func=cmd_remove)

    p = sub.add_parser('correct', help='Override the verdict for a message')
    p.add_argument('file', help='Raw message file')
    p.add_argument('--verdict', choices=[v.value for v in Verdict], required=True)
    p.set_defaults(func=cmd_correct)

    p = sub.add_parser('similar', help='Spam patterns sharing subject or body')
    p.add_argument('file', help='Raw message file')
    p.add_argument('--limit', type=int, default=10)
    p.set_defaults(func=cmd_similar)

    p = sub.add_parser('stats', help='Pattern and daily statistics')
    p.add_argument('--days', type=int, default=7)
    p.set_defaults(func=cmd_stats)

    p = sub.add_parser('test', help='Classify a message without delivering it')
    p.add_argument('file', help='Raw message file')
    p.set_defaults(func=cmd_test)

    p = sub.add_parser('clean-cache', help='Drop expired cache entries')
    p.set_defaults(func=cmd_clean_cache)
    return parser


def main(argv=None, config=None):
    args = build_parser().parse_args(argv)
    config = config or FilterConfig(config_path=args.config)
    if args.db_url:
        config.config['database']['url'] = args.db_url

    try:
        store = PolicyDatabaseHandler.from_config(config)
        return args.func(store, config, args) or 0
    except (MailSentryError, OSError) as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
