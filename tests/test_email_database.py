from datetime import date

import pytest
from sqlalchemy.exc import OperationalError

from mailsentry.modules.email_database import PolicyDatabaseHandler
from mailsentry.modules.errors import PersistenceError


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_rules_are_ordered_and_disabled_rules_excluded(store):
    store.add_rule("low", "spam", "keyword", "a", 10, priority=1)
    store.add_rule("high", "spam", "keyword", "b", 10, priority=5)
    store.add_rule("tie", "spam", "keyword", "c", 10, priority=5)
    store.add_rule("off", "spam", "keyword", "d", 10, priority=9, enabled=False)
    store.add_rule("phish", "phishing", "keyword", "e", 10)

    names = [rule.name for rule in store.list_rules("spam")]

    assert names == ["high", "tie", "low"]


def test_sync_rule_upserts_by_server_id(store):
    store.sync_rule({"id": 42, "name": "v1", "category": "spam", "detection_type": "keyword",
                     "target": "subject", "pattern": "old", "score": 10})
    store.sync_rule({"id": 42, "name": "v2", "category": "spam", "detection_type": "keyword",
                     "target": "subject", "pattern": "new", "score": 30, "priority": 3})
    store.sync_rule({"name": "local", "threat_category": "spam", "detection_type": "regex",
                     "pattern": "/x/i", "score": 5})

    rules = store.list_rules("spam")

    assert len(rules) == 2
    synced = [r for r in rules if r.server_id == 42][0]
    assert synced.name == "v2"
    assert synced.pattern == "new"
    assert synced.score == 30
    assert synced.priority == 3

    assert store.delete_rule(42) is True
    assert [r.name for r in store.list_rules("spam")] == ["local"]


def test_cache_round_trip_and_expiry(tmp_path):
    clock = FakeClock()
    handler = PolicyDatabaseHandler(f"sqlite:///{tmp_path / 'cache.db'}", clock=clock)

    handler.set_cache("sent_ip_203.0.113.7", True, ttl=60)
    handler.set_cache("rules_version_spam", {"version": 7}, ttl=3600)

    assert handler.get_cache("sent_ip_203.0.113.7") is True
    assert handler.get_cache("rules_version_spam") == {"version": 7}

    clock.now += 120
    assert handler.get_cache("sent_ip_203.0.113.7") is None
    assert handler.get_cache("rules_version_spam") == {"version": 7}

    assert handler.clean_cache() == 1
    handler.close()


def test_cache_is_shared_through_the_table(tmp_path):
    url = f"sqlite:///{tmp_path / 'shared.db'}"
    first = PolicyDatabaseHandler(url)
    second = PolicyDatabaseHandler(url)

    first.set_cache("sent_hash_abc", True, ttl=300)

    assert second.get_cache("sent_hash_abc") is True
    first.close()
    second.close()


def test_stats_increment_atomically(store):
    store.increment_stats("spam")
    store.increment_stats("spam")
    store.increment_stats("quarantine")
    store.increment_stats("clean")

    today = store.get_stats(1)[0]

    assert today["date"] == date.today()
    assert today["total_emails"] == 4
    assert today["spam_emails"] == 2
    assert today["quarantined_emails"] == 1
    assert today["clean_emails"] == 1
    assert today["bounced_emails"] == 0


def test_spam_log(store):
    store.log_spam("alice@example.com", "bob@spam.example.org", "Win big", "<id@x>",
                   "spam score 80 >= 70", "quarantine", 80)

    entry = store.recent_spam_log(1)[0]

    assert entry.recipient == "alice@example.com"
    assert entry.action == "quarantine"
    assert entry.score == 80


def test_fingerprint_search_similar_and_remove(store):
    store.upsert_fingerprint("s1", "b1", "c1", 1, True, "Cheap watches", "Replica watches for sale")
    store.upsert_fingerprint("s2", "b1", "c2", 1, True, "Other subject", "Replica watches for sale")
    store.upsert_fingerprint("s3", "b3", "c3", 1, False, "Team lunch", "See you at noon")

    assert [r.combined_hash for r in store.search_fingerprints("watches")] != []
    assert {r.combined_hash for r in store.similar_fingerprints("s9", "b1")} == {"c1", "c2"}
    assert [r.combined_hash for r in store.list_fingerprints(is_spam=False)] == ["c3"]

    stats = store.fingerprint_stats()
    assert stats["total_patterns"] == 2
    assert stats["clean_patterns"] == 1

    clean_id = store.get_fingerprint("c3").id
    assert store.remove_fingerprint(clean_id) is False
    assert store.remove_fingerprint(store.get_fingerprint("c1").id) is True
    assert store.get_fingerprint("c1") is None


def test_busy_database_is_retried(store):
    delays = []
    store._sleep = delays.append
    store.busy_delay = 0.5
    calls = {"n": 0}

    def flaky(session):
        calls["n"] += 1
        if calls["n"] < 3:
            raise OperationalError("UPDATE spam_hashes", {}, Exception("database is locked"))
        return "done"

    assert store._run(flaky, "test") == "done"
    assert delays == [0.5, 0.5]


def test_busy_retries_are_bounded(store):
    store._sleep = lambda seconds: None
    store.busy_retries = 2

    def always_locked(session):
        raise OperationalError("UPDATE cache", {}, Exception("database is locked"))

    with pytest.raises(PersistenceError):
        store._run(always_locked, "test")


def test_unreachable_database_raises_persistence_error(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("not a directory")

    with pytest.raises(PersistenceError):
        PolicyDatabaseHandler(f"sqlite:///{blocker / 'sub' / 'db.sqlite'}")
