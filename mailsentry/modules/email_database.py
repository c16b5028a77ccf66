#!/usr/bin/env python3
"""
Email Database Module for MailSentry

Policy store shared by every filter invocation: content fingerprints,
detection rules, a key/value cache with expiry, daily statistics and the
spam log. SQLite by default, MySQL through PyMySQL when configured.

Counters are updated with single INSERT ... ON CONFLICT / ON DUPLICATE KEY
statements so concurrent filter processes never read-modify-write.

Location: /opt/mailsentry/mailsentry/modules/email_database.py
"""

import json
import logging
import os
import time
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import (Boolean, Column, Date, DateTime, Index, Integer, String, Text,
                        create_engine, delete, func, or_, select, update)
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from .errors import PersistenceError

logger = logging.getLogger(__name__)

# Base class for database models
Base = declarative_base()

STAT_COLUMNS = {
    'spam': 'spam_emails',
    'clean': 'clean_emails',
    'bounce': 'bounced_emails',
    'quarantine': 'quarantined_emails',
}


class SpamHash(Base):
    """Classification record keyed by combined content hash"""
    __tablename__ = 'spam_hashes'

    id = Column(Integer, primary_key=True, autoincrement=True)
    subject_hash = Column(String(64), index=True)
    body_hash = Column(String(64), index=True)
    combined_hash = Column(String(64), unique=True, nullable=False)
    hash_version = Column(Integer, default=1, nullable=False)
    sample_subject = Column(String(500))
    sample_body_preview = Column(String(200))
    first_seen = Column(DateTime, default=datetime.now)
    last_seen = Column(DateTime, default=datetime.now)
    count = Column(Integer, default=1, nullable=False)
    is_spam = Column(Boolean, default=True, nullable=False)

    def __repr__(self):
        return f"<SpamHash(id={self.id}, combined_hash='{self.combined_hash[:16]}...', count={self.count})>"


class DetectionAlgorithm(Base):
    """Declarative detection rule, optionally mirrored from the policy server"""
    __tablename__ = 'detection_algorithms'
    __table_args__ = (
        Index('idx_detection_algorithms_category', 'threat_category', 'enabled'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    server_id = Column(Integer, unique=True, nullable=True)
    name = Column(String(255), nullable=False)
    threat_category = Column(String(50), nullable=False)
    detection_type = Column(String(50), nullable=False)
    target = Column(String(255), nullable=False, default='subject,body')
    pattern = Column(Text, nullable=False)
    score = Column(Integer, default=0, nullable=False)
    enabled = Column(Boolean, default=True, nullable=False)
    priority = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)
    server_updated_at = Column(DateTime)

    def __repr__(self):
        return f"<DetectionAlgorithm(id={self.id}, name='{self.name}', category='{self.threat_category}')>"


class CacheEntry(Base):
    __tablename__ = 'cache'

    key = Column(String(255), primary_key=True)
    value = Column(Text)
    expires_at = Column(DateTime, index=True)


class EmailStats(Base):
    """Daily counters"""
    __tablename__ = 'email_stats'

    date = Column(Date, primary_key=True)
    total_emails = Column(Integer, default=0, nullable=False)
    spam_emails = Column(Integer, default=0, nullable=False)
    clean_emails = Column(Integer, default=0, nullable=False)
    bounced_emails = Column(Integer, default=0, nullable=False)
    quarantined_emails = Column(Integer, default=0, nullable=False)


class SpamLog(Base):
    __tablename__ = 'spam_log'

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, default=datetime.now, index=True)
    recipient = Column(String(320), nullable=False, index=True)
    sender = Column(String(320))
    subject = Column(String(500))
    message_id = Column(String(255))
    spam_reason = Column(Text)
    action = Column(String(20))
    score = Column(Integer, default=0)


class PolicyDatabaseHandler:
    """Handles policy store operations with short-lived sessions"""

    def __init__(self, url: str, busy_retries: int = 5, busy_delay: float = 0.2,
                 cache_ttl: int = 300, sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.time):
        self.url = url
        self.busy_retries = max(0, int(busy_retries))
        self.busy_delay = float(busy_delay)
        self.cache_ttl = int(cache_ttl)
        self._sleep = sleep
        self._clock = clock
        # Volatile tier of the cache, lives for one invocation
        self._memory: Dict[str, tuple] = {}
        self.engine = None
        self.SessionLocal = None

        self._initialize_database()

    @classmethod
    def from_config(cls, config) -> 'PolicyDatabaseHandler':
        db = config.config['database']
        return cls(config.database_url, busy_retries=db['busy_retries'],
                   busy_delay=db['busy_delay'], cache_ttl=db['cache_ttl'])

    def _initialize_database(self):
        """Create engine, session factory and tables"""
        try:
            if self.url.startswith('sqlite'):
                path = self.url.split(':///', 1)[-1]
                if path and path != ':memory:':
                    directory = os.path.dirname(path)
                    if directory:
                        os.makedirs(directory, exist_ok=True)
                self.engine = create_engine(self.url, connect_args={'timeout': 5})
            else:
                self.engine = create_engine(self.url, pool_pre_ping=True, pool_recycle=3600)

            self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
            Base.metadata.create_all(self.engine)
            logger.debug(f"Policy store ready ({self.engine.dialect.name})")
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceError(f"policy store unavailable: {e}") from e

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def close(self):
        if self.engine is not None:
            self.engine.dispose()

    @contextmanager
    def _session(self):
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _run(self, operation: Callable, description: str):
        """Run operation(session) with bounded retry while the database is locked"""
        attempt = 0
        while True:
            try:
                with self._session() as session:
                    return operation(session)
            except OperationalError as e:
                locked = 'locked' in str(e).lower() or 'busy' in str(e).lower()
                if locked and attempt < self.busy_retries:
                    attempt += 1
                    logger.warning(f"Policy store busy during {description}, retry {attempt}/{self.busy_retries}")
                    self._sleep(self.busy_delay)
                    continue
                raise PersistenceError(f"{description} failed: {e}") from e
            except SQLAlchemyError as e:
                raise PersistenceError(f"{description} failed: {e}") from e

    def _upsert(self, model, values: Dict[str, Any], conflict_columns: List[str],
                updates: Callable[[Any], Dict[str, Any]]):
        """Build a dialect-specific atomic insert-or-update statement"""
        if self.dialect == 'sqlite':
            stmt = sqlite_insert(model).values(**values)
            return stmt.on_conflict_do_update(index_elements=conflict_columns,
                                              set_=updates(stmt.excluded))
        if self.dialect == 'mysql':
            stmt = mysql_insert(model).values(**values)
            return stmt.on_duplicate_key_update(**updates(stmt.inserted))
        raise PersistenceError(f"unsupported database dialect: {self.dialect}")

    # ------------------------------------------------------------------
    # Fingerprints
    # ------------------------------------------------------------------

    def get_fingerprint(self, combined_hash: str) -> Optional[SpamHash]:
        def op(session):
            return session.execute(
                select(SpamHash).where(SpamHash.combined_hash == combined_hash)
            ).scalar_one_or_none()
        return self._run(op, 'fingerprint lookup')

    def touch_fingerprint(self, combined_hash: str) -> int:
        """Count one more occurrence of a known fingerprint"""
        table = SpamHash.__table__

        def op(session):
            result = session.execute(
                update(table)
                .where(table.c.combined_hash == combined_hash)
                .values({'count': table.c['count'] + 1, 'last_seen': datetime.now()})
            )
            return result.rowcount
        return self._run(op, 'fingerprint touch')

    def upsert_fingerprint(self, subject_hash: str, body_hash: str, combined_hash: str,
                           hash_version: int, is_spam: bool, sample_subject: str = '',
                           sample_body_preview: str = '', count: int = 1,
                           first_seen: Optional[datetime] = None):
        """Insert a record, or bump the count and set the verdict of an existing one"""
        table = SpamHash.__table__
        now = datetime.now()
        values = {
            'subject_hash': subject_hash,
            'body_hash': body_hash,
            'combined_hash': combined_hash,
            'hash_version': int(hash_version),
            'sample_subject': (sample_subject or '')[:500],
            'sample_body_preview': (sample_body_preview or '')[:200],
            'first_seen': first_seen or now,
            'last_seen': now,
            'count': count,
            'is_spam': bool(is_spam),
        }

        def updates(new):
            return {
                'count': table.c['count'] + 1,
                'last_seen': now,
                'is_spam': new['is_spam'],
            }

        def op(session):
            session.execute(self._upsert(SpamHash, values, ['combined_hash'], updates))
        self._run(op, 'fingerprint upsert')

    def set_fingerprint_verdict(self, combined_hash: str, is_spam: bool) -> int:
        def op(session):
            result = session.execute(
                update(SpamHash)
                .where(SpamHash.combined_hash == combined_hash)
                .values(is_spam=bool(is_spam))
            )
            return result.rowcount
        return self._run(op, 'fingerprint correction')

    def remove_fingerprint(self, record_id: int, spam_only: bool = True) -> bool:
        def op(session):
            stmt = delete(SpamHash).where(SpamHash.id == record_id)
            if spam_only:
                stmt = stmt.where(SpamHash.is_spam.is_(True))
            return session.execute(stmt).rowcount > 0
        return self._run(op, 'fingerprint removal')

    def list_fingerprints(self, is_spam: bool = True, limit: int = 50) -> List[SpamHash]:
        def op(session):
            return list(session.execute(
                select(SpamHash)
                .where(SpamHash.is_spam.is_(bool(is_spam)))
                .order_by(SpamHash.last_seen.desc())
                .limit(limit)
            ).scalars())
        return self._run(op, 'fingerprint listing')

    def search_fingerprints(self, term: str, limit: int = 20) -> List[SpamHash]:
        like = f"%{term}%"

        def op(session):
            return list(session.execute(
                select(SpamHash)
                .where(SpamHash.is_spam.is_(True))
                .where(or_(SpamHash.sample_subject.like(like), SpamHash.sample_body_preview.like(like)))
                .order_by(SpamHash.count.desc(), SpamHash.last_seen.desc())
                .limit(limit)
            ).scalars())
        return self._run(op, 'fingerprint search')

    def similar_fingerprints(self, subject_hash: str, body_hash: str, limit: int = 10) -> List[SpamHash]:
        """Spam records sharing either the subject or the body hash"""
        def op(session):
            return list(session.execute(
                select(SpamHash)
                .where(SpamHash.is_spam.is_(True))
                .where(or_(SpamHash.subject_hash == subject_hash, SpamHash.body_hash == body_hash))
                .order_by(SpamHash.count.desc(), SpamHash.last_seen.desc())
                .limit(limit)
            ).scalars())
        return self._run(op, 'similar fingerprint search')

    def fingerprint_stats(self) -> Dict[str, Any]:
        def op(session):
            row = session.execute(
                select(
                    func.count(SpamHash.id),
                    func.coalesce(func.sum(SpamHash.count), 0),
                    func.max(SpamHash.count),
                    func.min(SpamHash.first_seen),
                    func.max(SpamHash.last_seen),
                ).where(SpamHash.is_spam.is_(True))
            ).one()
            clean = session.execute(
                select(func.count(SpamHash.id)).where(SpamHash.is_spam.is_(False))
            ).scalar_one()
            return {
                'total_patterns': row[0],
                'total_blocked_emails': int(row[1] or 0),
                'max_blocks_single_pattern': row[2] or 0,
                'oldest_pattern': row[3],
                'newest_block': row[4],
                'clean_patterns': clean,
            }
        return self._run(op, 'fingerprint stats')

    # ------------------------------------------------------------------
    # Detection rules
    # ------------------------------------------------------------------

    def list_rules(self, category: Optional[str] = None, enabled_only: bool = True) -> List[DetectionAlgorithm]:
        """Rules in evaluation order: priority descending, then id"""
        def op(session):
            stmt = select(DetectionAlgorithm)
            if enabled_only:
                stmt = stmt.where(DetectionAlgorithm.enabled.is_(True))
            if category:
                stmt = stmt.where(DetectionAlgorithm.threat_category == category)
            stmt = stmt.order_by(DetectionAlgorithm.priority.desc(), DetectionAlgorithm.id.asc())
            return list(session.execute(stmt).scalars())
        return self._run(op, 'rule listing')

    def add_rule(self, name: str, category: str, detection_type: str, pattern: str,
                 score: int, target: str = 'subject,body', priority: int = 0,
                 enabled: bool = True, server_id: Optional[int] = None) -> int:
        def op(session):
            rule = DetectionAlgorithm(
                server_id=server_id, name=name, threat_category=category,
                detection_type=detection_type, target=target, pattern=pattern,
                score=int(score), enabled=bool(enabled), priority=int(priority),
            )
            session.add(rule)
            session.flush()
            return rule.id
        return self._run(op, 'rule insert')

    def sync_rule(self, data: Dict[str, Any]):
        """Upsert one rule record received from the policy server, keyed by its server id"""
        now = datetime.now()
        values = {
            'server_id': data.get('id'),
            'name': data['name'],
            'threat_category': data.get('threat_category') or data['category'],
            'detection_type': data['detection_type'],
            'target': data.get('target') or 'subject,body',
            'pattern': data['pattern'],
            'score': int(data.get('score', 0)),
            'enabled': bool(int(data.get('enabled', 1))),
            'priority': int(data.get('priority', 0)),
            'created_at': now,
            'updated_at': now,
            'server_updated_at': now,
        }

        if values['server_id'] is None:
            def insert_op(session):
                session.add(DetectionAlgorithm(**values))
            self._run(insert_op, 'rule sync')
            return

        def updates(new):
            return {name: new[name] for name in (
                'name', 'threat_category', 'detection_type', 'target', 'pattern',
                'score', 'enabled', 'priority', 'updated_at', 'server_updated_at')}

        def op(session):
            session.execute(self._upsert(DetectionAlgorithm, values, ['server_id'], updates))
        self._run(op, 'rule sync')

    def delete_rule(self, server_id: int) -> bool:
        def op(session):
            return session.execute(
                delete(DetectionAlgorithm).where(DetectionAlgorithm.server_id == server_id)
            ).rowcount > 0
        return self._run(op, 'rule delete')

    # ------------------------------------------------------------------
    # Two-tier cache
    # ------------------------------------------------------------------

    def get_cache(self, key: str) -> Any:
        cached = self._memory.get(key)
        if cached is not None:
            value, expires = cached
            if expires > self._clock():
                return value
            del self._memory[key]

        now = datetime.fromtimestamp(self._clock())

        def op(session):
            return session.execute(
                select(CacheEntry.value)
                .where(CacheEntry.key == key)
                .where(CacheEntry.expires_at > now)
            ).scalar_one_or_none()
        raw = self._run(op, 'cache read')
        if raw is None:
            return None
        value = json.loads(raw)
        self._memory[key] = (value, self._clock() + self.cache_ttl)
        return value

    def set_cache(self, key: str, value: Any, ttl: Optional[int] = None):
        ttl = self.cache_ttl if ttl is None else int(ttl)
        expires = self._clock() + ttl
        self._memory[key] = (value, expires)
        values = {
            'key': key,
            'value': json.dumps(value),
            'expires_at': datetime.fromtimestamp(expires),
        }

        def op(session):
            session.execute(self._upsert(
                CacheEntry, values, ['key'],
                lambda new: {'value': new['value'], 'expires_at': new['expires_at']}))
        self._run(op, 'cache write')

    def clean_cache(self) -> int:
        """Drop expired entries from both tiers"""
        now_ts = self._clock()
        for key in [k for k, (_, expires) in self._memory.items() if expires <= now_ts]:
            del self._memory[key]

        now = datetime.fromtimestamp(now_ts)

        def op(session):
            return session.execute(delete(CacheEntry).where(CacheEntry.expires_at < now)).rowcount
        return self._run(op, 'cache cleanup')

    # ------------------------------------------------------------------
    # Statistics and spam log
    # ------------------------------------------------------------------

    def increment_stats(self, kind: Optional[str] = None, day: Optional[date] = None):
        """Count one message for today, plus one in the kind's column"""
        table = EmailStats.__table__
        column = STAT_COLUMNS.get(kind)
        values = {'date': day or date.today(), 'total_emails': 1}
        if column:
            values[column] = 1

        def updates(new):
            changes = {'total_emails': table.c.total_emails + 1}
            if column:
                changes[column] = table.c[column] + 1
            return changes

        def op(session):
            session.execute(self._upsert(EmailStats, values, ['date'], updates))
        self._run(op, 'stats update')

    def get_stats(self, days: int = 7) -> List[Dict[str, Any]]:
        since = date.today() - timedelta(days=days)

        def op(session):
            rows = session.execute(
                select(EmailStats).where(EmailStats.date >= since).order_by(EmailStats.date.desc())
            ).scalars()
            return [{
                'date': row.date,
                'total_emails': row.total_emails,
                'spam_emails': row.spam_emails,
                'clean_emails': row.clean_emails,
                'bounced_emails': row.bounced_emails,
                'quarantined_emails': row.quarantined_emails,
            } for row in rows]
        return self._run(op, 'stats read')

    def log_spam(self, recipient: str, sender: str, subject: str, message_id: str,
                 reason: str, action: str, score: int = 0):
        def op(session):
            session.add(SpamLog(
                recipient=recipient or '', sender=(sender or '')[:320],
                subject=(subject or '')[:500], message_id=(message_id or '')[:255],
                spam_reason=reason, action=action, score=int(score),
            ))
        self._run(op, 'spam log')

    def recent_spam_log(self, limit: int = 20) -> List[SpamLog]:
        def op(session):
            return list(session.execute(
                select(SpamLog).order_by(SpamLog.timestamp.desc(), SpamLog.id.desc()).limit(limit)
            ).scalars())
        return self._run(op, 'spam log read')
