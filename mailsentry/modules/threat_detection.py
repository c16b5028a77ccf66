"""
Threat Detection Module

Declarative, score-based detection. Each rule record from the policy store
is compiled once into a typed matcher; one generic evaluator sums the
scores of matching rules per category and compares against the category
threshold (inclusive).
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Union

from .errors import PersistenceError, RuleCompilationError

logger = logging.getLogger(__name__)

DETECTION_TYPES = ('keyword', 'regex', 'domain', 'header_check', 'url_scan')
TARGET_FIELDS = ('subject', 'body', 'from', 'headers')
REGEX_DELIMITERS = '/#~!@%|'
URL_HOST = re.compile(r'https?://([^/\s]+)', re.IGNORECASE)

# PHP-style trailing modifiers; 'u' is implied by Python str patterns
REGEX_FLAGS = {
    'i': re.IGNORECASE,
    'm': re.MULTILINE,
    's': re.DOTALL,
    'x': re.VERBOSE,
    'u': 0,
}

DEFAULT_THRESHOLDS = {'spam': 70, 'phishing': 50, 'virus': 80}


@dataclass(frozen=True)
class ThreatCategory:
    name: str
    threshold: int


@dataclass(frozen=True)
class RuleHit:
    algorithm_name: str
    score: int
    pattern: str


@dataclass
class ThreatAnalysisResult:
    category: str
    threshold: int
    matches: List[RuleHit] = field(default_factory=list)
    total_score: int = 0

    @property
    def is_threat(self) -> bool:
        return self.total_score >= self.threshold

    @property
    def report(self) -> str:
        return ', '.join(f"{hit.algorithm_name}={hit.score}" for hit in self.matches)


# ----------------------------------------------------------------------------
# Typed matchers
# ----------------------------------------------------------------------------

@dataclass(frozen=True)
class KeywordMatcher:
    needle: str

    def matches(self, content: str, headers: Mapping[str, str]) -> bool:
        return self.needle in content.lower()


@dataclass(frozen=True)
class RegexMatcher:
    regex: 're.Pattern'

    def matches(self, content: str, headers: Mapping[str, str]) -> bool:
        return self.regex.search(content) is not None


@dataclass(frozen=True)
class DomainMatcher:
    needle: str

    def matches(self, content: str, headers: Mapping[str, str]) -> bool:
        return any(self.needle in host.lower() for host in URL_HOST.findall(content))


@dataclass(frozen=True)
class UrlMatcher(DomainMatcher):
    pass


@dataclass(frozen=True)
class HeaderMatcher:
    needle: str

    def matches(self, content: str, headers: Mapping[str, str]) -> bool:
        return self.needle in serialize_headers(headers).lower()


Matcher = Union[KeywordMatcher, RegexMatcher, DomainMatcher, UrlMatcher, HeaderMatcher]


@dataclass(frozen=True)
class CompiledRule:
    id: Optional[int]
    name: str
    category: str
    targets: tuple
    pattern: str
    score: int
    priority: int
    matcher: Matcher

    def matches(self, headers: Mapping[str, str], body: str) -> bool:
        return self.matcher.matches(target_content(self.targets, headers, body), headers)


def compile_regex(pattern: str) -> 're.Pattern':
    """
    Compile a rule pattern.

    A pattern whose first character is a known delimiter and which closes
    with the same delimiter (optionally followed by modifiers) is used as
    written; anything else is matched case-insensitively as-is.
    """
    if len(pattern) >= 2 and pattern[0] in REGEX_DELIMITERS:
        delimiter = pattern[0]
        end = pattern.rfind(delimiter)
        modifiers = pattern[end + 1:]
        if end > 0 and re.fullmatch(r'[A-Za-z]*', modifiers):
            flags = 0
            for modifier in modifiers:
                if modifier not in REGEX_FLAGS:
                    raise ValueError(f"unsupported regex modifier '{modifier}'")
                flags |= REGEX_FLAGS[modifier]
            body = pattern[1:end].replace('\\' + delimiter, delimiter)
            return re.compile(body, flags)
    return re.compile(pattern, re.IGNORECASE)


def compile_rule(record) -> CompiledRule:
    """Turn a DetectionAlgorithm record (ORM object or dict) into a CompiledRule"""
    get = record.get if isinstance(record, Mapping) else lambda key, default=None: getattr(record, key, default)

    name = get('name') or 'unnamed'
    detection_type = (get('detection_type') or '').strip().lower()
    pattern = get('pattern') or ''

    if detection_type not in DETECTION_TYPES:
        raise RuleCompilationError(name, f"unknown detection type '{detection_type}'")
    if not pattern:
        raise RuleCompilationError(name, "empty pattern")

    try:
        score = int(get('score', 0) or 0)
    except (TypeError, ValueError):
        raise RuleCompilationError(name, f"score is not an integer: {get('score')!r}")
    if score < 0:
        raise RuleCompilationError(name, f"negative score {score}")

    targets = tuple(t.strip().lower() for t in (get('target') or '').split(',')
                    if t.strip().lower() in TARGET_FIELDS)

    if detection_type == 'keyword':
        matcher = KeywordMatcher(pattern.lower())
    elif detection_type == 'regex':
        try:
            matcher = RegexMatcher(compile_regex(pattern))
        except (re.error, ValueError) as e:
            raise RuleCompilationError(name, f"invalid regex {pattern!r}: {e}")
    elif detection_type == 'domain':
        matcher = DomainMatcher(pattern.lower())
    elif detection_type == 'url_scan':
        matcher = UrlMatcher(pattern.lower())
    else:
        matcher = HeaderMatcher(pattern.lower())

    return CompiledRule(
        id=get('id'),
        name=name,
        category=get('threat_category') or get('category') or '',
        targets=targets,
        pattern=pattern,
        score=score,
        priority=int(get('priority', 0) or 0),
        matcher=matcher,
    )


def serialize_headers(headers: Mapping[str, str]) -> str:
    return json.dumps(dict(headers))


def _header(headers: Mapping[str, str], name: str) -> str:
    if name in headers:
        return headers[name] or ''
    for key, value in headers.items():
        if key.lower() == name.lower():
            return value or ''
    return ''


def target_content(targets: Iterable[str], headers: Mapping[str, str], body: str) -> str:
    """Selected fields joined by single spaces, trimmed"""
    content = ''
    for target in targets:
        if target == 'subject':
            content += ' ' + _header(headers, 'Subject')
        elif target == 'body':
            content += ' ' + (body or '')
        elif target == 'from':
            content += ' ' + _header(headers, 'From')
        elif target == 'headers':
            content += ' ' + serialize_headers(headers)
    return content.strip()


def evaluate(category: ThreatCategory, rules: Iterable[CompiledRule],
             headers: Mapping[str, str], body: str) -> ThreatAnalysisResult:
    """Sum the scores of every matching rule and compare against the threshold"""
    result = ThreatAnalysisResult(category=category.name, threshold=category.threshold)
    for rule in rules:
        if rule.matches(headers, body):
            result.matches.append(RuleHit(rule.name, rule.score, rule.pattern))
            result.total_score += rule.score
    logger.debug(f"{category.name}: score {result.total_score}/{category.threshold} "
                 f"from {len(result.matches)} rule(s)")
    return result


class RuleCache:
    """Compiled rules per category, loaded once from the policy store"""

    def __init__(self, store):
        self.store = store
        self._rules: Dict[str, List[CompiledRule]] = {}

    def get(self, category: str) -> List[CompiledRule]:
        if category not in self._rules:
            self._rules[category] = self._load(category)
        return self._rules[category]

    def _load(self, category: str) -> List[CompiledRule]:
        if self.store is None:
            return []
        try:
            records = self.store.list_rules(category)
        except PersistenceError as e:
            logger.warning(f"Could not load {category} rules: {e}")
            return []

        compiled = []
        for record in records:
            if not getattr(record, 'enabled', True):
                continue
            try:
                compiled.append(compile_rule(record))
            except RuleCompilationError as e:
                logger.warning(f"Skipping {category} rule: {e}")
        if not compiled:
            logger.warning(f"No usable rules for {category}, detection will not trigger")
        else:
            logger.info(f"Loaded {len(compiled)} {category} rule(s)")
        return compiled

    def invalidate(self, category: Optional[str] = None):
        if category is None:
            self._rules.clear()
        else:
            self._rules.pop(category, None)


class ThreatDetectionEngine:
    """Runs the generic evaluator for each configured category"""

    def __init__(self, rule_cache: RuleCache, thresholds: Optional[Mapping[str, int]] = None):
        self.rule_cache = rule_cache
        merged = dict(DEFAULT_THRESHOLDS)
        merged.update(thresholds or {})
        self.categories = {name: ThreatCategory(name, int(value)) for name, value in merged.items()}

    def analyze(self, category_name: str, headers: Mapping[str, str], body: str) -> ThreatAnalysisResult:
        category = self.categories.get(category_name)
        if category is None:
            raise KeyError(f"unknown threat category '{category_name}'")
        return evaluate(category, self.rule_cache.get(category_name), headers, body)

    def analyze_all(self, headers: Mapping[str, str], body: str) -> Dict[str, ThreatAnalysisResult]:
        return {name: self.analyze(name, headers, body) for name in self.categories}
