import email

import pytest

from conftest import build_message
from mailsentry.modules.disposition import (ClassificationResult, DispositionRouter,
                                            append_footer, build_bounce, safe_header_value,
                                            spam_level, tag_headers)
from mailsentry.modules.errors import QuarantineError
from mailsentry.modules.message_parser import parse_message
from mailsentry.modules.threat_detection import RuleHit, ThreatAnalysisResult


def threat(category="spam", score=80, threshold=70):
    return ThreatAnalysisResult(category, threshold, [RuleHit("casino", score, "casino")], score)


def classification(**results):
    return ClassificationResult(results=results)


class FakeQuarantine:
    def __init__(self, fail=False):
        self.fail = fail
        self.stored = []

    def store(self, message, recipient, reason):
        if self.fail:
            raise QuarantineError("disk full")
        self.stored.append((message, recipient, reason))


class Recorder:
    def __init__(self):
        self.sent = []

    def __call__(self, message, recipient, sender):
        self.sent.append((message, recipient, sender))


@pytest.mark.parametrize("score,stars", [(0, ""), (3.9, "***"), (7, "*******"), (85, "*" * 10)])
def test_spam_level(score, stars):
    assert spam_level(score) == stars


def test_safe_header_value_flattens_and_truncates():
    assert safe_header_value("a\r\nb\tc") == "a  b c"
    assert safe_header_value("é") == "?"
    assert len(safe_header_value("x" * 500)) == 200


def test_precedence_virus_over_phishing_over_spam():
    result = classification(spam=threat("spam", 95), phishing=threat("phishing", 60, 50),
                            virus=threat("virus", 10, 80))

    assert result.primary.category == "phishing"

    result.results["virus"] = threat("virus", 90, 80)
    assert result.primary.category == "virus"


def test_no_threat_has_no_primary():
    result = classification(spam=threat("spam", 69))

    assert result.primary is None
    assert not result.is_threat


def test_tag_headers_applied_once():
    message = parse_message(build_message(subject="Cheap casino chips"))

    tagged = tag_headers(message, threat(), "***SPAM***")
    retagged = tag_headers(parse_message(tagged), threat(), "***SPAM***")
    parsed = email.message_from_bytes(retagged)

    assert parsed["Subject"] == "***SPAM*** Cheap casino chips"
    assert parsed.get_all("X-Spam-Flag") == ["YES"]
    assert parsed["X-Spam-Score"] == "80"
    assert parsed["X-Spam-Level"] == "*" * 10
    assert parsed["X-Spam-Status"] == "Yes, score=80 required=70 category=spam"
    assert parsed["X-Spam-Report"] == "casino=80"
    assert parsed.get_payload() == "Just checking in.\n"


def test_tag_headers_preserves_crlf():
    message = parse_message(build_message(eol="\r\n", body="Body\r\n"))

    tagged = tag_headers(message, threat(), "[SPAM]")

    assert b"\r\nSubject: [SPAM] Hello\r\n" in tagged
    assert b"\n" not in tagged.replace(b"\r\n", b"")


def test_footer_appended_once():
    message = parse_message(build_message(body="Hello"))

    once = append_footer(message, "-- scanned by MailSentry")
    twice = append_footer(parse_message(once), "-- scanned by MailSentry")

    assert once == twice
    assert once.endswith(b"Hello\n-- scanned by MailSentry\n")


def test_empty_footer_leaves_message_untouched():
    raw = build_message()

    assert append_footer(parse_message(raw), "") == raw


def test_clean_message_is_allowed_with_footer():
    router = DispositionRouter("quarantine", footer="-- clean")
    deliver = Recorder()
    message = parse_message(build_message())

    decision = router.decide(classification(spam=threat(score=10)), message,
                             "alice@example.com", "bob@sender.example.org")

    assert decision.action == "allow"
    assert router.execute(decision, deliver, message) == "allow"
    delivered, recipient, sender = deliver.sent[0]
    assert delivered.endswith(b"-- clean\n")
    assert recipient == "alice@example.com"
    assert sender == "bob@sender.example.org"


def test_headers_action_delivers_tagged_message():
    router = DispositionRouter("headers", subject_tag="***SPAM***")
    deliver = Recorder()
    message = parse_message(build_message(subject="Win"))

    decision = router.decide(classification(spam=threat()), message, "alice@example.com", None)
    router.execute(decision, deliver, message)

    assert b"Subject: ***SPAM*** Win" in deliver.sent[0][0]
    assert decision.category == "spam"
    assert decision.score == 80


def test_quarantine_action_stores_message():
    quarantine = FakeQuarantine()
    router = DispositionRouter("quarantine", quarantine=quarantine)
    deliver = Recorder()
    message = parse_message(build_message())

    decision = router.decide(classification(spam=threat()), message, "alice@example.com", "bob@x.org")

    assert router.execute(decision, deliver, message) == "quarantine"
    assert quarantine.stored[0][1] == "alice@example.com"
    assert "spam score 80 >= 70" in quarantine.stored[0][2]
    assert deliver.sent == []


def test_reject_bounces_with_null_sender():
    router = DispositionRouter("reject", bounce_message="Your message was rejected.",
                               hostname="mx.example.com")
    deliver = Recorder()
    message = parse_message(build_message())

    decision = router.decide(classification(spam=threat()), message,
                             "alice@example.com", "bob@sender.example.org")

    assert router.execute(decision, deliver, message) == "reject"
    bounce, recipient, sender = deliver.sent[0]
    assert recipient == "bob@sender.example.org"
    assert sender is None
    parsed = email.message_from_bytes(bounce)
    assert parsed["From"] == "MAILER-DAEMON@mx.example.com"
    assert parsed["Auto-Submitted"] == "auto-replied"
    assert "Your message was rejected." in parsed.get_payload(decode=True).decode()


def test_quarantine_failure_falls_back_to_reject():
    router = DispositionRouter("quarantine", quarantine=FakeQuarantine(fail=True),
                               hostname="mx.example.com")
    deliver = Recorder()
    message = parse_message(build_message())

    decision = router.decide(classification(spam=threat()), message, "alice@example.com", "bob@x.org")

    assert router.execute(decision, deliver, message) == "reject"
    assert decision.action == "reject"
    assert deliver.sent[0][1] == "bob@x.org"


def test_reject_without_sender_discards():
    router = DispositionRouter("reject")
    deliver = Recorder()
    message = parse_message(build_message())

    decision = router.decide(classification(spam=threat()), message, "alice@example.com", None)

    assert router.execute(decision, deliver, message) == "reject"
    assert deliver.sent == []


def test_bounce_includes_original_headers():
    original = parse_message(build_message(subject="Original subject"))

    bounce = email.message_from_bytes(build_bounce(original, "bob@x.org", "Rejected", "spam",
                                                   hostname="mx.example.com"))
    text = bounce.get_payload(decode=True).decode()

    assert "Reason: spam" in text
    assert "Subject: Original subject" in text


def test_unknown_action_is_rejected():
    with pytest.raises(ValueError):
        DispositionRouter("explode")
