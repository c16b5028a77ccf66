import os

import pytest

from mailsentry.modules.errors import QuarantineError, RecipientResolutionError
from mailsentry.modules.quarantine_manager import (AliasResolver, QuarantineManager,
                                                   SystemErrorArea)


@pytest.fixture
def aliases(tmp_path):
    path = tmp_path / "aliases"
    path.write_text(
        "# local aliases\n"
        "postmaster: root\n"
        "root: admin\n"
        "sales: carol@example.com, dave\n"
        "archive: |/usr/local/bin/archive\n"
        "loop1: loop2\n"
        "loop2: loop1\n"
        "outside: someone@elsewhere.org\n"
    )
    return str(path)


def test_alias_chain_is_followed(aliases):
    resolver = AliasResolver(aliases, "example.com")

    assert resolver.resolve("postmaster@example.com") == "admin"
    assert resolver.resolve("sales@example.com") == "carol"


def test_plus_tag_and_case_are_stripped(aliases):
    assert AliasResolver(aliases).resolve("Alice+Lists@example.com") == "alice"


def test_pipes_loops_and_foreign_targets_stop_resolution(aliases):
    resolver = AliasResolver(aliases, "example.com")

    assert resolver.resolve("archive@example.com") == "archive"
    assert resolver.resolve("loop1@example.com") in ("loop1", "loop2")
    assert resolver.resolve("outside@example.com") == "outside"


def test_missing_aliases_file_maps_to_local_part(tmp_path):
    assert AliasResolver(str(tmp_path / "none")).resolve("erin@example.com") == "erin"


@pytest.mark.parametrize("recipient", ["", "no-at-sign", "+tag@example.com"])
def test_unresolvable_recipients(recipient):
    with pytest.raises(RecipientResolutionError):
        AliasResolver("").resolve(recipient)


def test_store_writes_maildir_file(tmp_path, aliases):
    manager = QuarantineManager(AliasResolver(aliases, "example.com"),
                                str(tmp_path / "vmail" / "{domain}" / "{user}"), ".Junk")

    path = manager.store(b"Subject: s\n\nbody\n", "root@example.com", "spam score 75 >= 70")

    folder = tmp_path / "vmail" / "example.com" / "admin" / ".Junk"
    assert os.path.dirname(path) == str(folder / "new")
    assert {p.name for p in folder.iterdir()} == {"cur", "new", "tmp"}
    assert list((folder / "tmp").iterdir()) == []
    assert open(path, "rb").read().startswith(b"X-Quarantine-Reason: spam score 75 >= 70\n")


def test_reason_cannot_inject_headers(tmp_path):
    manager = QuarantineManager(AliasResolver(""), str(tmp_path / "{user}"))

    path = manager.store(b"Subject: s\n\nbody\n", "alice@example.com",
                         "rule 'Free\r\nBcc: victim@example.org' matched")

    header_block = open(path, "rb").read().split(b"\n\n")[0]
    assert header_block.splitlines()[0] == (
        b"X-Quarantine-Reason: rule 'Free  Bcc: victim@example.org' matched")
    assert not any(line.startswith(b"Bcc:") for line in header_block.splitlines())


def test_store_failure_raises_quarantine_error(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    manager = QuarantineManager(AliasResolver(""), str(blocker / "{user}"))

    with pytest.raises(QuarantineError):
        manager.store(b"Subject: s\n\nbody", "alice@example.com", "spam")


def test_bad_template_raises_quarantine_error(tmp_path):
    manager = QuarantineManager(AliasResolver(""), str(tmp_path / "{mailbox}"))

    with pytest.raises(QuarantineError):
        manager.store(b"Subject: s\n\nbody", "alice@example.com", "spam")


def test_system_error_area(tmp_path):
    area = SystemErrorArea(str(tmp_path / "held"))

    path = area.store(b"Subject: s\n\nbody", "DeliveryError: smtp:\n connection refused")

    content = open(path, "rb").read()
    assert path.endswith(".eml")
    assert b"X-System-Error: DeliveryError: smtp: connection refused\n" in content
    assert content.startswith(b"X-System-Error-Time: ")
