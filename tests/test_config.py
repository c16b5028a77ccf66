import json

from sqlalchemy.engine import make_url

from mailsentry.config import FilterConfig


def test_defaults_without_files(tmp_path):
    config = FilterConfig(config_path=str(tmp_path / "missing.json"), environ={})

    assert config.config["spam"]["threshold"] == 70
    assert config.config["spam"]["action"] == "quarantine"
    assert config.config["error"]["on_system_error"] == "pass"
    assert config.config["delivery"]["method"] == "smtp"
    assert config.category_thresholds() == {"spam": 70, "phishing": 50, "virus": 80}
    assert config.warnings == []


def test_json_file_then_environment_override(tmp_path):
    path = tmp_path / "filter_config.json"
    path.write_text(json.dumps({
        "_comment": "documentation only",
        "spam": {"threshold": 60, "action": "headers"},
        "categories": {"phishing": {"threshold": 40}},
    }))

    config = FilterConfig(config_path=str(path), environ={
        "MAILSENTRY_SPAM_THRESHOLD": "75",
        "MAILSENTRY_HASH_DETECTION": "no",
    })

    assert config.config["spam"]["threshold"] == 75
    assert config.config["spam"]["action"] == "headers"
    assert config.config["spam"]["hash_detection"] is False
    assert config.category_thresholds()["phishing"] == 40
    assert "_comment" not in config.config


def test_threshold_is_clamped_with_warning(tmp_path):
    high = FilterConfig(config_path=str(tmp_path / "x.json"), environ={},
                        overrides={"spam": {"threshold": 95}})
    low = FilterConfig(config_path=str(tmp_path / "x.json"), environ={},
                       overrides={"spam": {"threshold": 10}})

    assert high.config["spam"]["threshold"] == 90
    assert low.config["spam"]["threshold"] == 30
    assert any("outside" in w for w in high.warnings)


def test_invalid_choices_fall_back_to_defaults(tmp_path):
    config = FilterConfig(config_path=str(tmp_path / "x.json"), environ={}, overrides={
        "spam": {"action": "explode"},
        "error": {"on_system_error": "panic", "max_retries": 0},
        "delivery": {"method": "carrier-pigeon"},
    })

    assert config.config["spam"]["action"] == "quarantine"
    assert config.config["error"]["on_system_error"] == "pass"
    assert config.config["error"]["max_retries"] == 1
    assert config.config["delivery"]["method"] == "smtp"
    assert len(config.warnings) == 4


def test_unparseable_config_file_is_reported(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json")

    config = FilterConfig(config_path=str(path), environ={})

    assert config.config["spam"]["threshold"] == 70
    assert any("Could not load" in w for w in config.warnings)


def test_database_url_selection(tmp_path):
    sqlite = FilterConfig(config_path=str(tmp_path / "x.json"), environ={},
                          overrides={"database": {"path": "/var/lib/ms/security.db"}})
    mysql = FilterConfig(config_path=str(tmp_path / "x.json"), environ={
        "DB_HOST": "db.internal", "DB_NAME": "mailsentry", "DB_USER": "filter", "DB_PASSWORD": "pw",
    })
    explicit = FilterConfig(config_path=str(tmp_path / "x.json"),
                            environ={"MAILSENTRY_DB_URL": "sqlite:///:memory:"})

    assert sqlite.database_url == "sqlite:////var/lib/ms/security.db"
    assert mysql.database_url == "mysql+pymysql://filter:pw@db.internal:3306/mailsentry"
    assert explicit.database_url == "sqlite:///:memory:"


def test_database_url_escapes_credentials(tmp_path):
    config = FilterConfig(config_path=str(tmp_path / "x.json"), environ={
        "DB_HOST": "db.internal", "DB_NAME": "mailsentry", "DB_USER": "filter",
        "DB_PASSWORD": "p@ss/w0rd:x", "DB_PORT": "3307",
    })

    url = make_url(config.database_url)

    assert url.password == "p@ss/w0rd:x"
    assert url.host == "db.internal"
    assert url.port == 3307
    assert url.database == "mailsentry"


def test_non_numeric_settings_fall_back_with_warning(tmp_path):
    path = tmp_path / "filter_config.json"
    path.write_text(json.dumps({
        "error": {"max_retries": "three", "retry_delay_seconds": None},
        "delivery": {"smtp_port": "smtp"},
        "categories": {"phishing": {"threshold": "high"}, "adult": "strict",
                       "malware": {"threshold": "65"}},
    }))

    config = FilterConfig(config_path=str(path), environ={})

    assert config.config["error"]["max_retries"] == 3
    assert config.config["error"]["retry_delay_seconds"] == 5
    assert config.config["delivery"]["smtp_port"] == 10026
    assert config.category_thresholds() == {"spam": 70, "phishing": 50, "virus": 80,
                                            "malware": 65}
    assert len(config.warnings) == 5
