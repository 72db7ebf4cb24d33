from datetime import datetime, timezone
from pathlib import Path

import pytest

from albummail.config import ConfigError, MainConfig, cron_trigger, load_config

ENV_KEYS = [
    "IMMICH_BASE_URL", "IMMICH_API_KEY", "IMMICH_ALBUM_NAME", "IMMICH_ASSET_SOURCE",
    "TARGET_WIDTH", "TARGET_HEIGHT", "JPEG_QUALITY", "STRIP_METADATA",
    "SMTP_HOST", "SMTP_PORT", "SMTP_USER", "SMTP_PASS", "SMTP_STARTTLS", "FROM_EMAIL", "TO_EMAILS",
    "MAX_EMAIL_TOTAL_BYTES", "MAX_ATTACHMENTS_PER_EMAIL", "EMAIL_SUBJECT",
    "DRY_RUN", "CRON_EXPRESSION", "TZ", "LOG_LEVEL", "LOG_DIR", "STATE_DIR", "CONCURRENCY",
]

YAML = """
run:
  schedule: "*/30 * * * *"
  log_level: DEBUG
immich:
  base_url: https://photos.example.com
  api_key: env:TEST_IMMICH_KEY
  album_name: Frame
deliver:
  smtp_server: smtp.example.com
  username: frames@example.com
  password: $TEST_SMTP_PASS
  recipients:
    - living@frame.example.com
    - address: grandma@frame.example.com
      max_attachments_per_email: 5
    - LIVING@frame.example.com
"""


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> pytest.MonkeyPatch:
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    # run from an empty working directory
    monkeypatch.chdir(tmp_path)
    return monkeypatch


def _set_minimal_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("IMMICH_BASE_URL", "https://photos.example.com")
    monkeypatch.setenv("IMMICH_API_KEY", "key")
    monkeypatch.setenv("IMMICH_ALBUM_NAME", "Frame")
    monkeypatch.setenv("SMTP_HOST", "smtp.example.com")
    monkeypatch.setenv("SMTP_USER", "frames@example.com")
    monkeypatch.setenv("SMTP_PASS", "secret")
    monkeypatch.setenv("TO_EMAILS", "a@frame.example.com, b@frame.example.com")


def test_env_config_applies_defaults(clean_env: pytest.MonkeyPatch) -> None:
    _set_minimal_env(clean_env)

    config = load_config().get_pipeline_configs()

    assert config["schedule"] is None
    assert config["dry_run"] is False
    assert config["concurrency"] == 4
    assert config["convert"].target_width == 1280
    assert config["convert"].target_height == 800
    assert config["convert"].jpeg_quality == 85
    deliver = config["deliver"]
    assert deliver.port == 587
    assert deliver.sender == "frames@example.com"
    assert deliver.max_email_total_bytes == 24_000_000
    assert deliver.max_attachments_per_email == 20
    assert [r.address for r in deliver.recipients] == ["a@frame.example.com", "b@frame.example.com"]
    assert config["state"].dir == "./state"


def test_env_config_reads_overrides(clean_env: pytest.MonkeyPatch) -> None:
    _set_minimal_env(clean_env)
    clean_env.setenv("DRY_RUN", "1")
    clean_env.setenv("STRIP_METADATA", "1")
    clean_env.setenv("CRON_EXPRESSION", "0 8 * * *")
    clean_env.setenv("MAX_EMAIL_TOTAL_BYTES", "1000")
    clean_env.setenv("MAX_ATTACHMENTS_PER_EMAIL", "3")
    clean_env.setenv("FROM_EMAIL", "noreply@example.com")
    clean_env.setenv("STATE_DIR", "/data/state")

    config = load_config().get_pipeline_configs()

    assert config["dry_run"] is True
    assert config["convert"].strip_metadata is True
    assert config["schedule"] == "0 8 * * *"
    assert config["deliver"].max_email_total_bytes == 1000
    assert config["deliver"].max_attachments_per_email == 3
    assert config["deliver"].sender == "noreply@example.com"
    assert config["state"].dir == "/data/state"


def test_missing_env_raises_config_error(clean_env: pytest.MonkeyPatch) -> None:
    _set_minimal_env(clean_env)
    clean_env.delenv("TO_EMAILS")
    clean_env.delenv("IMMICH_API_KEY")

    with pytest.raises(ConfigError) as excinfo:
        load_config()

    message = str(excinfo.value)
    assert "recipients" in message
    assert "api_key" in message


def test_yaml_config_resolves_references_and_dedupes_recipients(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    clean_env.setenv("TEST_IMMICH_KEY", "immich-key")
    clean_env.setenv("TEST_SMTP_PASS", "smtp-pass")
    path = tmp_path / "config.yaml"
    path.write_text(YAML, encoding="utf-8")

    config = load_config(path).get_pipeline_configs()

    assert config["immich"].api_key == "immich-key"
    assert config["deliver"].password == "smtp-pass"
    assert config["log_level"] == "debug"
    assert config["schedule"] == "*/30 * * * *"
    recipients = config["deliver"].recipients
    assert [r.address for r in recipients] == ["living@frame.example.com", "grandma@frame.example.com"]
    assert recipients[1].max_attachments_per_email == 5
    assert recipients[0].max_attachments_per_email is None


def test_yaml_unset_reference_raises_config_error(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(YAML, encoding="utf-8")

    with pytest.raises(ConfigError, match="TEST_IMMICH_KEY"):
        load_config(path)


def test_missing_config_file_raises_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "nope.yaml")


def test_unknown_sections_are_rejected(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    clean_env.setenv("TEST_IMMICH_KEY", "immich-key")
    clean_env.setenv("TEST_SMTP_PASS", "smtp-pass")
    path = tmp_path / "config.yaml"
    path.write_text(YAML + "\nuploads:\n  folder: x\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(path)


@pytest.mark.parametrize(
    "section, values",
    [
        ("run", {"schedule": "every hour"}),
        ("run", {"schedule": "61 * * * *"}),
        ("run", {"log_level": "loud"}),
        ("deliver", {"port": 70000}),
        ("deliver", {"max_email_total_bytes": 0}),
        ("deliver", {"recipients": ["not-an-address"]}),
        ("deliver", {"recipients": []}),
        ("immich", {"asset_source": "thumbnail"}),
    ],
)
def test_invalid_values_are_rejected(section: str, values: dict) -> None:
    data = {
        "immich": {"base_url": "https://photos.example.com", "api_key": "k", "album_name": "Frame"},
        "deliver": {"smtp_server": "smtp.example.com", "username": "f@example.com", "recipients": ["a@example.com"]},
    }
    data.setdefault(section, {}).update(values)

    with pytest.raises(ValueError):
        MainConfig(**data)


def test_values_are_clamped() -> None:
    config = MainConfig(
        run={"concurrency": 100},
        immich={"base_url": "https://photos.example.com", "api_key": "k", "album_name": "Frame"},
        convert={"jpeg_quality": 120, "target_width": 1},
        deliver={"smtp_server": "smtp.example.com", "username": "f@example.com", "recipients": ["a@example.com"]},
    )

    assert config.run.concurrency == 16
    assert config.convert.jpeg_quality == 95
    assert config.convert.target_width == 16


def test_env_values_are_taken_literally(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _set_minimal_env(clean_env)
    secret_file = tmp_path / "secret.txt"
    secret_file.write_text("from-file", encoding="utf-8")
    clean_env.setenv("SMTP_PASS", "$ecretPass")
    clean_env.setenv("IMMICH_API_KEY", f"file:{secret_file}")
    clean_env.setenv("EMAIL_SUBJECT", "env:HOME photos")

    config = load_config().get_pipeline_configs()

    assert config["deliver"].password == "$ecretPass"
    assert config["immich"].api_key == f"file:{secret_file}"
    assert config["deliver"].subject == "env:HOME photos"


def test_yaml_references_inside_lists_are_resolved(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    clean_env.setenv("TEST_IMMICH_KEY", "immich-key")
    clean_env.setenv("TEST_SMTP_PASS", "smtp-pass")
    clean_env.setenv("FRAME_ADDR", "frame@example.com")
    address_file = tmp_path / "address.txt"
    address_file.write_text("kitchen@example.com\n", encoding="utf-8")
    path = tmp_path / "config.yaml"
    path.write_text(
        YAML.replace(
            "    - LIVING@frame.example.com\n",
            f"    - env:FRAME_ADDR\n    - file:{address_file}\n    - address: $FRAME_ADDR\n",
        ),
        encoding="utf-8",
    )

    config = load_config(path).get_pipeline_configs()

    assert [r.address for r in config["deliver"].recipients] == [
        "living@frame.example.com",
        "grandma@frame.example.com",
        "frame@example.com",
        "kitchen@example.com",
    ]


@pytest.mark.parametrize("schedule", ["0 8 * * *", "30 0 8 * * *", "*/10 * * * * *"])
def test_five_and_six_field_schedules_are_accepted(schedule: str) -> None:
    config = MainConfig(
        run={"schedule": schedule},
        immich={"base_url": "https://photos.example.com", "api_key": "k", "album_name": "Frame"},
        deliver={"smtp_server": "smtp.example.com", "username": "f@example.com", "recipients": ["a@example.com"]},
    )

    assert config.run.schedule == schedule


def test_six_field_schedule_fires_on_the_given_second() -> None:
    trigger = cron_trigger("30 0 8 * * *", timezone="UTC")
    start = datetime(2024, 5, 6, 7, 0, tzinfo=timezone.utc)

    assert trigger.get_next_fire_time(None, start) == datetime(2024, 5, 6, 8, 0, 30, tzinfo=timezone.utc)
