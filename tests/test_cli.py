import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from albummail import main
from albummail.cli import app

runner = CliRunner()

CONFIG = """
immich:
  base_url: https://photos.example.com
  api_key: key
  album_name: Frame
deliver:
  smtp_server: smtp.example.com
  username: frames@example.com
  password: pw
  recipients:
    - a@frame.example.com
    - b@frame.example.com
state:
  dir: {state_dir}
"""


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG.format(state_dir=tmp_path / "state"), encoding="utf-8")
    return path


def test_invalid_config_exits_with_code_2(tmp_path: Path) -> None:
    result = runner.invoke(app, ["run", "--config", str(tmp_path / "missing.yaml")])

    assert result.exit_code == 2


def test_run_passes_flags_to_pipeline(config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    received = {}

    def fake_run_pipeline(config, verbose=False, dry_run=False, once=False):
        received.update(verbose=verbose, dry_run=dry_run, once=once, album=config.immich.album_name)

    monkeypatch.setattr(main, "run_pipeline", fake_run_pipeline)

    result = runner.invoke(app, ["run", "-c", str(config_file), "--dry-run", "--once"])

    assert result.exit_code == 0
    assert received == {"verbose": False, "dry_run": True, "once": True, "album": "Frame"}
    assert "Run completed successfully" in result.output


def test_run_failure_exits_with_code_1(config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def failing_run_pipeline(config, verbose=False, dry_run=False, once=False):
        raise RuntimeError("album unreachable")

    monkeypatch.setattr(main, "run_pipeline", failing_run_pipeline)

    result = runner.invoke(app, ["run", "-c", str(config_file), "--once"])

    assert result.exit_code == 1


def test_status_reports_deliveries_without_writing(config_file: Path, tmp_path: Path) -> None:
    result = runner.invoke(app, ["status", "-c", str(config_file)])

    assert result.exit_code == 0
    assert "not created yet" in result.output
    assert not (tmp_path / "state" / "sent.json").exists()

    state_dir = tmp_path / "state"
    state_dir.mkdir()
    (state_dir / "sent.json").write_text(
        json.dumps({"assetRecipients": {"a1": {"a@frame.example.com": "T"}, "a2": {"a@frame.example.com": "T"}}}),
        encoding="utf-8",
    )

    result = runner.invoke(app, ["status", "-c", str(config_file)])

    assert result.exit_code == 0
    assert "Tracked assets: 2" in result.output
    assert "a@frame.example.com: 2 delivered" in result.output
    assert "b@frame.example.com: 0 delivered" in result.output
