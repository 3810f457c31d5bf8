import logging
import os
import pathlib

import pytest

from xmtp_relay import utils

REQUIRED = ["PRIVATE_KEY", "XMTP_DB_ENCRYPTION_KEY", "XMTP_ENV"]


def clear_required(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in REQUIRED:
        # setenv first so values backfilled into os.environ get cleaned up
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)


@pytest.fixture()
def secrets_file(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch) -> pathlib.Path:
    """Points utils at a fresh secrets file and clears the required vars"""
    path = tmp_path / ".env"
    monkeypatch.setenv("SECRETS_FILE", str(path))
    clear_required(monkeypatch)
    return path


def test_parse_secrets() -> None:
    text = "A=B\n# C=D\n\n  E = F=G  \nnot an assignment\n=nokey"
    assert utils.parse_secrets(text) == {"A": "B", "E": "F=G"}


def test_secrets(secrets_file: pathlib.Path) -> None:
    """Tests that utils.get_secret reads the values of the secrets file"""
    secrets_file.write_text("A=B\nC=D\nFLAG=false", encoding="utf-8")
    assert utils.get_secret("A") == "B"
    assert utils.get_secret("C") == "D"
    assert utils.get_secret("E") == ""
    assert utils.get_secret("FLAG") == ""


def test_environment_wins_over_file(
    secrets_file: pathlib.Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    secrets_file.write_text("XMTP_ENV=production\nPRIVATE_KEY=abc\n", encoding="utf-8")
    monkeypatch.setenv("XMTP_ENV", "dev")
    monkeypatch.setenv("XMTP_DB_ENCRYPTION_KEY", "00")
    env = utils.validate_environment(REQUIRED)
    assert env == {"PRIVATE_KEY": "abc", "XMTP_DB_ENCRYPTION_KEY": "00", "XMTP_ENV": "dev"}
    # backfilled values land in the process environment
    assert os.environ["PRIVATE_KEY"] == "abc"


def test_missing_vars_exit(
    secrets_file: pathlib.Path, caplog: pytest.LogCaptureFixture
) -> None:
    secrets_file.write_text("XMTP_DB_ENCRYPTION_KEY=00\n", encoding="utf-8")
    with caplog.at_level(logging.ERROR), pytest.raises(SystemExit) as exit_info:
        utils.validate_environment(REQUIRED)
    assert exit_info.value.code == 1
    assert "Missing env vars: PRIVATE_KEY, XMTP_ENV" in caplog.text


def test_missing_file_exit(secrets_file: pathlib.Path) -> None:
    assert not secrets_file.exists()
    with pytest.raises(SystemExit) as exit_info:
        utils.validate_environment(["XMTP_ENV"])
    assert exit_info.value.code == 1


def test_nothing_missing_skips_file(
    secrets_file: pathlib.Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("XMTP_ENV", "local")
    assert utils.validate_environment(["XMTP_ENV"]) == {"XMTP_ENV": "local"}
    assert utils.validate_environment([]) == {}


def test_backfill_doesnt_outlive_test(tmp_path: pathlib.Path) -> None:
    path = tmp_path / ".env"
    path.write_text("PRIVATE_KEY=abc\nXMTP_DB_ENCRYPTION_KEY=00\nXMTP_ENV=dev\n", encoding="utf-8")
    before = {key: os.environ.get(key) for key in REQUIRED}
    with pytest.MonkeyPatch.context() as monkeypatch:
        monkeypatch.setenv("SECRETS_FILE", str(path))
        clear_required(monkeypatch)
        assert utils.validate_environment(REQUIRED)["PRIVATE_KEY"] == "abc"
    assert {key: os.environ.get(key) for key in REQUIRED} == before
