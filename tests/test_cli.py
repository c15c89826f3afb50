import json
from pathlib import Path

import pytest

from conftest import FakeTransport, response
from quotefetch import cli
from quotefetch.session.credentials import Credentials, DiskCredentialStore
from quotefetch.session.manager import SessionManager

CHART = "https://query2.finance.yahoo.com/v8/finance/chart/"


@pytest.fixture
def wired_cli(monkeypatch: pytest.MonkeyPatch, transport: FakeTransport, store: DiskCredentialStore, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli, "setup_logging", lambda *a, **k: None)
    monkeypatch.setattr(
        cli, "SessionManager", lambda config: SessionManager(config, store=store, transport=transport)
    )
    return transport


def test_download_writes_payloads_and_manifest(wired_cli: FakeTransport, tmp_path: Path, capsys) -> None:
    wired_cli.on(CHART + "AAPL", response(200, b'{"chart": "aapl"}'))
    wired_cli.on(CHART + "MSFT", response(200, b'{"chart": "msft"}'))
    out = tmp_path / "out"

    code = cli.main(["download", "aapl,msft", "AAPL", "--period", "5d", "--retries", "0", "--out", str(out)])

    assert code == 0
    assert (out / "AAPL.json").read_bytes() == b'{"chart": "aapl"}'
    assert (out / "MSFT.json").exists()
    manifest = json.loads((out / "manifest.json").read_text())
    assert manifest["succeeded"] == ["AAPL", "MSFT"]
    assert manifest["payloads"]["AAPL"]["provenance"]["payload_hash"]
    assert wired_cli.calls_to(CHART + "AAPL")[0]["params"]["range"] == "5d"
    assert "Downloaded 2 of 2" in capsys.readouterr().out


def test_download_exit_code_reflects_failures(wired_cli: FakeTransport, tmp_path: Path, capsys) -> None:
    wired_cli.on(CHART + "AAPL", response(200, b"{}"))
    wired_cli.on(CHART + "NOPE", response(404))

    code = cli.main(["download", "AAPL", "NOPE", "--out", str(tmp_path / "out")])

    assert code == 1
    manifest = json.loads((tmp_path / "out" / "manifest.json").read_text())
    assert manifest["failed"] == ["NOPE"]
    assert not (tmp_path / "out" / "NOPE.json").exists()
    assert "NOPE" in capsys.readouterr().out


def test_invalid_settings_exit_code(wired_cli: FakeTransport) -> None:
    assert cli.main(["download", "AAPL", "--retries", "-1"]) == 2


def test_clear_cache(wired_cli: FakeTransport, store: DiskCredentialStore) -> None:
    store.save(Credentials(cookie="a3", crumb="crumb-1"))

    assert cli.main(["clear-cache"]) == 0
    assert store.load() is None
