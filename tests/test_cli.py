"""
End-to-end tests for the `audit` command with the Azure client replaced by the
in-memory directory.
"""

import json

import pytest

from blueaudit import cli
from tests.conftest import FakeDirectoryClient


@pytest.fixture
def patched(monkeypatch):
    state = {"client": None, "client_kwargs": None, "auth_calls": 0}

    def fake_build_credential(args):
        state["auth_calls"] += 1
        return object()

    def fake_client(credential, **kwargs):
        state["client_kwargs"] = kwargs
        return state["client"]

    monkeypatch.setattr(cli, "build_credential", fake_build_credential)
    monkeypatch.setattr(cli, "current_identity", lambda credential: {"upn": "auditor@corp.example"})
    monkeypatch.setattr(cli, "AzureDirectoryClient", fake_client)
    return state


LAYOUT = {
    "t1": {"s1": {"alice@corp.example": ["Reader", "Owner"]}},
    "t2": {"s2": {"alice@corp.example": ["Reader"]}},
}


class TestAuditCommand:
    def test_complete_run_writes_outputs(self, patched, roster_file, tmp_path, capsys):
        patched["client"] = FakeDirectoryClient(LAYOUT)
        out_json = tmp_path / "report.json"
        out_csv = tmp_path / "report.csv"
        code = cli.main(
            [
                "--roster", roster_file("alice@corp.example\nbob@corp.example\n"),
                "--roles", "Reader,Responder",
                "--no-progress",
                "--out-json", str(out_json),
                "--out-csv", str(out_csv),
            ]
        )
        assert code == cli.EXIT_OK

        doc = json.loads(out_json.read_text())
        assert doc["missing_counts"] == {"alice@corp.example": 2, "bob@corp.example": 4}
        assert len(doc["rows"]) == 4
        assert doc["summary"]["caller"] == {"upn": "auditor@corp.example"}
        assert len(out_csv.read_text().strip().splitlines()) == 5

        out = capsys.readouterr().out
        assert "Missing permissions per analyst" in out
        assert "bob@corp.example" in out

    def test_partial_failure_still_exits_zero(self, patched, roster_file, capsys):
        patched["client"] = FakeDirectoryClient(LAYOUT, fail_tenants={"t2"})
        code = cli.main(["--roster", roster_file("alice@corp.example\n"), "--no-progress"])
        assert code == cli.EXIT_OK
        captured = capsys.readouterr()
        assert "Skipping tenant t2" in captured.err
        assert "Scope failures" in captured.out

    def test_empty_roster_aborts_before_auth(self, patched, roster_file, capsys):
        patched["client"] = FakeDirectoryClient(LAYOUT)
        code = cli.main(["--roster", roster_file(""), "--no-progress"])
        assert code == cli.EXIT_FATAL
        assert patched["auth_calls"] == 0
        assert patched["client"].calls == []
        assert "contains no analysts" in capsys.readouterr().err

    def test_missing_roster_file(self, patched, tmp_path):
        code = cli.main(["--roster", str(tmp_path / "missing.txt"), "--no-progress"])
        assert code == cli.EXIT_FATAL
        assert patched["auth_calls"] == 0

    def test_directory_unavailable(self, patched, roster_file, capsys):
        patched["client"] = FakeDirectoryClient(LAYOUT, fail_listing=True)
        code = cli.main(["--roster", roster_file("alice\n"), "--no-progress"])
        assert code == cli.EXIT_FATAL
        assert "Failed to list tenants" in capsys.readouterr().err

    def test_auth_failure(self, patched, roster_file, monkeypatch):
        def boom(args):
            raise RuntimeError("AADSTS700082: refresh token expired")

        monkeypatch.setattr(cli, "build_credential", boom)
        assert cli.main(["--roster", roster_file("alice\n"), "--no-progress"]) == cli.EXIT_FATAL

    def test_invalid_config_is_usage_error(self, patched, roster_file, tmp_path):
        cfg = tmp_path / "audit.yaml"
        cfg.write_text("colour: blue\n", encoding="utf-8")
        code = cli.main(["--roster", roster_file("alice\n"), "--config", str(cfg)])
        assert code == cli.EXIT_USAGE
        assert patched["auth_calls"] == 0

    def test_config_feeds_client_options(self, patched, roster_file, tmp_path):
        patched["client"] = FakeDirectoryClient(LAYOUT)
        cfg = tmp_path / "audit.yaml"
        cfg.write_text("tenants: [t1]\ninclude_disabled: true\nresolve_principals: false\n", encoding="utf-8")
        assert cli.main(["--roster", roster_file("alice\n"), "--config", str(cfg), "--no-progress"]) == cli.EXIT_OK
        assert patched["client_kwargs"] == {"tenant_filter": ["t1"], "include_disabled": True, "resolve_principals": False}

    def test_roster_path_is_required(self):
        with pytest.raises(SystemExit) as exc:
            cli.main([])
        assert exc.value.code == 2
