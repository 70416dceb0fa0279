"""Tests for the command line interface."""

import json

import pytest

from clinic_migration.cli import main
from clinic_migration.services.vault import generate_key


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    monkeypatch.setenv("MIGRATION_ENCRYPTION_KEY", generate_key())
    path = tmp_path / "migration.json"
    path.write_text(json.dumps({
        "name": "Glow MedSpa",
        "clinic_id": "clinic-1",
        "source_vendor": "mock",
        "credentials": {"apiKey": "test"},
        "data_dir": str(tmp_path / "data"),
    }))
    return str(path)


class TestCLI:
    """Test suite for clinic-migrate commands."""

    def test_no_command(self, capsys):
        assert main([]) == 1

    def test_generate_key(self, capsys):
        assert main(["generate-key"]) == 0

        key = capsys.readouterr().out.strip()
        assert len(bytes.fromhex(key)) == 32

    def test_profile(self, tmp_path, capsys):
        export = tmp_path / "clients.csv"
        export.write_text("id,first_name,email\n1,Ann,ann@x.com\n2,Bo,bo@x.com\n")
        output = tmp_path / "profile.json"

        assert main(["profile", "--input", str(export), "--output", str(output)]) == 0

        profile = json.loads(output.read_text())
        assert profile["entities"][0]["type"] == "patients"
        assert profile["entities"][0]["source"] == "clients.csv"

    def test_classify_forms(self, tmp_path, capsys):
        forms = tmp_path / "forms.json"
        forms.write_text(json.dumps({"sourceId": "f-1", "templateName": "Botox Consent Form"}))

        assert main(["classify-forms", "--input", str(forms)]) == 0

        out = capsys.readouterr().out
        assert '"formSourceId": "f-1"' in out
        assert '"classification": "consent"' in out

    def test_run_stops_for_approval(self, config_file, capsys):
        assert main(["run", "--config", config_file]) == 0

        out = capsys.readouterr().out
        assert "Mapping spec v1 drafted" in out
        assert "Status: MappingDrafted" in out

    def test_run_with_approval(self, config_file, capsys):
        assert main(["run", "--config", config_file, "--approve-as", "owner-1"]) == 0

        out = capsys.readouterr().out
        assert "MIGRATION COMPLETE" in out
        assert "Status: Completed" in out

    def test_approve_and_status(self, config_file, capsys):
        main(["run", "--config", config_file])
        run_id = capsys.readouterr().out.split("Run: ")[1].split()[0]

        assert main(["approve", "--run-id", run_id, "--approver", "owner-1", "--config", config_file]) == 0
        capsys.readouterr()

        assert main(["status", "--run-id", run_id, "--config", config_file]) == 0
        status = json.loads(capsys.readouterr().out)
        assert status["run"]["status"] == "Completed"
        assert status["run"]["approved_by_id"] == "owner-1"

    def test_resume_waiting_run_reports_gate(self, config_file, capsys):
        main(["run", "--config", config_file])
        run_id = capsys.readouterr().out.split("Run: ")[1].split()[0]

        assert main(["resume", "--run-id", run_id, "--config", config_file]) == 0
        assert "Call approve_mapping() to continue" in capsys.readouterr().out

    def test_unknown_run(self, config_file):
        assert main(["status", "--run-id", "missing", "--config", config_file]) == 1
