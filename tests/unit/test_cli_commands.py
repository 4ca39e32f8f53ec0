import json
import sys
import types
from pathlib import Path
import textwrap

from click.testing import CliRunner

from resilient_ui.cli import cli


def write_multi_doc_yaml(tmp_path: Path) -> Path:
    y = textwrap.dedent(
        """
        name: add_person
        app: people
        tags: [smoke]
        steps:
          - action: goto
            url: "https://people.test/people/new"
        ---
        name: delete_person
        app: people
        steps:
          - action: goto
            url: "https://people.test/people/7"
        """
    )
    p = tmp_path / "people.yaml"
    p.write_text(y, encoding="utf-8")
    return p


def install_fake_engine(monkeypatch, tmp_path: Path, failing=()):
    fake_engine = types.ModuleType("resilient_ui.core.engine")
    seen = []

    class FakeRunner:
        def __init__(self, settings=None, session_factory=None):
            self.settings = settings

        async def run(self, scenario):
            seen.append((scenario.name, self.settings.HEADLESS))
            if scenario.name in failing:
                return {
                    "ok": False,
                    "error": "Save button: no strategy matched",
                    "error_type": "LocatorExhausted",
                    "failed_step": {"index": 1, "action": "click", "name": None},
                }
            return {"ok": True, "run_dir": str(tmp_path / "run" / scenario.name)}

    fake_engine.ScenarioRunner = FakeRunner
    # `from resilient_ui.core.engine import ScenarioRunner` inside `run` picks this up
    monkeypatch.setitem(sys.modules, "resilient_ui.core.engine", fake_engine)
    return seen


def test_cli_list_with_multi_doc(tmp_path: Path):
    write_multi_doc_yaml(tmp_path)
    runner = CliRunner()
    result = runner.invoke(cli, ["list", "--dir", str(tmp_path), "--no-recursive"])
    assert result.exit_code == 0
    assert "Found 2 scenario(s)" in result.output

    result = runner.invoke(cli, ["list", "--dir", str(tmp_path), "--tag", "smoke"])
    assert "Found 1 scenario(s)" in result.output and "add_person" in result.output


def test_cli_validate_with_dir(tmp_path: Path):
    write_multi_doc_yaml(tmp_path)
    runner = CliRunner()
    result = runner.invoke(cli, ["validate", "--dir", str(tmp_path), "--no-recursive"])
    assert result.exit_code == 0
    assert result.output.count("OK  ") == 2


def test_cli_validate_reports_invalid_file(tmp_path: Path):
    bad = tmp_path / "bad.yaml"
    bad.write_text("name: sleepy\nsteps:\n  - action: sleep\n    ms: 100\n    reason: ''\n", encoding="utf-8")
    result = CliRunner().invoke(cli, ["validate", str(bad)])
    assert result.exit_code == 1
    assert "ERR " in result.output and "sleep.reason" in result.output


def test_cli_run_monkeypatch_engine(tmp_path: Path, monkeypatch):
    wf = write_multi_doc_yaml(tmp_path)
    seen = install_fake_engine(monkeypatch, tmp_path)

    runner = CliRunner()
    result = runner.invoke(cli, ["run", str(wf), "--no-parallel", "--headed"])
    assert result.exit_code == 0
    assert result.output.count("OK  [people]") == 2
    assert "Done. OK=2  FAIL=0" in result.output
    assert seen == [("add_person", False), ("delete_person", False)]


def test_cli_run_parallel_reports_failures(tmp_path: Path, monkeypatch):
    wf = write_multi_doc_yaml(tmp_path)
    install_fake_engine(monkeypatch, tmp_path, failing=("delete_person",))
    summary = tmp_path / "out" / "summary.json"

    result = CliRunner().invoke(
        cli, ["run", str(wf), "--parallel", "--max-workers", "2", "--json-out", str(summary)]
    )
    assert result.exit_code == 1
    assert "ERR [people] delete_person [step 1 click" in result.output
    assert "LocatorExhausted" in result.output
    assert "Done. OK=1  FAIL=1" in result.output
    assert len(json.loads(summary.read_text(encoding="utf-8"))["results"]) == 2
