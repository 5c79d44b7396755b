import json
import threading

import pytest

from convergence_harness.diagnostics import EXIT_ENVIRONMENT, EXIT_OK
from convergence_harness.errors import WaitCancelled
from convergence_harness.main import build_parser, main, run_suite
from convergence_harness.scenarios import SCENARIOS

ENV_VARS = (
    "HARNESS_STORE_URL",
    "HARNESS_PROVIDER_URL",
    "OS_AUTH_URL",
    "OS_DOMAIN_NAME",
    "OS_TENANT_NAME",
    "OS_USER_NAME",
    "OS_PASSWORD",
    "OS_REGION",
    "OS_FLOATING_POOL_NAME",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_parser_defaults():
    args = build_parser().parse_args([])

    assert args.scenario == []
    assert not args.local
    assert args.deadline is None


def test_list_scenarios(capsys):
    assert main(["--list"]) == EXIT_OK

    out = capsys.readouterr().out
    for name in SCENARIOS:
        assert name in out


def test_missing_configuration_is_an_environment_failure(clean_env):
    assert main([]) == EXIT_ENVIRONMENT


def test_unknown_scenario_is_an_environment_failure(clean_env):
    for name in ENV_VARS:
        clean_env.setenv(name, "http://127.0.0.1:9" if name.endswith("_URL") else "x")

    assert main(["--scenario", "no-such-scenario"]) == EXIT_ENVIRONMENT


def test_local_run_writes_report(tmp_path, capsys):
    report_path = tmp_path / "report.json"

    code = main(["--local", "--scenario", "new-network-flow", "--report-json", str(report_path)])

    assert code == EXIT_OK, capsys.readouterr().out
    report = json.loads(report_path.read_text())
    assert [s["name"] for s in report["scenarios"]] == ["new-network-flow"]
    assert report["scenarios"][0]["passed"] is True
    assert "HARNESS RUN REPORT" in capsys.readouterr().out


def test_cancelled_suite_starts_no_scenarios(config):
    cancel = threading.Event()
    cancel.set()

    report = run_suite(config, ["infrastructure"], cancel)

    assert len(report.results) == 9
    assert all(r.skipped and isinstance(r.error, WaitCancelled) for r in report.results)
    assert report.exit_code() == EXIT_ENVIRONMENT
    assert "Skipped: 9" in report.render()
