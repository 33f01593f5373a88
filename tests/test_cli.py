from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

import pytest

import storeplan.__main__ as cli
from storeplan.errors import ConfigurationError, SolverError
from storeplan.pipeline import PlanningPipeline

from conftest import ExampleProject


def test_flag_assignments_parse() -> None:
    assert cli._flag_assignment("fast=on") == ("fast", True)
    assert cli._flag_assignment("debug=OFF") == ("debug", False)
    with pytest.raises(argparse.ArgumentTypeError):
        cli._flag_assignment("fast")


def test_cli_config_from_args() -> None:
    args = cli.parse_args(
        ["plan", "--constraint", "lib >=1 && <2", "--flag", "fast=on", "--with-compiler", "/opt/ghc/bin/ghc"]
    )
    config = cli.cli_config_from_args(args)
    assert str(config.solver.constraints[0]) == "lib >=1 && <2"
    assert config.local_packages.flags == {"fast": True}
    assert config.local_packages.profiling is None
    assert config.compiler.path == "/opt/ghc/bin/ghc"


def test_missing_project_root_fails(tmp_path: Path) -> None:
    assert cli.main(["plan", "--project-root", str(tmp_path / "missing")]) == 1


def test_planning_errors_exit_non_zero(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    class _FailingPipeline:
        def __init__(self, project_root: Path, *, settings: object) -> None:
            pass

        def rebuild_install_plan(self, cli_config: object) -> None:
            raise ConfigurationError("no package descriptions match *.pkg.json")

    monkeypatch.setattr(cli, "PlanningPipeline", _FailingPipeline)
    assert cli.main(["plan", "--project-root", str(tmp_path)]) == 1


def test_solver_failures_report_the_solver_log(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    class _UnsolvablePipeline:
        def __init__(self, project_root: Path, *, settings: object) -> None:
            pass

        def rebuild_install_plan(self, cli_config: object) -> None:
            raise SolverError(
                "no version of lib satisfies >=2",
                log_trail=["targets: app-0.1", "rejecting lib-1.0: outside >=2"],
            )

    monkeypatch.setattr(cli, "PlanningPipeline", _UnsolvablePipeline)
    with caplog.at_level(logging.ERROR):
        assert cli.main(["plan", "--project-root", str(tmp_path)]) == 1

    assert "no version of lib satisfies >=2" in caplog.text
    assert "solver log:" in caplog.text
    assert "targets: app-0.1" in caplog.text
    assert "rejecting lib-1.0: outside >=2" in caplog.text


def test_plan_prints_summary(
    example_project: ExampleProject, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    def _pipeline(project_root: Path, *, settings: object) -> PlanningPipeline:
        return example_project.pipeline()

    monkeypatch.setattr(cli, "PlanningPipeline", _pipeline)
    assert cli.main(["plan", "--project-root", str(example_project.root)]) == 0

    summary = json.loads(capsys.readouterr().out)
    assert summary["compiler"] == "ghc-9.4.8"
    assert summary["platform"] == "x86_64-linux"
    assert summary["phases_run"][0] == "read_project_config"
    packages = {entry["package_id"]: entry for entry in summary["packages"]}
    assert packages["app-0.1"]["build_style"] == "build_inplace_only"
    assert packages["lib-1.0"]["setup_script_style"] == "non_custom_internal_lib"
    assert "app-0.1-inplace" in summary["to_build"]
