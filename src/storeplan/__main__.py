"""Entry point for `python -m storeplan` and the `storeplan` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any

from storeplan.errors import PlanningError, SolverError
from storeplan.graph import NodeState
from storeplan.models import CompilerConfig, Dependency, PackageConfig, ProjectConfigFile, SolverConfig
from storeplan.pipeline import PlanningPipeline, PlanningResult
from storeplan.settings import RuntimeSettings


def _flag_assignment(value: str) -> tuple[str, bool]:
    name, sep, setting = value.partition("=")
    if not sep or not name or setting.lower() not in {"on", "off"}:
        raise argparse.ArgumentTypeError(f"expected NAME=on or NAME=off, got {value!r}")
    return name, setting.lower() == "on"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Plan which packages of a project need building")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    plan = subparsers.add_parser("plan", help="Compute the install plan and print it as JSON")
    plan.add_argument("--project-root", type=Path, default=Path("."), help="Directory holding the project file")
    plan.add_argument(
        "--constraint",
        action="append",
        default=[],
        help="Extra solver constraint such as 'base >=4 && <5' (repeatable)",
    )
    plan.add_argument(
        "--flag",
        action="append",
        default=[],
        type=_flag_assignment,
        help="Flag assignment NAME=on|off for the project's local packages (repeatable)",
    )
    plan.add_argument("--with-compiler", default=None, help="Compiler to use instead of the one on PATH")
    plan.add_argument("--with-pkg-tool", default=None, help="Package tool to use instead of the one on PATH")
    plan.add_argument("--enable-profiling", action="store_true", default=None, help="Build profiled local packages")
    return parser.parse_args(argv)


def cli_config_from_args(args: argparse.Namespace) -> ProjectConfigFile:
    try:
        constraints = tuple(Dependency.model_validate(text) for text in args.constraint)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid constraint: {exc}") from exc
    return ProjectConfigFile(
        compiler=CompilerConfig(path=args.with_compiler, pkg_path=args.with_pkg_tool),
        solver=SolverConfig(constraints=constraints),
        local_packages=PackageConfig(flags=dict(args.flag), profiling=args.enable_profiling),
    )


def plan_summary(result: PlanningResult) -> dict[str, Any]:
    packages: list[dict[str, Any]] = []
    for node in result.improved_plan:
        entry: dict[str, Any] = {
            "installed_id": node.node_id,
            "package_id": str(node.package_id),
            "state": node.state.value,
        }
        if node.state == NodeState.CONFIGURED and node.package is not None:
            entry["build_style"] = node.package.build_style.value
            entry["setup_script_style"] = node.package.setup_script_style.value
        packages.append(entry)
    return {
        "compiler": result.shared.compiler.compiler_id,
        "platform": str(result.shared.platform),
        "phases_run": list(result.phases_run),
        "to_build": [entry["installed_id"] for entry in packages if entry["state"] == NodeState.CONFIGURED.value],
        "packages": packages,
    }


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    project_root = args.project_root.resolve()
    if not project_root.is_dir():
        logging.error("Project root is not a directory: %s", project_root)
        return 1

    try:
        settings = RuntimeSettings.from_env(project_root)
        cli_config = cli_config_from_args(args)
    except (ValueError, argparse.ArgumentTypeError) as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    pipeline = PlanningPipeline(project_root, settings=settings)
    try:
        result = pipeline.rebuild_install_plan(cli_config)
    except SolverError as exc:
        logging.error("Planning failed: %s", exc.diagnostic())
        return 1
    except PlanningError as exc:
        logging.error("Planning failed: %s", exc)
        return 1

    print(json.dumps(plan_summary(result), indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
