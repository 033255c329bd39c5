"""
meshcheck command line.

Usage:
    meshcheck ready [--container NAME ...]
    meshcheck diagnose [--sidecar NAME ...] [--config-path PATH]
    meshcheck run SCENARIO_FILE [SCENARIO_FILE ...]
    meshcheck contracts SPEC_FILE --base-url URL [--endpoint "GET /api/news paginated" ...]
    meshcheck outputs --environment ENV [--up] [--endpoint NAME ...]

Exit codes:
    0  everything passed
    1  at least one check failed
    2  invalid configuration or input files
    3  environment not ready (critical containers down or runtime unavailable)
"""

import argparse
import json
import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .audit import get_audit_logger
from .config import ENVIRONMENTS, Config
from .contracts import (
    ContractComplianceChecker,
    ContractEndpoint,
    ContractLoadError,
    ContractValidationError,
    OpenAPIDocument,
)
from .mesh import MeshClient, standard_sidecars
from .probe import ProbeClient
from .process_inspector import CliProcessInspector, RuntimeUnavailableError
from .readiness import EnvironmentNotReady, ReadinessGate, diagnose_sidecars
from .scenario_loader import ScenarioLoader, ScenarioLoadError, ScenarioValidationError
from .scenarios import ScenarioRunner
from .stack_outputs import (
    PulumiCliHarness,
    StackHarnessError,
    StackOutputMismatch,
    StackOutputValidator,
)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_NOT_READY = 3

logger = logging.getLogger(__name__)


def setup_logging(log_level: str = "INFO", log_dir: Optional[str] = None) -> logging.Logger:
    """
    Configure console logging and, when ``log_dir`` is set, a rotating file log.

    Console output goes to stderr so reports on stdout stay machine readable.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if log_dir else level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    root_logger.addHandler(console_handler)

    if log_dir:
        try:
            Path(log_dir).mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                os.path.join(log_dir, "meshcheck.log"), maxBytes=10 * 1024 * 1024, backupCount=5
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"
                )
            )
            root_logger.addHandler(file_handler)
        except OSError as e:
            root_logger.warning(f"Could not set up file logging: {e}")

    return logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="meshcheck",
        description="Acceptance checks for sidecar-mesh microservice deployments",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s ready                                   # Check critical containers
  %(prog)s run config/scenarios/routing.yaml       # Run scenario files
  %(prog)s contracts contracts/openapi/public-api.yaml --base-url http://localhost:9001
  %(prog)s outputs --environment staging           # Validate stack outputs
        """,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", help="Override LOG_LEVEL")
    parser.add_argument("--json", action="store_true", help="Print reports as JSON")

    subparsers = parser.add_subparsers(dest="command", required=True)

    ready = subparsers.add_parser("ready", help="Check that critical containers are running")
    ready.add_argument("--container", action="append", default=[], metavar="NAME",
                       help="Container to check (repeatable; default: CRITICAL_CONTAINERS)")

    diagnose = subparsers.add_parser("diagnose", help="Diagnose sidecar deployment problems")
    diagnose.add_argument("--sidecar", action="append", default=[], metavar="NAME",
                          help="Sidecar container (repeatable; default: standard sidecars)")
    diagnose.add_argument("--config-path", help="Host path every sidecar must mount")

    run = subparsers.add_parser("run", help="Run scenario files")
    run.add_argument("files", nargs="+", metavar="SCENARIO_FILE")

    contracts = subparsers.add_parser("contracts", help="Check live endpoints against an OpenAPI document")
    contracts.add_argument("spec", metavar="SPEC_FILE")
    contracts.add_argument("--base-url", required=True)
    contracts.add_argument("--endpoint", action="append", default=[], metavar="'METHOD PATH [paginated] [auth]'",
                           help="Endpoint to check (repeatable; default: every GET without path parameters)")

    outputs = subparsers.add_parser("outputs", help="Validate infrastructure stack outputs")
    outputs.add_argument("--environment", required=True, choices=ENVIRONMENTS)
    outputs.add_argument("--up", action="store_true", help="Deploy the stack before reading outputs")
    outputs.add_argument("--url-output", default="website_url", help="Output holding the site URL")
    outputs.add_argument("--endpoint", action="append", default=[], metavar="NAME",
                         help="Endpoint output that must be present (repeatable)")

    return parser


def parse_endpoint_spec(spec: str) -> ContractEndpoint:
    """Parse ``"GET /api/news paginated"`` style endpoint arguments."""
    parts = spec.split()
    if len(parts) < 2:
        raise ValueError(f"Endpoint must be 'METHOD PATH [flags]': {spec!r}")
    method, path, flags = parts[0].upper(), parts[1], {flag.lower() for flag in parts[2:]}
    unknown = flags - {"paginated", "auth", "optional"}
    if unknown:
        raise ValueError(f"Unknown endpoint flag(s) {', '.join(sorted(unknown))} in {spec!r}")
    return ContractEndpoint(
        method=method,
        path=path,
        critical="optional" not in flags,
        paginated="paginated" in flags,
        requires_auth="auth" in flags,
    )


def _default_endpoints(document: OpenAPIDocument) -> List[ContractEndpoint]:
    return [
        ContractEndpoint("GET", path)
        for path, item in document.paths.items()
        if "{" not in path and isinstance(item, dict) and "get" in item
    ]


class CommandContext:
    """Collaborators shared by the subcommands."""

    def __init__(self, config: Config):
        self.config = config
        self.inspector = CliProcessInspector(config.container_runtime, config.runtime_timeout)
        self.probe_client = ProbeClient(timeout=config.probe_timeout)

    def gate(self, names: Optional[List[str]] = None) -> ReadinessGate:
        return ReadinessGate(self.inspector, names or self.config.critical_containers)

    def runner(self) -> ScenarioRunner:
        mesh_client = MeshClient(
            self.config.mesh_app_id,
            host=self.config.mesh_host,
            port=self.config.mesh_http_port,
            probe_client=self.probe_client,
        )
        audit_logger = get_audit_logger(self.config.audit_log_path) if self.config.audit_enabled else None
        return ScenarioRunner(
            self.gate(),
            self.probe_client,
            mesh_client=mesh_client,
            audit_logger=audit_logger,
            strict_pending=self.config.strict_pending,
        )


def cmd_ready(args, ctx: CommandContext) -> int:
    report = ctx.gate(args.container).check()
    if args.json:
        print(json.dumps({
            "ready": report.ready,
            "reason": report.reason,
            "containers": {name: s.state.value for name, s in report.statuses.items()},
        }, indent=2))
    else:
        for name, status in report.statuses.items():
            print(f"{status.state.value:8} {name} {status.status_text}".rstrip())
        print("environment ready" if report.ready else report.reason)
    return EXIT_OK if report.ready else EXIT_NOT_READY


def cmd_diagnose(args, ctx: CommandContext) -> int:
    sidecars = args.sidecar or [s.container for s in standard_sidecars()]
    try:
        issues = diagnose_sidecars(ctx.inspector, sidecars, required_config_path=args.config_path)
    except RuntimeUnavailableError as e:
        print(f"container runtime not inspectable: {e}", file=sys.stderr)
        return EXIT_NOT_READY

    if args.json:
        print(json.dumps({"sidecars": sidecars, "issues": issues}, indent=2))
    else:
        for issue in issues:
            print(issue)
        print(f"{len(sidecars)} sidecar(s) checked, {len(issues)} issue(s)")
    return EXIT_FAILED if issues else EXIT_OK


def cmd_run(args, ctx: CommandContext) -> int:
    try:
        scenarios = ScenarioLoader(ctx.config).load_files(args.files)
    except (ScenarioLoadError, ScenarioValidationError) as e:
        print(str(e), file=sys.stderr)
        return EXIT_USAGE

    runner = ctx.runner()
    reports = []
    try:
        for scenario in scenarios:
            reports.append(runner.run(scenario))
    except EnvironmentNotReady as e:
        print(f"SKIPPED: {e.reason}", file=sys.stderr)
        return EXIT_NOT_READY

    if args.json:
        print(json.dumps([r.to_dict() for r in reports], indent=2))
    else:
        for report in reports:
            print(report.details())
    return EXIT_FAILED if any(not r.ok for r in reports) else EXIT_OK


def cmd_contracts(args, ctx: CommandContext) -> int:
    try:
        document = OpenAPIDocument.load(args.spec)
    except (ContractLoadError, ContractValidationError) as e:
        # A broken document blocks every contract check
        print(f"FAILED: {e}", file=sys.stderr)
        return EXIT_FAILED

    try:
        endpoints = [parse_endpoint_spec(spec) for spec in args.endpoint] or _default_endpoints(document)
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return EXIT_USAGE

    checker = ContractComplianceChecker(document, ctx.runner())
    try:
        report = checker.check(args.base_url, endpoints)
    except EnvironmentNotReady as e:
        print(f"SKIPPED: {e.reason}", file=sys.stderr)
        return EXIT_NOT_READY

    print(json.dumps(report.to_dict(), indent=2) if args.json else report.details())
    return EXIT_OK if report.ok else EXIT_FAILED


def cmd_outputs(args, ctx: CommandContext) -> int:
    harness = PulumiCliHarness(
        ctx.config.pulumi_work_dir,
        stack_template=ctx.config.pulumi_stack_template,
        timeout=ctx.config.pulumi_timeout,
    )
    validator = StackOutputValidator(harness)
    try:
        outputs = validator.validate_conventions(args.environment, url_output=args.url_output, deploy=args.up)
        found = validator.validate_endpoints_present(args.environment, args.endpoint, outputs=outputs)
    except StackHarnessError as e:
        print(f"Infrastructure harness failed: {e}", file=sys.stderr)
        return EXIT_FAILED
    except StackOutputMismatch as e:
        print(str(e), file=sys.stderr)
        return EXIT_FAILED

    if args.json:
        print(json.dumps({"environment": args.environment, "outputs": dict(outputs), "endpoints": found},
                         indent=2, default=str))
    else:
        print(f"{args.environment}: {len(outputs)} output(s) meet deployment conventions")
        for name, key in found.items():
            print(f"  {name}: {outputs[key]}")
    return EXIT_OK


COMMANDS = {
    "ready": cmd_ready,
    "diagnose": cmd_diagnose,
    "run": cmd_run,
    "contracts": cmd_contracts,
    "outputs": cmd_outputs,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the ``meshcheck`` console script."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = Config.load_runtime_config()
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return EXIT_USAGE

    setup_logging(args.log_level or config.log_level, config.log_dir or None)

    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        return EXIT_USAGE
    logger.debug(f"Configuration: {config.get_startup_summary()}")

    ctx = CommandContext(config)
    try:
        return COMMANDS[args.command](args, ctx)
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return EXIT_FAILED
    finally:
        ctx.probe_client.close()
