"""Health check module for agentplan readiness.

Provides health checks for the GitHub CLI, its authentication, the agent
worker binary and the project roadmap. Each check returns a CheckResult
with status and actionable message.

Includes OpenTelemetry instrumentation for traces and metrics.
"""

import shutil
import subprocess
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Literal

from opentelemetry import metrics, trace

from agentplan.config import AgentPlanConfig
from agentplan.plan_parser import parse_roadmap
from agentplan.plan_store import ROADMAP_FILE

# Module-level telemetry instruments
_tracer: trace.Tracer | None = None
_health_checks_counter: metrics.Counter | None = None


def _init_telemetry() -> None:
    """Initialize telemetry instruments for health checks.

    Safe to call multiple times - will re-create instruments with current providers.
    """
    global _tracer, _health_checks_counter

    _tracer = trace.get_tracer("agentplan.health")
    meter = metrics.get_meter("agentplan.health")

    _health_checks_counter = meter.create_counter(
        "agentplan_health_checks_total",
        description="Total health checks performed",
    )


@dataclass
class CheckResult:
    """Result of a single health check.

    Attributes:
        status: Check result - "ok", "failed", or "skipped"
        message: Human-readable message explaining the status
        check_name: Name of the check that produced this result
    """

    status: Literal["ok", "failed", "skipped"]
    message: str
    check_name: str


@dataclass
class HealthReport:
    """Aggregated health report from all checks.

    Attributes:
        status: Overall status - "healthy" if no check failed, "unhealthy" otherwise
        timestamp: When the health check was performed
        checks: Map of check name to CheckResult
    """

    status: Literal["healthy", "unhealthy"]
    timestamp: datetime
    checks: dict[str, CheckResult] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Serialize to JSON-compatible dict."""
        return {
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
            "checks": {
                name: {"status": r.status, "message": r.message}
                for name, r in self.checks.items()
            },
        }


# Check dependencies - which checks must pass before others can run
CHECK_DEPENDENCIES: dict[str, list[str]] = {
    "gh_cli": [],
    "gh_auth": ["gh_cli"],
    "agent_binary": [],
    "roadmap": [],
}

CHECK_ORDER: list[str] = ["gh_cli", "gh_auth", "agent_binary", "roadmap"]

DEFAULT_TIMEOUT = 5


def check_gh_cli(timeout: float = DEFAULT_TIMEOUT) -> CheckResult:
    """Check that the GitHub CLI is installed."""
    try:
        result = subprocess.run(
            ["gh", "--version"],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return CheckResult(
            status="failed",
            message=f"check timed out after {timeout}s",
            check_name="gh_cli",
        )
    except FileNotFoundError:
        return CheckResult(
            status="failed",
            message="gh not installed - see https://cli.github.com",
            check_name="gh_cli",
        )

    if result.returncode != 0:
        return CheckResult(
            status="failed",
            message=f"gh --version exited with {result.returncode}",
            check_name="gh_cli",
        )

    lines = result.stdout.strip().splitlines()
    return CheckResult(
        status="ok",
        message=lines[0] if lines else "installed",
        check_name="gh_cli",
    )


def check_gh_auth(timeout: float = DEFAULT_TIMEOUT) -> CheckResult:
    """Check that the GitHub CLI is logged in."""
    try:
        result = subprocess.run(
            ["gh", "auth", "status"],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return CheckResult(
            status="failed",
            message=f"check timed out after {timeout}s",
            check_name="gh_auth",
        )
    except FileNotFoundError:
        return CheckResult(
            status="failed",
            message="gh not installed",
            check_name="gh_auth",
        )

    if result.returncode == 0:
        return CheckResult(status="ok", message="authenticated", check_name="gh_auth")
    return CheckResult(
        status="failed",
        message="not logged in - run 'gh auth login'",
        check_name="gh_auth",
    )


def check_agent_binary(config: AgentPlanConfig) -> CheckResult:
    """Check that the agent worker command resolves to an executable."""
    binary = config.agent_command[0] if config.agent_command else ""
    path = shutil.which(binary) if binary else None
    if path is None:
        return CheckResult(
            status="failed",
            message=f"'{binary}' not found on PATH - set AGENTPLAN_AGENT_COMMAND",
            check_name="agent_binary",
        )
    return CheckResult(status="ok", message=path, check_name="agent_binary")


def check_roadmap(config: AgentPlanConfig) -> CheckResult:
    """Check that the roadmap exists and has a phase to work on."""
    path = config.project_root / ROADMAP_FILE
    if not path.exists():
        return CheckResult(
            status="failed",
            message=f"{ROADMAP_FILE} not found in {config.project_root}",
            check_name="roadmap",
        )

    _, phases = parse_roadmap(path.read_text(encoding="utf-8"))
    if not phases:
        return CheckResult(
            status="failed",
            message="no '### Phase N: name' headings in roadmap",
            check_name="roadmap",
        )

    open_phases = [p for p in phases if p.status != "completed"]
    return CheckResult(
        status="ok",
        message=f"{len(phases)} phases, {len(open_phases)} open",
        check_name="roadmap",
    )


def _run_check_with_telemetry(
    check_name: str,
    check_fn: Callable[[], CheckResult],
) -> CheckResult:
    """Run a health check inside a span and count it."""
    global _tracer, _health_checks_counter

    if _tracer is None:
        _init_telemetry()

    with _tracer.start_as_current_span(f"agentplan.health.{check_name}") as span:
        result = check_fn()

        span.set_attribute("check.status", result.status)
        span.set_attribute("check.message", result.message)

        if _health_checks_counter is not None:
            _health_checks_counter.add(
                1, {"check": check_name, "status": result.status}
            )

        return result


def get_health(
    config: AgentPlanConfig | None = None,
    checks: list[str] | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> HealthReport:
    """Run health checks and return aggregated report.

    Runs checks in dependency order. If a check fails, dependent checks
    are skipped (marked as 'skipped' status).

    Args:
        config: Configuration to check against (from environment if None)
        checks: List of check names to run. If None, run all checks.
        timeout: Maximum seconds to wait for each subprocess check.
    """
    config = config or AgentPlanConfig.from_env()
    checks_to_run = checks if checks is not None else CHECK_ORDER
    results: dict[str, CheckResult] = {}
    failed_checks: set[str] = set()

    for check_name in checks_to_run:
        if check_name not in CHECK_DEPENDENCIES:
            raise ValueError(f"Unknown check: {check_name}")

    for check_name in CHECK_ORDER:
        if check_name not in checks_to_run:
            continue

        deps = CHECK_DEPENDENCIES.get(check_name, [])
        failed_deps = [dep for dep in deps if dep in failed_checks]
        if failed_deps:
            results[check_name] = CheckResult(
                status="skipped",
                message=f"{failed_deps[0]} check failed",
                check_name=check_name,
            )
            continue

        if check_name == "gh_cli":
            result = _run_check_with_telemetry(check_name, lambda: check_gh_cli(timeout))
        elif check_name == "gh_auth":
            result = _run_check_with_telemetry(check_name, lambda: check_gh_auth(timeout))
        elif check_name == "agent_binary":
            result = _run_check_with_telemetry(
                check_name, lambda: check_agent_binary(config)
            )
        else:
            result = _run_check_with_telemetry(check_name, lambda: check_roadmap(config))

        results[check_name] = result
        if result.status == "failed":
            failed_checks.add(check_name)

    # Skipped checks don't count as failures
    overall: Literal["healthy", "unhealthy"] = (
        "unhealthy"
        if any(r.status == "failed" for r in results.values())
        else "healthy"
    )

    return HealthReport(
        status=overall,
        timestamp=datetime.now(timezone.utc),
        checks=results,
    )
