"""plan10: keep a small fleet of laptops running as always-on servers."""

__version__ = "0.2.0"

from .config import Settings, SSHConfig, configure_logging
from .deploy import DeploymentOrchestrator, DeploymentSummary
from .diagnostics import STANDARD_RULES, evaluate
from .models import (
    DeploymentResult,
    DeploymentState,
    ExitCode,
    Finding,
    Payload,
    PayloadFile,
    PowerSnapshot,
    PowerSource,
    Rule,
    ServerRecord,
    Severity,
    TargetSelector,
    Thresholds,
)
from .registry import ServerRegistry
from .retry import RetryPolicy
from .ssh_client import RemoteExecutor
from .watch import WatchScheduler, remote_sampler

__all__ = [
    "Settings",
    "SSHConfig",
    "configure_logging",
    "DeploymentOrchestrator",
    "DeploymentSummary",
    "STANDARD_RULES",
    "evaluate",
    "DeploymentResult",
    "DeploymentState",
    "ExitCode",
    "Finding",
    "Payload",
    "PayloadFile",
    "PowerSnapshot",
    "PowerSource",
    "Rule",
    "ServerRecord",
    "Severity",
    "TargetSelector",
    "Thresholds",
    "ServerRegistry",
    "RetryPolicy",
    "RemoteExecutor",
    "WatchScheduler",
    "remote_sampler",
]
