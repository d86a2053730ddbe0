import hashlib
import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from pathlib import Path
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import InvalidTransition, ValidationError


class ExitCode(IntEnum):
    SUCCESS = 0
    ERROR = 1
    USAGE = 2
    PARTIAL_FAILURE = 3


# =============================================================================
# Registry
# =============================================================================

class Thresholds(BaseModel):
    """Tunable limits referenced by diagnostic rule predicates."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_halt_level_percent: int = Field(10, ge=0, le=100, description="Highest acceptable battery halt level")
    target_halt_level_percent: int = Field(5, ge=0, le=100, description="Halt level suggested by the fix")
    battery_warning_level: int = Field(20, ge=0, le=100, description="Warn below this charge on battery")
    battery_critical_level: int = Field(10, ge=0, le=100, description="Critical below this charge on battery")


class ServerRecord(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)

    name: str = Field(..., description="Unique logical name of the server", pattern=r"^[A-Za-z0-9._-]+$")
    host: str = Field(..., description="IP or DNS name", min_length=1)
    port: int = Field(22, ge=1, le=65535, description="SSH port")
    user: str = Field(..., description="SSH username", min_length=1)
    auth_key_path: Optional[str] = Field(None, description="Path to private key")
    tags: frozenset[str] = Field(default_factory=frozenset, description="Free-form labels, e.g. lab, office")
    enabled: bool = True
    threshold_overrides: dict[str, int] = Field(
        default_factory=dict,
        description="Per-host diagnostic threshold overrides",
    )

    @field_validator("threshold_overrides")
    @classmethod
    def _known_thresholds(cls, value: dict[str, int]) -> dict[str, int]:
        unknown = set(value) - set(Thresholds.model_fields)
        if unknown:
            raise ValueError(f"Unknown threshold(s): {', '.join(sorted(unknown))}")
        try:
            Thresholds(**value)
        except PydanticValidationError as e:
            raise ValueError(f"Invalid threshold override(s): {e}") from e
        return value

    @property
    def address(self) -> str:
        return f"{self.user}@{self.host}:{self.port}"

    def to_document(self) -> dict:
        """Plain mapping for the registry file (tags sorted for stable output)."""
        doc = self.model_dump(mode="json")
        doc["tags"] = sorted(self.tags)
        if not self.threshold_overrides:
            doc.pop("threshold_overrides")
        return doc


class TargetSelector(BaseModel):
    """Selects deployment / watch targets out of the registry."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    names: tuple[str, ...] = ()
    tags: frozenset[str] = frozenset()
    include_disabled: bool = False


# =============================================================================
# Diagnostics
# =============================================================================

class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.INFO: 0, Severity.WARNING: 1, Severity.CRITICAL: 2}


class PowerSource(str, Enum):
    AC = "ac"
    BATTERY = "battery"


class PowerSnapshot(BaseModel):
    """Point-in-time read of a host's power/sleep configuration.

    Settings the host does not report are None. ``battery_pct`` is None on
    hosts without a battery.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    sleep: Optional[int] = Field(None, description="System sleep timer in minutes, 0 = never")
    disk_sleep: Optional[int] = Field(None, description="Disk sleep timer in minutes, 0 = never")
    standby: Optional[bool] = None
    hibernate_mode: Optional[int] = None
    power_nap: Optional[bool] = None
    halt_level: Optional[int] = Field(None, description="Battery percentage at which the host halts")
    halt_after: Optional[int] = Field(None, description="Minutes on battery before halting, 0 = never")
    auto_power_off: Optional[bool] = None
    battery_pct: Optional[int] = Field(None, ge=0, le=100)
    power_source: PowerSource = PowerSource.AC
    caffeinate_pid: Optional[int] = None

    @property
    def has_battery(self) -> bool:
        return self.battery_pct is not None


class Finding(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_id: str
    severity: Severity
    message: str
    fix_command: Optional[str] = None


@dataclass(frozen=True)
class Rule:
    """One row of a diagnostic rule table.

    ``predicate`` returns True when the snapshot violates the rule.
    ``message_template`` is formatted with the snapshot and threshold
    fields. Rules with ``requires_battery`` are skipped for hosts that
    report no battery.
    """

    id: str
    predicate: Callable[[PowerSnapshot, Thresholds], bool]
    severity: Severity
    message_template: str
    fix_command: Optional[str] = None
    requires_battery: bool = False

    def render(self, snapshot: PowerSnapshot, thresholds: Thresholds) -> Finding:
        values = {**thresholds.model_dump(), **snapshot.model_dump()}
        fix = self.fix_command.format(**values) if self.fix_command else None
        return Finding(
            rule_id=self.id,
            severity=self.severity,
            message=self.message_template.format(**values),
            fix_command=fix,
        )


# =============================================================================
# Deployment
# =============================================================================

class PayloadFile(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    local_path: Path
    remote_path: str = Field(..., min_length=1)
    executable: bool = False


class Payload(BaseModel):
    """A named bundle of files and setup commands pushed to targets."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., pattern=r"^[A-Za-z0-9._-]+$")
    files: tuple[PayloadFile, ...] = ()
    commands: tuple[str, ...] = ()
    marker_dir: str = "~/.plan10/deployments"

    @property
    def marker_path(self) -> str:
        return f"{self.marker_dir.rstrip('/')}/{self.name}.sha256"

    def checksum(self) -> str:
        """SHA-256 over file contents, destinations, modes and commands.

        Raises:
            ValidationError: If a local file cannot be read
        """
        digest = hashlib.sha256()
        digest.update(self.name.encode())
        for item in self.files:
            try:
                content = Path(item.local_path).expanduser().read_bytes()
            except OSError as e:
                raise ValidationError(f"Cannot read payload file {item.local_path}: {e}") from e
            digest.update(item.remote_path.encode())
            digest.update(b"x" if item.executable else b"-")
            digest.update(hashlib.sha256(content).digest())
        for command in self.commands:
            digest.update(b"\0")
            digest.update(command.encode())
        return digest.hexdigest()

    @classmethod
    def standard(cls, root: Path, scripts_only: bool = False, config_only: bool = False) -> "Payload":
        """Build the stock server bundle from a Plan 10 checkout at ``root``."""
        root = Path(root)
        scripts = [
            PayloadFile(local_path=root / "scripts" / name, remote_path=f"~/scripts/{name}", executable=True)
            for name in ("temp", "battery", "power_diagnostics")
        ]
        scripts.append(
            PayloadFile(local_path=root / "scripts" / "setup_aliases.sh", remote_path="~/scripts/setup_aliases.sh")
        )
        setup = PayloadFile(local_path=root / "server_setup.sh", remote_path="~/server_setup.sh", executable=True)
        plist = PayloadFile(
            local_path=root / "caffeinate.plist",
            remote_path="~/Library/LaunchAgents/caffeinate.plist",
        )

        if scripts_only:
            return cls(name="plan10-scripts", files=tuple(scripts))
        if config_only:
            return cls(name="plan10-config", files=(plist, setup))
        return cls(name="plan10", files=(setup, *scripts, plist))


class DeploymentState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (DeploymentState.PENDING, DeploymentState.RUNNING)


_ALLOWED_TRANSITIONS = {
    DeploymentState.PENDING: {
        DeploymentState.RUNNING,
        DeploymentState.TIMED_OUT,
        DeploymentState.CANCELLED,
    },
    DeploymentState.RUNNING: {
        DeploymentState.SUCCEEDED,
        DeploymentState.FAILED,
        DeploymentState.TIMED_OUT,
        DeploymentState.CANCELLED,
    },
}


@dataclass(frozen=True)
class DeploymentResult:
    """Terminal outcome of one target's deployment."""

    target_name: str
    final_state: DeploymentState
    output: str = ""
    error: Optional[str] = None
    error_kind: Optional[str] = None
    noop: bool = False
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.final_state is DeploymentState.SUCCEEDED

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "target": self.target_name,
            "state": self.final_state.value,
            "output": self.output,
            "error": self.error,
            "error_kind": self.error_kind,
            "noop": self.noop,
            "duration": round(self.duration, 3),
        }


@dataclass
class DeploymentTask:
    """Mutable per-target state owned by the orchestrator for one batch."""

    target: ServerRecord
    payload: Payload
    state: DeploymentState = DeploymentState.PENDING
    output: str = ""
    error: Optional[str] = None
    error_kind: Optional[str] = None
    noop: bool = False
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    _result: Optional[DeploymentResult] = field(default=None, repr=False)

    def transition(self, new_state: DeploymentState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS.get(self.state, ()):
            raise InvalidTransition(
                f"{self.target.name}: cannot move from {self.state.value} to {new_state.value}"
            )
        now = time.monotonic()
        if new_state is DeploymentState.RUNNING:
            self.started_at = now
        if new_state.is_terminal:
            self.finished_at = now
        self.state = new_state

    def fail(self, state: DeploymentState, error: BaseException) -> None:
        self.error = str(error) or type(error).__name__
        self.error_kind = type(error).__name__
        self.transition(state)

    def result(self) -> DeploymentResult:
        if not self.state.is_terminal:
            raise InvalidTransition(f"{self.target.name}: task has not finished ({self.state.value})")
        if self._result is None:
            duration = 0.0
            if self.started_at is not None and self.finished_at is not None:
                duration = self.finished_at - self.started_at
            self._result = DeploymentResult(
                target_name=self.target.name,
                final_state=self.state,
                output=self.output,
                error=self.error,
                error_kind=self.error_kind,
                noop=self.noop,
                duration=duration,
            )
        return self._result
