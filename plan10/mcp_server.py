"""
MCP Server for Plan 10 fleet management

Exposes the server registry, power diagnostics and fleet deployment as MCP
tools. Every tool returns a JSON document with an ``exit_code`` field
(0 ok, 1 configuration error, 2 bad request, 3 partial failure or
critical findings).

Usage:
    # Run standalone
    python -m plan10.mcp_server

    # Or test with MCP inspector
    npx @modelcontextprotocol/inspector python -m plan10.mcp_server
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from mcp.server.fastmcp import FastMCP
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from . import __version__
from .config import Settings, configure_logging
from .deploy import DeploymentOrchestrator
from .diagnostics import STANDARD_RULES, diagnostics_exit_code, evaluate, summarize
from .errors import ConfigError, Plan10Error, ValidationError
from .models import ExitCode, Payload, PayloadFile, ServerRecord, TargetSelector
from .registry import ServerRegistry
from .snapshot import collect_local_snapshot, fetch_remote_snapshot, pmset_command
from .ssh_client import RemoteExecutor

logger = logging.getLogger(__name__)

mcp = FastMCP("plan10_fleet")


@dataclass
class FleetContext:
    settings: Settings
    registry: ServerRegistry
    executor: RemoteExecutor
    orchestrator: DeploymentOrchestrator

    @classmethod
    def from_settings(cls, settings: Settings) -> "FleetContext":
        registry = ServerRegistry(settings.registry_path)
        executor = RemoteExecutor.from_settings(settings)
        return cls(settings, registry, executor, DeploymentOrchestrator(registry, executor))


# Built on first use so that import never touches the environment
_context: Optional[FleetContext] = None


def _get_context() -> FleetContext:
    global _context
    if _context is None:
        _context = FleetContext.from_settings(Settings.from_env())
    return _context


# =============================================================================
# Input Models (Pydantic)
# =============================================================================

class PingInput(BaseModel):
    """Input for the ping tool - used to test if the server is responding."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    message: Optional[str] = Field(default="ping", description="Optional message to echo back", max_length=100)


class ListServersInput(BaseModel):
    """Input for listing registered servers."""

    model_config = ConfigDict(extra="forbid")

    tags: list[str] = Field(default_factory=list, description="Only servers carrying all of these tags")


class AddServerInput(BaseModel):
    """Input for registering a new server."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    name: str = Field(..., description="Unique server name", pattern=r"^[A-Za-z0-9._-]+$", max_length=64)
    host: str = Field(..., description="Hostname or IP", min_length=1, max_length=255)
    user: str = Field(..., description="SSH user", min_length=1, max_length=64)
    port: int = Field(default=22, ge=1, le=65535)
    auth_key_path: Optional[str] = Field(default=None, description="Private key for this server")
    tags: list[str] = Field(default_factory=lambda: ["manual"])
    check_connection: bool = Field(default=True, description="Try to connect once after registering")


class RemoveServerInput(BaseModel):
    """Input for removing a registered server."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    name: str = Field(..., min_length=1, max_length=64)


class DiagnoseInput(BaseModel):
    """Input for checking the power settings of one server."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    server: Optional[str] = Field(
        default=None,
        description="Registered server name or host; omit to use PLAN10_HOST or this machine",
    )


class PayloadFileInput(BaseModel):
    """One file to push, with its destination on the server."""

    model_config = ConfigDict(extra="forbid")

    local_path: str = Field(..., min_length=1)
    remote_path: str = Field(..., min_length=1)
    executable: bool = False


class DeployInput(BaseModel):
    """Input for pushing a payload to one or many servers."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    servers: list[str] = Field(default_factory=list, description="Server names; empty means all enabled")
    tags: list[str] = Field(default_factory=list, description="Only servers carrying all of these tags")
    payload_name: str = Field(default="custom", pattern=r"^[A-Za-z0-9._-]+$")
    files: list[PayloadFileInput] = Field(default_factory=list)
    commands: list[str] = Field(default_factory=list, description="Setup commands run after the transfer")
    standard_root: Optional[str] = Field(
        default=None,
        description="Deploy the stock Plan 10 bundle from this checkout instead of files/commands",
    )
    scripts_only: bool = False
    config_only: bool = False
    concurrency: Optional[int] = Field(default=None, ge=1, le=64)
    per_target_timeout: Optional[float] = Field(default=None, gt=0)
    overall_timeout: Optional[float] = Field(default=None, gt=0)


# =============================================================================
# Helper Functions
# =============================================================================

def _dump(document: dict[str, Any]) -> str:
    return json.dumps(document, indent=2)


def _error(e: Exception) -> str:
    """Format a request-level failure."""
    if isinstance(e, ValidationError):
        code = ExitCode.USAGE
    else:
        code = ExitCode.ERROR
    return _dump({"success": False, "error": str(e), "error_kind": type(e).__name__, "exit_code": int(code)})


def _server_info(record: ServerRecord) -> dict[str, Any]:
    info = record.to_document()
    info.pop("auth_key_path", None)
    return info


def _build_payload(params: DeployInput) -> Payload:
    if params.standard_root:
        return Payload.standard(
            Path(params.standard_root).expanduser(),
            scripts_only=params.scripts_only,
            config_only=params.config_only,
        )
    if not params.files and not params.commands:
        raise ValidationError("Nothing to deploy: give files, commands or standard_root")
    return Payload(
        name=params.payload_name,
        files=tuple(
            PayloadFile(local_path=Path(f.local_path).expanduser(), remote_path=f.remote_path, executable=f.executable)
            for f in params.files
        ),
        commands=tuple(params.commands),
    )


# =============================================================================
# MCP Tool Definitions
# =============================================================================

@mcp.tool(name="ping")
async def ping(params: PingInput) -> str:
    """
    Test if the MCP server is responding.

    Args:
        params: PingInput containing optional message

    Returns:
        JSON response with status and echoed message
    """
    return _dump({"status": "pong", "message": params.message, "server": "plan10_fleet", "version": __version__})


@mcp.tool(name="list_servers")
async def list_servers(params: ListServersInput) -> str:
    """
    List registered servers in the order they were added.

    Args:
        params: Optional tag filter

    Returns:
        JSON list of servers (key paths omitted)
    """
    try:
        registry = _get_context().registry
    except Plan10Error as e:
        return _error(e)
    servers = [_server_info(r) for r in registry.list(params.tags)]
    return _dump({"count": len(servers), "servers": servers, "exit_code": int(ExitCode.SUCCESS)})


@mcp.tool(name="add_server")
async def add_server(params: AddServerInput) -> str:
    """
    Register a new server. Fails if the name is already taken.

    The server is kept even when the follow-up connection test fails, so
    machines that are offline right now can still be registered.

    Args:
        params: Connection details

    Returns:
        JSON with the stored record and whether it answered
    """
    try:
        ctx = _get_context()
        record = ServerRecord(
            name=params.name,
            host=params.host,
            user=params.user,
            port=params.port,
            auth_key_path=params.auth_key_path,
            tags=frozenset(params.tags),
        )
        ctx.registry.add(record)
    except PydanticValidationError as e:
        return _error(ValidationError(str(e)))
    except Plan10Error as e:
        return _error(e)

    reachable = None
    if params.check_connection:
        try:
            async with ctx.executor.session(record) as session:
                reachable = await ctx.executor.test_connection(session)
        except Plan10Error as e:
            logger.warning("Added %s but could not connect: %s", record.name, e)
            reachable = False
    return _dump({
        "success": True,
        "server": _server_info(record),
        "reachable": reachable,
        "exit_code": int(ExitCode.SUCCESS),
    })


@mcp.tool(name="remove_server")
async def remove_server(params: RemoveServerInput) -> str:
    """
    Remove a server from the registry.

    Args:
        params: Name of the server

    Returns:
        JSON confirmation
    """
    try:
        _get_context().registry.remove(params.name)
    except Plan10Error as e:
        return _error(e)
    return _dump({"success": True, "removed": params.name, "exit_code": int(ExitCode.SUCCESS)})


@mcp.tool(name="list_rules")
async def list_rules() -> str:
    """
    List the power diagnostic rules and the thresholds they use.

    Returns:
        JSON with every rule id, severity and suggested fix
    """
    try:
        thresholds = _get_context().settings.thresholds
    except Plan10Error as e:
        return _error(e)
    rules = [
        {
            "id": rule.id,
            "severity": rule.severity.value,
            "message": rule.message_template,
            "fix": rule.fix_command,
            "requires_battery": rule.requires_battery,
        }
        for rule in STANDARD_RULES
    ]
    return _dump({"count": len(rules), "rules": rules, "thresholds": thresholds.model_dump()})


@mcp.tool(name="diagnose_power")
async def diagnose_power(params: DiagnoseInput) -> str:
    """
    Check a server's power and sleep settings for anything that would stop
    it running as an always-on server.

    Args:
        params: Server to inspect (defaults to PLAN10_HOST, then this machine)

    Returns:
        JSON with the snapshot, ordered findings and fix commands
    """
    try:
        ctx = _get_context()
        record = None
        if params.server:
            record = ctx.registry.resolve(params.server)
            if record is None:
                raise ValidationError(f"Server '{params.server}' not found")
        else:
            record = ctx.settings.default_record()

        if record is None:
            snapshot = await collect_local_snapshot()
        else:
            async with ctx.executor.session(record) as session:
                snapshot = await fetch_remote_snapshot(ctx.executor, session)
        findings = evaluate(snapshot, STANDARD_RULES, ctx.settings.thresholds_for(record))
    except (ConfigError, ValidationError) as e:
        return _error(e)
    except Plan10Error as e:
        return _dump({
            "success": False,
            "server": params.server,
            "error": str(e),
            "error_kind": type(e).__name__,
            "exit_code": int(ExitCode.PARTIAL_FAILURE),
        })

    return _dump({
        "success": True,
        "server": record.name if record else "localhost",
        "snapshot": snapshot.model_dump(mode="json"),
        "summary": summarize(findings),
        "findings": [
            {**f.model_dump(mode="json"), "command": pmset_command(f.fix_command) if f.fix_command else None}
            for f in findings
        ],
        "exit_code": int(diagnostics_exit_code(findings)),
    })


@mcp.tool(name="deploy")
async def deploy(params: DeployInput) -> str:
    """
    Push files and setup commands to one or many servers in parallel.

    Servers whose last deployment of the same payload is still current are
    left untouched. One failing server never stops the others.

    Args:
        params: Targets, payload and concurrency/timeout limits

    Returns:
        JSON summary with one entry per server, in completion order
    """
    try:
        ctx = _get_context()
        payload = _build_payload(params)
        summary = await ctx.orchestrator.run(
            TargetSelector(names=tuple(params.servers), tags=frozenset(params.tags)),
            payload,
            concurrency_limit=params.concurrency or ctx.settings.concurrency,
            per_target_timeout=params.per_target_timeout or ctx.settings.deployment_timeout,
            overall_timeout=params.overall_timeout,
        )
    except PydanticValidationError as e:
        return _error(ValidationError(str(e)))
    except (ConfigError, ValidationError) as e:
        return _error(e)
    return _dump({"success": summary.fully_succeeded, **summary.to_dict()})


# =============================================================================
# Main Entry Point
# =============================================================================

def main() -> None:
    """Run the MCP server over stdio."""
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    global _context
    _context = FleetContext.from_settings(settings)
    logger.info("Starting Plan 10 MCP server (registry: %s)", settings.registry_path)
    mcp.run()


if __name__ == "__main__":
    main()
