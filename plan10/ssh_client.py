"""
SSH Client Module

Runs commands and copies files on registered servers. The transport is a
small capability (connect / exec / put_file / close) so the executor can be
driven by asyncssh in production and by an in-memory channel in tests.

Usage:
    from plan10.ssh_client import RemoteExecutor

    executor = RemoteExecutor.from_settings(settings)
    async with executor.session(record) as session:
        result = await executor.run_command(session, "whoami")
        print(result.stdout)
"""

import asyncio
import logging
import shlex
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Optional, Protocol

import asyncssh

from .config import Settings, SSHConfig
from .errors import (
    AuthFailure,
    CommandTimeout,
    ConnectTimeout,
    Disconnected,
    ExecutionError,
    NetworkUnreachable,
    NonZeroExit,
    PermissionDenied,
    TransferIOError,
)
from .models import ServerRecord
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Result of a remote command execution."""

    command: str
    stdout: str
    stderr: str
    exit_code: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def check(self) -> "CommandResult":
        """Return self, or raise NonZeroExit if the command failed."""
        if not self.success:
            raise NonZeroExit(self.command, self.exit_code, self.stderr)
        return self

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "command": self.command,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "success": self.success,
        }


def remote_path_arg(path: str) -> str:
    """Quote a remote path for the shell while keeping a leading ``~/``."""
    if path == "~":
        return '"$HOME"'
    if path.startswith("~/"):
        return '"$HOME"/' + shlex.quote(path[2:])
    return shlex.quote(path)


def _decode(data: Any) -> str:
    if data is None:
        return ""
    if isinstance(data, (bytes, bytearray, memoryview)):
        return bytes(data).decode("utf-8", errors="replace")
    return str(data)


class RemoteChannel(Protocol):
    """Capability the executor needs from a remote-shell transport.

    ``connect`` returns an opaque handle that the other calls accept.
    Implementations raise the package's connection / execution errors,
    never transport-library exceptions.
    """

    async def connect(self, record: ServerRecord) -> Any: ...

    async def exec(self, handle: Any, command: str) -> CommandResult: ...

    async def put_file(self, handle: Any, local_path: Path, remote_path: str) -> None: ...

    async def close(self, handle: Any) -> None: ...


class AsyncSSHChannel:
    """RemoteChannel backed by asyncssh (SFTP for file transfer)."""

    def __init__(self, config: SSHConfig):
        self.config = config

    async def connect(self, record: ServerRecord) -> asyncssh.SSHClientConnection:
        connect_opts: dict[str, Any] = {
            "host": record.host,
            "port": record.port,
            "username": record.user,
            "connect_timeout": self.config.connection_timeout,
        }

        key_path = record.auth_key_path or self.config.key_path
        if key_path:
            key_path = Path(key_path).expanduser()
            try:
                if self.config.key_passphrase:
                    connect_opts["client_keys"] = [
                        asyncssh.read_private_key(str(key_path), passphrase=self.config.key_passphrase)
                    ]
                else:
                    connect_opts["client_keys"] = [str(key_path)]
            except (asyncssh.KeyImportError, OSError) as e:
                raise AuthFailure(f"Cannot load key {key_path}: {e}", host=record.host) from e

        if self.config.known_hosts_path:
            connect_opts["known_hosts"] = str(self.config.known_hosts_path)
        else:
            # Tailscale/LAN fleet: host keys are not pinned unless configured
            connect_opts["known_hosts"] = None

        try:
            return await asyncssh.connect(**connect_opts)
        except (asyncssh.PermissionDenied, asyncssh.HostKeyNotVerifiable) as e:
            raise AuthFailure(f"Authentication failed for {record.address}: {e}", host=record.host) from e
        except asyncio.TimeoutError as e:
            raise ConnectTimeout(f"Timed out connecting to {record.address}", host=record.host) from e
        except (asyncssh.Error, OSError) as e:
            raise NetworkUnreachable(f"Cannot reach {record.address}: {e}", host=record.host) from e

    async def exec(self, handle: asyncssh.SSHClientConnection, command: str) -> CommandResult:
        try:
            result = await handle.run(command, check=False)
        except (asyncssh.ChannelOpenError, asyncssh.ConnectionLost, asyncssh.DisconnectError, OSError) as e:
            raise Disconnected(f"Connection lost while running '{command}': {e}") from e

        exit_code = result.exit_status if result.exit_status is not None else -1
        return CommandResult(
            command=command,
            stdout=_decode(result.stdout),
            stderr=_decode(result.stderr),
            exit_code=exit_code,
        )

    async def put_file(self, handle: asyncssh.SSHClientConnection, local_path: Path, remote_path: str) -> None:
        # SFTP paths are relative to the login directory, so "~/" is dropped
        target = remote_path[2:] if remote_path.startswith("~/") else remote_path
        try:
            async with handle.start_sftp_client() as sftp:
                parent = str(Path(target).parent)
                if parent not in ("", "."):
                    await sftp.makedirs(parent, exist_ok=True)
                await sftp.put(str(local_path), target)
        except asyncssh.SFTPPermissionDenied as e:
            raise PermissionDenied(f"Permission denied writing {remote_path}: {e}") from e
        except asyncssh.SFTPError as e:
            raise TransferIOError(f"Transfer to {remote_path} failed: {e}") from e
        except (asyncssh.ConnectionLost, asyncssh.DisconnectError, asyncssh.ChannelOpenError) as e:
            raise Disconnected(f"Connection lost while copying to {remote_path}: {e}") from e
        except OSError as e:
            raise TransferIOError(f"Cannot read {local_path}: {e}") from e

    async def close(self, handle: asyncssh.SSHClientConnection) -> None:
        handle.close()
        await handle.wait_closed()


class Session:
    """One open connection to one server. Not shared between workers."""

    def __init__(self, record: ServerRecord, channel: RemoteChannel, handle: Any):
        self.record = record
        self._channel = channel
        self._handle = handle
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def handle(self) -> Any:
        if self._closed:
            raise Disconnected(f"Session to {self.record.name} is closed")
        return self._handle

    async def close(self) -> None:
        """Release the connection. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        try:
            await self._channel.close(self._handle)
        except ExecutionError as e:
            logger.debug("Ignoring error while closing %s: %s", self.record.name, e)
        logger.debug("Closed session to %s", self.record.name)

    async def __aenter__(self) -> "Session":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


class RemoteExecutor:
    """
    Opens sessions and runs operations on remote servers.

    Connection attempts go through the retry policy; command and transfer
    failures are never retried here.
    """

    def __init__(
        self,
        channel: RemoteChannel,
        retry_policy: Optional[RetryPolicy] = None,
        connect_timeout: float = 30.0,
        command_timeout: float = 60.0,
    ):
        self.channel = channel
        self.retry_policy = retry_policy or RetryPolicy()
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "RemoteExecutor":
        """Create an asyncssh-backed executor from settings."""
        ssh = settings.ssh
        return cls(
            AsyncSSHChannel(ssh),
            retry_policy=RetryPolicy(
                max_attempts=ssh.connect_attempts,
                base_delay=ssh.backoff_base,
                max_delay=ssh.backoff_max,
            ),
            connect_timeout=ssh.connection_timeout,
            command_timeout=ssh.command_timeout,
        )

    async def connect(self, record: ServerRecord, connect_timeout: Optional[float] = None) -> Session:
        """
        Open a session to ``record``.

        Raises:
            AuthFailure: Immediately, without retrying
            ConnectTimeout, NetworkUnreachable: After the retry policy gives up
        """
        timeout = connect_timeout or self.connect_timeout

        async def attempt() -> Any:
            try:
                return await asyncio.wait_for(self.channel.connect(record), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise ConnectTimeout(
                    f"Timed out connecting to {record.address} after {timeout}s", host=record.host
                ) from e

        logger.debug("Connecting to %s", record.address)
        handle = await self.retry_policy.run(attempt, describe=f"connect to {record.name}")
        return Session(record, self.channel, handle)

    @asynccontextmanager
    async def session(
        self, record: ServerRecord, connect_timeout: Optional[float] = None
    ) -> AsyncIterator[Session]:
        """Session that is closed on every exit path, including cancellation."""
        session = await self.connect(record, connect_timeout)
        try:
            yield session
        finally:
            await asyncio.shield(session.close())

    async def run_command(
        self,
        session: Session,
        command: str,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """
        Execute a command on the remote server.

        A non-zero exit is returned, not raised; use ``CommandResult.check``.

        Raises:
            CommandTimeout: If the command does not finish within ``timeout``
            Disconnected: If the session is closed or drops
        """
        timeout = timeout or self.command_timeout
        logger.debug("[%s] $ %s", session.record.name, command)
        try:
            result = await asyncio.wait_for(self.channel.exec(session.handle, command), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise CommandTimeout(f"Command '{command}' timed out after {timeout} seconds") from e
        logger.debug("[%s] exit %d", session.record.name, result.exit_code)
        return result

    async def copy_file(self, session: Session, local_path: Path, remote_path: str) -> None:
        """
        Upload one file, creating missing remote parent directories.

        Raises:
            TransferIOError, PermissionDenied, Disconnected
        """
        local_path = Path(local_path).expanduser()
        if not local_path.is_file():
            raise TransferIOError(f"Local file not found: {local_path}")
        logger.debug("[%s] copy %s -> %s", session.record.name, local_path, remote_path)
        await self.channel.put_file(session.handle, local_path, remote_path)

    # =========================================================================
    # Convenience helpers
    # =========================================================================

    async def test_connection(self, session: Session) -> bool:
        result = await self.run_command(session, "echo 'connection test'")
        return result.success and result.stdout.strip() == "connection test"

    async def read_file(self, session: Session, remote_path: str) -> Optional[str]:
        """Contents of a small remote text file, or None if it is missing."""
        result = await self.run_command(session, f"cat -- {remote_path_arg(remote_path)}")
        return result.stdout if result.success else None

    async def write_file(self, session: Session, remote_path: str, content: str) -> None:
        """Write a one-line text value, creating the parent directory."""
        parent = remote_path.rsplit("/", 1)[0] if "/" in remote_path else "."
        command = (
            f"mkdir -p {remote_path_arg(parent)} && "
            f"printf '%s\\n' {shlex.quote(content)} > {remote_path_arg(remote_path)}"
        )
        (await self.run_command(session, command)).check()
