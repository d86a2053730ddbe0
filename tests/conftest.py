"""pytest configuration and shared fakes for Plan 10 tests."""

from __future__ import annotations

import asyncio
import re
import shlex
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from plan10.models import ServerRecord
from plan10.registry import ServerRegistry
from plan10.retry import RetryPolicy
from plan10.ssh_client import CommandResult, RemoteExecutor

_WRITE = re.compile(r"printf '%s\\n' (\S+) > (\S+)$")


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


@dataclass
class FakeHandle:
    name: str
    closed: bool = False


@dataclass
class FakeHost:
    files: dict[str, str] = field(default_factory=dict)
    commands: list[str] = field(default_factory=list)
    uploads: list[tuple[str, str]] = field(default_factory=list)


class FakeChannel:
    """In-memory RemoteChannel.

    ``delays`` maps a command substring to seconds of simulated work,
    ``failing`` maps a server name to command substrings that exit 1,
    ``connect_errors`` maps a server name to errors raised by successive
    connect attempts, ``responses`` maps an exact command to its exit code
    and stdout, ``host_delays`` maps a server name to seconds spent
    connecting.
    """

    def __init__(self, delays=None, failing=None, connect_errors=None, responses=None, connect_delay=0.0,
                 host_delays=None):
        self.delays: dict[str, float] = delays or {}
        self.failing: dict[str, set[str]] = failing or {}
        self.connect_errors: dict[str, list[Exception]] = connect_errors or {}
        self.responses: dict[str, tuple[int, str]] = responses or {}
        self.connect_delay = connect_delay
        self.host_delays: dict[str, float] = host_delays or {}
        self.hosts: dict[str, FakeHost] = defaultdict(FakeHost)
        self.connect_attempts: dict[str, int] = defaultdict(int)
        self.handles: list[FakeHandle] = []
        self.open = 0
        self.max_open = 0

    async def connect(self, record: ServerRecord) -> FakeHandle:
        self.connect_attempts[record.name] += 1
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if record.name in self.host_delays:
            await asyncio.sleep(self.host_delays[record.name])
        errors = self.connect_errors.get(record.name)
        if errors:
            raise errors.pop(0)
        handle = FakeHandle(record.name)
        self.handles.append(handle)
        self.open += 1
        self.max_open = max(self.max_open, self.open)
        return handle

    async def exec(self, handle: FakeHandle, command: str) -> CommandResult:
        host = self.hosts[handle.name]
        host.commands.append(command)
        for key, delay in self.delays.items():
            if key in command:
                await asyncio.sleep(delay)

        for key in self.failing.get(handle.name, ()):
            if key in command:
                return CommandResult(command, "", "boom", 1)

        if command in self.responses:
            code, stdout = self.responses[command]
            return CommandResult(command, stdout, "", code)

        if command.startswith("echo "):
            return CommandResult(command, " ".join(shlex.split(command)[1:]) + "\n", "", 0)

        if command.startswith("cat -- "):
            path = command[len("cat -- "):]
            if path in host.files:
                return CommandResult(command, host.files[path], "", 0)
            return CommandResult(command, "", "No such file or directory", 1)

        match = _WRITE.search(command)
        if match:
            host.files[match.group(2)] = match.group(1) + "\n"
        return CommandResult(command, "", "", 0)

    async def put_file(self, handle: FakeHandle, local_path: Path, remote_path: str) -> None:
        self.hosts[handle.name].uploads.append((str(local_path), remote_path))

    async def close(self, handle: FakeHandle) -> None:
        handle.closed = True
        self.open -= 1


def make_record(name: str, /, **overrides) -> ServerRecord:
    values = {"name": name, "host": f"{name}.local", "user": "admin"}
    values.update(overrides)
    return ServerRecord(**values)


@pytest.fixture
def registry_path(tmp_path) -> Path:
    return tmp_path / "plan10" / "servers.yaml"


@pytest.fixture
def registry(registry_path) -> ServerRegistry:
    return ServerRegistry(registry_path)


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def no_wait_policy() -> RetryPolicy:
    async def _no_sleep(_delay: float) -> None:
        return None

    return RetryPolicy(max_attempts=3, base_delay=0.0, sleep=_no_sleep)


@pytest.fixture
def executor(channel, no_wait_policy) -> RemoteExecutor:
    return RemoteExecutor(channel, retry_policy=no_wait_policy, connect_timeout=1.0, command_timeout=5.0)
