"""Tests for the fleet deployment orchestrator."""

import asyncio
import time

import pytest

from conftest import FakeChannel, make_record
from plan10.deploy import DeploymentOrchestrator
from plan10.errors import AuthFailure, ConnectTimeout, NotFound, ValidationError
from plan10.models import DeploymentState, ExitCode, Payload, PayloadFile, TargetSelector
from plan10.ssh_client import RemoteExecutor

MARKER = '"$HOME"/.plan10/deployments/tools.sha256'


@pytest.fixture
def script(tmp_path):
    path = tmp_path / "temp"
    path.write_text("#!/bin/sh\nsysctl -n machdep.xcpm.cpu_thermal_level\n")
    return path


@pytest.fixture
def payload(script):
    return Payload(
        name="tools",
        files=(PayloadFile(local_path=script, remote_path="~/scripts/temp", executable=True),),
        commands=("./setup.sh",),
    )


def fleet(registry, count, **record_options):
    names = [f"mac{i}" for i in range(count)]
    for name in names:
        registry.add(make_record(name, **record_options))
    return names


def orchestrator_for(registry, channel, no_wait_policy):
    return DeploymentOrchestrator(registry, RemoteExecutor(channel, retry_policy=no_wait_policy, command_timeout=5.0))


async def collect(iterator):
    return [result async for result in iterator]


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_bounded_by_limit(self, registry, payload, no_wait_policy):
        fleet(registry, 6)
        channel = FakeChannel(delays={"setup": 0.2})
        orchestrator = orchestrator_for(registry, channel, no_wait_policy)

        started = time.monotonic()
        summary = await orchestrator.run(TargetSelector(), payload, concurrency_limit=2)
        elapsed = time.monotonic() - started

        assert len(summary.succeeded) == 6
        assert channel.max_open == 2
        assert 0.55 <= elapsed < 1.5
        assert channel.open == 0

    @pytest.mark.asyncio
    async def test_limit_larger_than_fleet(self, registry, payload, no_wait_policy):
        fleet(registry, 3)
        channel = FakeChannel(delays={"setup": 0.1})
        orchestrator = orchestrator_for(registry, channel, no_wait_policy)

        summary = await orchestrator.run(TargetSelector(), payload, concurrency_limit=16)
        assert summary.fully_succeeded
        assert channel.max_open == 3

    @pytest.mark.asyncio
    async def test_results_in_completion_order(self, registry, payload, no_wait_policy):
        fleet(registry, 3)
        channel = FakeChannel(host_delays={"mac0": 0.3, "mac1": 0.1, "mac2": 0.2})
        orchestrator = orchestrator_for(registry, channel, no_wait_policy)

        results = await collect(orchestrator.deploy(TargetSelector(), payload, concurrency_limit=3))
        assert [r.target_name for r in results] == ["mac1", "mac2", "mac0"]


class TestIsolation:
    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_others(self, registry, payload, no_wait_policy):
        fleet(registry, 4)
        channel = FakeChannel(failing={"mac2": {"setup"}})
        orchestrator = orchestrator_for(registry, channel, no_wait_policy)

        summary = await orchestrator.run(TargetSelector(), payload, concurrency_limit=2)

        assert len(summary.succeeded) == 3
        assert [r.target_name for r in summary.failed] == ["mac2"]
        failed = summary.failed[0]
        assert failed.final_state is DeploymentState.FAILED
        assert failed.error_kind == "NonZeroExit"
        assert summary.outcome == "partial_failure"
        assert summary.exit_code is ExitCode.PARTIAL_FAILURE
        assert MARKER not in channel.hosts["mac2"].files

    @pytest.mark.asyncio
    async def test_auth_failure_is_captured_without_retry(self, registry, payload, no_wait_policy):
        fleet(registry, 2)
        channel = FakeChannel(connect_errors={"mac1": [AuthFailure("denied", host="mac1.local")]})
        orchestrator = orchestrator_for(registry, channel, no_wait_policy)

        summary = await orchestrator.run(TargetSelector(), payload)

        result = {r.target_name: r for r in summary.results}["mac1"]
        assert result.final_state is DeploymentState.FAILED
        assert result.error_kind == "AuthFailure"
        assert channel.connect_attempts["mac1"] == 1
        assert len(summary.succeeded) == 1

    @pytest.mark.asyncio
    async def test_transient_connect_errors_are_retried(self, registry, payload, no_wait_policy):
        fleet(registry, 1)
        channel = FakeChannel(connect_errors={"mac0": [ConnectTimeout("slow"), ConnectTimeout("slow")]})
        orchestrator = orchestrator_for(registry, channel, no_wait_policy)

        summary = await orchestrator.run(TargetSelector(), payload)
        assert summary.fully_succeeded
        assert channel.connect_attempts["mac0"] == 3

    @pytest.mark.asyncio
    async def test_total_failure(self, registry, payload, no_wait_policy):
        fleet(registry, 2)
        channel = FakeChannel(failing={"mac0": {"chmod"}, "mac1": {"chmod"}})
        orchestrator = orchestrator_for(registry, channel, no_wait_policy)

        summary = await orchestrator.run(TargetSelector(), payload)
        assert summary.outcome == "total_failure"
        assert summary.exit_code is ExitCode.PARTIAL_FAILURE
        assert summary.to_dict()["failed"] == 2


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_second_run_is_noop(self, registry, payload, no_wait_policy):
        fleet(registry, 2)
        channel = FakeChannel()
        orchestrator = orchestrator_for(registry, channel, no_wait_policy)

        first = await orchestrator.run(TargetSelector(), payload)
        assert not any(r.noop for r in first.results)
        uploads = {name: list(host.uploads) for name, host in channel.hosts.items()}
        assert channel.hosts["mac0"].files[MARKER].strip() == payload.checksum()

        second = await orchestrator.run(TargetSelector(), payload)
        assert second.fully_succeeded
        assert all(r.noop for r in second.results)
        assert {name: host.uploads for name, host in channel.hosts.items()} == uploads

    @pytest.mark.asyncio
    async def test_changed_payload_is_reapplied(self, registry, payload, script, no_wait_policy):
        fleet(registry, 1)
        channel = FakeChannel()
        orchestrator = orchestrator_for(registry, channel, no_wait_policy)

        await orchestrator.run(TargetSelector(), payload)
        script.write_text("#!/bin/sh\necho changed\n")
        again = await orchestrator.run(TargetSelector(), payload)

        assert again.results[0].noop is False
        assert len(channel.hosts["mac0"].uploads) == 2


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_per_target_timeout(self, registry, no_wait_policy):
        fleet(registry, 2)
        slow = Payload(name="slow", commands=("sleep-forever",))
        channel = FakeChannel(delays={"sleep-forever": 2.0})
        orchestrator = orchestrator_for(registry, channel, no_wait_policy)

        summary = await orchestrator.run(TargetSelector(), slow, per_target_timeout=0.1)

        assert [r.final_state for r in summary.results] == [DeploymentState.TIMED_OUT] * 2
        assert channel.open == 0

    @pytest.mark.asyncio
    async def test_overall_timeout_reports_every_target(self, registry, no_wait_policy):
        fleet(registry, 4)
        slow = Payload(name="slow", commands=("work",))
        channel = FakeChannel(delays={"work": 0.3})
        orchestrator = orchestrator_for(registry, channel, no_wait_policy)

        started = time.monotonic()
        summary = await orchestrator.run(TargetSelector(), slow, concurrency_limit=1, overall_timeout=0.45)
        elapsed = time.monotonic() - started

        assert elapsed < 1.0
        states = {r.target_name: r.final_state for r in summary.results}
        assert len(states) == 4
        assert states["mac0"] is DeploymentState.SUCCEEDED
        assert [states[n] for n in ("mac1", "mac2", "mac3")] == [DeploymentState.TIMED_OUT] * 3
        assert channel.open == 0


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_before_start(self, registry, payload, no_wait_policy):
        fleet(registry, 3)
        channel = FakeChannel()
        orchestrator = orchestrator_for(registry, channel, no_wait_policy)
        cancel = asyncio.Event()
        cancel.set()

        summary = await orchestrator.run(TargetSelector(), payload, cancel_event=cancel)

        assert [r.final_state for r in summary.results] == [DeploymentState.CANCELLED] * 3
        assert sum(channel.connect_attempts.values()) == 0

    @pytest.mark.asyncio
    async def test_cancel_midway(self, registry, payload, no_wait_policy):
        fleet(registry, 3)
        channel = FakeChannel(delays={"setup": 0.2})
        orchestrator = orchestrator_for(registry, channel, no_wait_policy)
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.1, cancel.set)

        summary = await orchestrator.run(TargetSelector(), payload, concurrency_limit=1, cancel_event=cancel)

        assert [r.final_state for r in summary.results] == [DeploymentState.CANCELLED] * 3
        assert sum(channel.connect_attempts.values()) == 1
        assert MARKER not in channel.hosts["mac0"].files
        assert channel.open == 0


class TestValidation:
    @pytest.mark.parametrize(
        "options",
        [
            {"concurrency_limit": 0},
            {"per_target_timeout": 0},
            {"overall_timeout": -1},
        ],
    )
    def test_bad_limits_fail_before_connecting(self, registry, payload, channel, executor, options):
        fleet(registry, 2)
        orchestrator = DeploymentOrchestrator(registry, executor)
        with pytest.raises(ValidationError):
            orchestrator.deploy(TargetSelector(), payload, **options)
        assert sum(channel.connect_attempts.values()) == 0

    def test_unknown_target(self, registry, payload, executor):
        fleet(registry, 1)
        orchestrator = DeploymentOrchestrator(registry, executor)
        with pytest.raises(NotFound):
            orchestrator.deploy(TargetSelector(names=("mac0", "ghost")), payload)

    def test_no_targets(self, registry, payload, executor):
        orchestrator = DeploymentOrchestrator(registry, executor)
        with pytest.raises(ValidationError):
            orchestrator.deploy(TargetSelector(), payload)

    def test_unreadable_payload(self, registry, tmp_path, executor):
        fleet(registry, 1)
        broken = Payload(name="broken", files=(PayloadFile(local_path=tmp_path / "absent", remote_path="~/x"),))
        orchestrator = DeploymentOrchestrator(registry, executor)
        with pytest.raises(ValidationError):
            orchestrator.deploy(TargetSelector(), broken)

    def test_disabled_targets_are_skipped(self, registry, payload, executor):
        registry.add(make_record("off", enabled=False))
        orchestrator = DeploymentOrchestrator(registry, executor)
        with pytest.raises(ValidationError):
            orchestrator.deploy(TargetSelector(), payload)


class TestSteps:
    @pytest.mark.asyncio
    async def test_commands_run_in_order(self, registry, payload, channel, executor):
        fleet(registry, 1)
        orchestrator = DeploymentOrchestrator(registry, executor)

        summary = await orchestrator.run(TargetSelector(), payload)

        commands = channel.hosts["mac0"].commands
        assert commands[0] == f"cat -- {MARKER}"
        assert commands[1] == 'chmod +x "$HOME"/scripts/temp'
        assert commands[2] == "./setup.sh"
        assert commands[3].endswith(f"> {MARKER}")
        assert summary.results[0].output.startswith("copied ~/scripts/temp")
        assert summary.to_dict()["outcome"] == "success"
