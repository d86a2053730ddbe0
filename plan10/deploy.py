"""
Fleet deployment.

Pushes a Payload to every server a TargetSelector resolves to, with at most
``concurrency_limit`` sessions open at once. Each target's outcome is
independent: connection and execution errors are recorded in that target's
DeploymentResult and the rest of the batch carries on.

Usage:
    orchestrator = DeploymentOrchestrator(registry, RemoteExecutor.from_settings(settings))

    async for result in orchestrator.deploy(TargetSelector(tags={"lab"}), payload):
        print(result.target_name, result.final_state.value)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

from .errors import ExecutionError, RemoteConnectionError, ValidationError
from .models import (
    DeploymentResult,
    DeploymentState,
    DeploymentTask,
    ExitCode,
    Payload,
    TargetSelector,
)
from .registry import ServerRegistry
from .ssh_client import RemoteExecutor, remote_path_arg

logger = logging.getLogger(__name__)


class DeploymentCancelled(Exception):
    """Raised inside a task when the batch's cancel signal is set."""
    pass


@dataclass
class DeploymentSummary:
    """Aggregate of one batch, in completion order."""

    payload: str
    checksum: str
    results: list[DeploymentResult] = field(default_factory=list)

    @property
    def succeeded(self) -> list[DeploymentResult]:
        return [r for r in self.results if r.succeeded]

    @property
    def failed(self) -> list[DeploymentResult]:
        return [r for r in self.results if not r.succeeded]

    @property
    def fully_succeeded(self) -> bool:
        return bool(self.results) and not self.failed

    @property
    def outcome(self) -> str:
        if self.fully_succeeded:
            return "success"
        if self.succeeded:
            return "partial_failure"
        return "total_failure"

    @property
    def exit_code(self) -> ExitCode:
        return ExitCode.SUCCESS if self.fully_succeeded else ExitCode.PARTIAL_FAILURE

    def to_dict(self) -> dict:
        return {
            "payload": self.payload,
            "checksum": self.checksum,
            "outcome": self.outcome,
            "exit_code": int(self.exit_code),
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "results": [r.to_dict() for r in self.results],
        }


class DeploymentOrchestrator:
    """
    Runs one DeploymentTask per target on a bounded pool of workers.

    Every worker owns the session of the task it is running; sessions are
    never shared. Results are yielded as tasks finish, not in submission
    order.
    """

    def __init__(self, registry: ServerRegistry, executor: RemoteExecutor):
        self.registry = registry
        self.executor = executor

    def deploy(
        self,
        targets: TargetSelector,
        payload: Payload,
        concurrency_limit: int = 4,
        per_target_timeout: float = 300.0,
        overall_timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[DeploymentResult]:
        """
        Validate the request and return an async iterator of results.

        Validation happens here, before any connection is opened.

        Args:
            targets: Which registered servers to deploy to
            payload: Files and commands to apply
            concurrency_limit: Maximum number of targets in flight
            per_target_timeout: Seconds one target may take end to end
            overall_timeout: Seconds the whole batch may take; unfinished
                targets are reported as timed out
            cancel_event: When set, no new targets start and running ones
                stop after their current remote operation

        Raises:
            ValidationError: Bad limits, no matching targets or unreadable
                payload files
            NotFound: An explicitly named target is not registered
        """
        tasks, checksum = self._prepare(targets, payload, concurrency_limit, per_target_timeout, overall_timeout)
        return self._execute(
            tasks,
            checksum,
            concurrency_limit,
            per_target_timeout,
            overall_timeout,
            cancel_event or asyncio.Event(),
        )

    async def run(self, targets: TargetSelector, payload: Payload, **options) -> DeploymentSummary:
        """Deploy and collect every result into a summary."""
        summary = DeploymentSummary(payload=payload.name, checksum=payload.checksum())
        async for result in self.deploy(targets, payload, **options):
            summary.results.append(result)
        logger.info(
            "Deployment of %s finished: %s (%d ok, %d not ok)",
            payload.name, summary.outcome, len(summary.succeeded), len(summary.failed),
        )
        return summary

    # =========================================================================
    # Internals
    # =========================================================================

    def _prepare(
        self,
        targets: TargetSelector,
        payload: Payload,
        concurrency_limit: int,
        per_target_timeout: float,
        overall_timeout: Optional[float],
    ) -> tuple[list[DeploymentTask], str]:
        if concurrency_limit < 1:
            raise ValidationError("concurrency_limit must be at least 1")
        if per_target_timeout <= 0:
            raise ValidationError("per_target_timeout must be positive")
        if overall_timeout is not None and overall_timeout <= 0:
            raise ValidationError("overall_timeout must be positive")

        records = self.registry.select(targets)
        if not records:
            raise ValidationError("No enabled servers match the requested targets")

        checksum = payload.checksum()
        return [DeploymentTask(target=r, payload=payload) for r in records], checksum

    async def _execute(
        self,
        tasks: list[DeploymentTask],
        checksum: str,
        concurrency_limit: int,
        per_target_timeout: float,
        overall_timeout: Optional[float],
        cancel_event: asyncio.Event,
    ) -> AsyncIterator[DeploymentResult]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + overall_timeout if overall_timeout else None

        pending: asyncio.Queue = asyncio.Queue()
        for task in tasks:
            pending.put_nowait(task)
        finished: asyncio.Queue = asyncio.Queue()

        logger.info(
            "Deploying %s (%s) to %d server(s), %d at a time",
            tasks[0].payload.name, checksum[:12], len(tasks), concurrency_limit,
        )
        workers = [
            asyncio.create_task(
                self._worker(pending, finished, checksum, per_target_timeout, cancel_event),
                name=f"deploy-worker-{i}",
            )
            for i in range(min(concurrency_limit, len(tasks)))
        ]

        remaining = len(tasks)
        try:
            while remaining:
                timeout = None if deadline is None else deadline - loop.time()
                try:
                    if timeout is not None and timeout <= 0:
                        raise asyncio.TimeoutError
                    result = await asyncio.wait_for(finished.get(), timeout=timeout)
                except asyncio.TimeoutError:
                    break
                remaining -= 1
                yield result

            if remaining:
                logger.warning("Overall timeout of %ss elapsed with %d server(s) unfinished", overall_timeout, remaining)
                await self._stop(workers)
                while not finished.empty():
                    yield finished.get_nowait()
                for task in tasks:
                    if not task.state.is_terminal:
                        task.fail(
                            DeploymentState.TIMED_OUT,
                            TimeoutError(f"Overall deployment timeout of {overall_timeout}s elapsed"),
                        )
                        yield task.result()
        finally:
            await self._stop(workers)

    @staticmethod
    async def _stop(workers: list[asyncio.Task]) -> None:
        for worker in workers:
            if not worker.done():
                worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

    async def _worker(
        self,
        pending: asyncio.Queue,
        finished: asyncio.Queue,
        checksum: str,
        per_target_timeout: float,
        cancel_event: asyncio.Event,
    ) -> None:
        while True:
            try:
                task = pending.get_nowait()
            except asyncio.QueueEmpty:
                return

            if cancel_event.is_set():
                task.fail(DeploymentState.CANCELLED, DeploymentCancelled("Deployment cancelled before start"))
                finished.put_nowait(task.result())
                continue

            finished.put_nowait(await self._run_task(task, checksum, per_target_timeout, cancel_event))

    async def _run_task(
        self,
        task: DeploymentTask,
        checksum: str,
        per_target_timeout: float,
        cancel_event: asyncio.Event,
    ) -> DeploymentResult:
        name = task.target.name
        task.transition(DeploymentState.RUNNING)
        try:
            await asyncio.wait_for(self._apply(task, checksum, cancel_event), timeout=per_target_timeout)
        except DeploymentCancelled as e:
            logger.warning("[%s] cancelled", name)
            task.fail(DeploymentState.CANCELLED, e)
        except asyncio.TimeoutError:
            logger.warning("[%s] timed out after %ss", name, per_target_timeout)
            task.fail(
                DeploymentState.TIMED_OUT,
                TimeoutError(f"Deployment to {name} exceeded {per_target_timeout}s"),
            )
        except (RemoteConnectionError, ExecutionError) as e:
            logger.warning("[%s] failed: %s", name, e)
            task.fail(DeploymentState.FAILED, e)
        except Exception as e:
            logger.exception("[%s] unexpected error", name)
            task.fail(DeploymentState.FAILED, e)
        else:
            task.transition(DeploymentState.SUCCEEDED)
            logger.info("[%s] %s", name, "up to date" if task.noop else "deployed")
        return task.result()

    @staticmethod
    def _check_cancelled(cancel_event: asyncio.Event, task: DeploymentTask) -> None:
        if cancel_event.is_set():
            raise DeploymentCancelled(f"Deployment to {task.target.name} cancelled")

    async def _apply(self, task: DeploymentTask, checksum: str, cancel_event: asyncio.Event) -> None:
        """connect -> compare marker -> transfer -> setup -> write marker -> release."""
        payload = task.payload
        executor = self.executor
        outputs: list[str] = []

        async with executor.session(task.target) as session:
            self._check_cancelled(cancel_event, task)
            marker = await executor.read_file(session, payload.marker_path)
            if marker is not None and marker.strip() == checksum:
                task.noop = True
                task.output = f"{payload.name} already at {checksum[:12]}; nothing to do"
                return

            for item in payload.files:
                self._check_cancelled(cancel_event, task)
                await executor.copy_file(session, item.local_path, item.remote_path)
                if item.executable:
                    chmod = f"chmod +x {remote_path_arg(item.remote_path)}"
                    (await executor.run_command(session, chmod)).check()
                outputs.append(f"copied {item.remote_path}")
                task.output = "\n".join(outputs)

            for command in payload.commands:
                self._check_cancelled(cancel_event, task)
                result = (await executor.run_command(session, command)).check()
                if result.stdout.strip():
                    outputs.append(result.stdout.strip())
                task.output = "\n".join(outputs)

            self._check_cancelled(cancel_event, task)
            await executor.write_file(session, payload.marker_path, checksum)
