# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/deploy_flake/deploy/orchestrator.py

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from ..config.models import DeployConfig
from ..nixos.errors import DeployFlakeError, RemoteConnectionError
from ..nixos.health import HealthChecker
from ..nixos.interface import RemoteSession
from ..nixos.models import Health, HealthReport, Target
from ..observers.dispatcher import EventBus
from ..observers.events import new_ctx, DeploySummary
from .models import DeploymentResult, Outcome, aggregate_exit_code

log = logging.getLogger("deploy_flake")

# how long to let workers wind down after Ctrl-C before reporting them
INTERRUPT_GRACE_SECONDS = 10.0


class Machine(Protocol):
    result: DeploymentResult

    def run(self) -> DeploymentResult: ...


MachineFactory = Callable[..., Machine]


class ParallelOrchestrator:
    """
    Runs one HostDeploymentMachine per target, each on its own daemon
    thread, and waits for all of them before aggregating.

    A failing host never cancels its siblings. When the overall timeout
    passes (or the operator interrupts), hosts that have not finished are
    reported as failed at the last stage they recorded; their threads are
    told to stop polling but anything already launched remotely is left
    alone.
    """

    def __init__(
        self,
        machine_factory: MachineFactory,
        *,
        bus: Optional[EventBus] = None,
        run_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.machine_factory = machine_factory
        self.bus = bus or EventBus()
        self.run_id = run_id or str(uuid.uuid4())
        self.clock = clock
        self.stop = threading.Event()
        self.exit_code: Optional[int] = None

    def run(self, targets: Iterable[Target], config: DeployConfig) -> Dict[Target, DeploymentResult]:
        targets = list(dict.fromkeys(targets))
        # one stop flag per run; the previous run left its flag set
        self.stop = threading.Event()
        deadline = self.clock() + config.timeout if config.timeout else None

        machines = {
            t: self.machine_factory(
                t,
                config,
                stop=self.stop,
                deadline=deadline,
                bus=self.bus,
                run_id=self.run_id,
            )
            for t in targets
        }

        finished: Dict[Target, DeploymentResult] = {}
        cond = threading.Condition()
        slots = threading.BoundedSemaphore(config.parallelism or max(len(targets), 1))

        def worker(target: Target, machine: Machine) -> None:
            try:
                while not slots.acquire(timeout=0.5):
                    if self.stop.is_set():
                        break
                else:
                    try:
                        result = machine.run()
                    finally:
                        slots.release()
                if self.stop.is_set() and not machine.result.terminal:
                    result = self._unfinished(machine.result, "Interrupted", "Interrupted before it could start")
            except Exception as exc:
                # per-host isolation: a bug in one worker becomes that host's result
                log.exception("[%s] deployment crashed", target.address)
                result = replace(
                    machine.result,
                    outcome=Outcome.FAILED,
                    error_kind="InternalError",
                    detail=f"{type(exc).__name__}: {exc}",
                )
            with cond:
                finished[target] = result
                cond.notify_all()

        for target, machine in machines.items():
            threading.Thread(
                target=worker,
                args=(target, machine),
                name=f"deploy-{target.address}",
                daemon=True,
            ).start()

        kind = "Timeout"
        try:
            self._wait(cond, finished, len(targets), deadline)
        except KeyboardInterrupt:
            log.warning("Interrupted: stopping local polling; launched activations keep running on their hosts")
            kind = "Interrupted"
            self.stop.set()
            self._wait(cond, finished, len(targets), self.clock() + INTERRUPT_GRACE_SECONDS)

        with cond:
            self.stop.set()
            results: Dict[Target, DeploymentResult] = {}
            for target in targets:
                if target in finished:
                    results[target] = finished[target]
                else:
                    last = machines[target].result
                    log.error("[%s] did not finish; last stage %s", target.address, last.stage.value)
                    results[target] = self._unfinished(
                        last,
                        kind,
                        f"Gave up waiting at {last.stage.value}; the step in progress may still complete on the host",
                    )

        self._summarize(results)
        return results

    def _wait(self, cond: threading.Condition, finished: dict, count: int, deadline: Optional[float]) -> None:
        with cond:
            while len(finished) < count:
                if deadline is None:
                    cond.wait()
                    continue
                remaining = deadline - self.clock()
                if remaining <= 0:
                    return
                cond.wait(timeout=remaining)

    @staticmethod
    def _unfinished(last: DeploymentResult, kind: str, detail: str) -> DeploymentResult:
        return replace(last, outcome=Outcome.FAILED, error_kind=kind, detail=detail)

    def _summarize(self, results: Dict[Target, DeploymentResult]) -> None:
        outcomes: List[Outcome] = [r.outcome for r in results.values()]
        self.exit_code = aggregate_exit_code(results.values())
        self.bus.emit(DeploySummary(
            succeeded=outcomes.count(Outcome.SUCCEEDED),
            aborted=outcomes.count(Outcome.ABORTED),
            failed=len(outcomes) - outcomes.count(Outcome.SUCCEEDED) - outcomes.count(Outcome.ABORTED),
            **new_ctx(run_id=self.run_id),
        ))


def check_all(
    targets: Iterable[Target],
    connect: Callable[[Target], RemoteSession],
    *,
    checker: Optional[HealthChecker] = None,
    parallelism: Optional[int] = None,
) -> Dict[Target, HealthReport]:
    """
    Read-only health check of every target, in parallel.
    Hosts that cannot be reached are reported UNHEALTHY with status "unreachable".
    """
    targets = list(dict.fromkeys(targets))
    checker = checker or HealthChecker()

    def _check(target: Target) -> HealthReport:
        try:
            session = connect(target)
        except RemoteConnectionError as exc:
            log.error("[%s] %s", target.address, exc.message)
            return HealthReport(overall=Health.UNHEALTHY, status="unreachable")
        try:
            return checker.check(session)
        except DeployFlakeError as exc:
            log.error("[%s] %s", target.address, exc.message)
            return HealthReport(overall=Health.UNHEALTHY, status="unreachable")
        finally:
            session.close()

    if not targets:
        return {}
    with ThreadPoolExecutor(max_workers=parallelism or len(targets)) as pool:
        reports = list(pool.map(_check, targets))
    return dict(zip(targets, reports))
