# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/deploy_flake/deploy/machine.py

"""
Per-host deployment state machine.

Each stage is its own frozen dataclass carrying only what is valid in that
stage; HostDeploymentMachine.advance() is the single, forward-only
transition function. The sequence is:

  NotStarted -> HealthChecking -> TransferringClosure -> Building
    -> Activating -> GateChecking -> Committing -> Succeeded

HealthChecking may end in Aborted (unhealthy, nothing touched); any stage
may end in Failed, which records the stage it happened in. Nothing is
retried here: a retry is the operator running the whole deploy again.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, ClassVar, Optional, Union

from ..config.models import DeployConfig
from ..nixos.activator import DetachedActivator, unit_name
from ..nixos.builder import RemoteBuilder
from ..nixos.committer import BootCommitter
from ..nixos.errors import (
    ActivationFailed,
    DeployFlakeError,
    DeployTimeout,
    GateFailure,
    Interrupted,
    RemoteConnectionError,
    Unhealthy,
)
from ..nixos.gate import GateResult, PreActivateGate
from ..nixos.health import HealthChecker
from ..nixos.interface import RemoteSession
from ..nixos.models import (
    ActivationMode,
    ActivationRun,
    ActivationState,
    BuiltSystem,
    HealthReport,
    Target,
)
from ..nixos.transfer import ClosureTransfer
from ..observers.dispatcher import EventBus
from ..observers.events import (
    new_ctx,
    ActivationFinished,
    ActivationLaunched,
    BootCommitted,
    ClosureTransferred,
    GateChecked,
    HealthReported,
    HostDeployFailed,
    HostDeployStarted,
    HostDeploySucceeded,
    StageEntered,
    SystemBuilt,
)
from ..utils.retry import RetryError, retry
from .models import DeploymentResult, Outcome, Stage

log = logging.getLogger("deploy_flake")


class InvalidTransition(RuntimeError):
    """A stage was constructed without the data its preconditions demand."""


# ---------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class NotStarted:
    stage: ClassVar[Stage] = Stage.NOT_STARTED
    terminal: ClassVar[bool] = False


@dataclass(frozen=True)
class HealthChecking:
    stage: ClassVar[Stage] = Stage.HEALTH_CHECKING
    terminal: ClassVar[bool] = False


@dataclass(frozen=True)
class TransferringClosure:
    stage: ClassVar[Stage] = Stage.TRANSFERRING_CLOSURE
    terminal: ClassVar[bool] = False
    health: HealthReport

    def __post_init__(self):
        if not self.health.healthy:
            raise InvalidTransition("cannot change an unhealthy host")


@dataclass(frozen=True)
class Building:
    stage: ClassVar[Stage] = Stage.BUILDING
    terminal: ClassVar[bool] = False
    closure: str


@dataclass(frozen=True)
class Activating:
    stage: ClassVar[Stage] = Stage.ACTIVATING
    terminal: ClassVar[bool] = False
    built: BuiltSystem


@dataclass(frozen=True)
class GateChecking:
    stage: ClassVar[Stage] = Stage.GATE_CHECKING
    terminal: ClassVar[bool] = False
    built: BuiltSystem
    activation: ActivationRun

    def __post_init__(self):
        if self.activation.state is not ActivationState.SUCCEEDED:
            raise InvalidTransition(f"activation {self.activation.unit} did not succeed")


@dataclass(frozen=True)
class Committing:
    stage: ClassVar[Stage] = Stage.COMMITTING
    terminal: ClassVar[bool] = False
    built: BuiltSystem
    activation: ActivationRun
    gate: GateResult

    def __post_init__(self):
        if self.activation.state is not ActivationState.SUCCEEDED:
            raise InvalidTransition(f"activation {self.activation.unit} did not succeed")


@dataclass(frozen=True)
class Succeeded:
    stage: ClassVar[Stage] = Stage.SUCCEEDED
    terminal: ClassVar[bool] = True
    built: BuiltSystem
    activation: ActivationRun


@dataclass(frozen=True)
class Aborted:
    stage: ClassVar[Stage] = Stage.HEALTH_CHECKING
    terminal: ClassVar[bool] = True
    health: HealthReport


@dataclass(frozen=True)
class Failed:
    terminal: ClassVar[bool] = True
    stage: Stage
    error: DeployFlakeError
    built: Optional[BuiltSystem] = None
    activation: Optional[ActivationRun] = None


State = Union[
    NotStarted, HealthChecking, TransferringClosure, Building,
    Activating, GateChecking, Committing, Succeeded, Aborted, Failed,
]


# ---------------------------------------------------------------------
# Machine
# ---------------------------------------------------------------------
class HostDeploymentMachine:
    """
    Drives one target through the deploy sequence.

    Owns its RemoteSession exclusively. `result` always holds the latest
    DeploymentResult, so an orchestrator giving up on this host can still
    report how far it got.
    """

    def __init__(
        self,
        target: Target,
        config: DeployConfig,
        *,
        source: str,
        connect: Callable[[Target], RemoteSession],
        transfer: Optional[ClosureTransfer] = None,
        health: Optional[HealthChecker] = None,
        builder: Optional[RemoteBuilder] = None,
        activator: Optional[DetachedActivator] = None,
        gate: Optional[PreActivateGate] = None,
        committer: Optional[BootCommitter] = None,
        bus: Optional[EventBus] = None,
        run_id: Optional[str] = None,
        stop: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
        token: Optional[str] = None,
    ):
        self.target = target
        self.config = config
        self.source = source
        self.connect = connect
        self.transfer = transfer or ClosureTransfer(config.ssh)
        self.health = health or HealthChecker()
        self.builder = builder or RemoteBuilder()
        self.activator = activator or DetachedActivator(log_tail_lines=config.log_tail_lines)
        self.gate = gate or PreActivateGate(sudo=config.gate_sudo)
        self.committer = committer or BootCommitter()
        self.bus = bus or EventBus()
        self.run_id = run_id or str(uuid.uuid4())
        self.stop = stop or threading.Event()
        self.deadline = deadline
        self.token = token or uuid.uuid4().hex[:8]

        self.session: Optional[RemoteSession] = None
        self.result = DeploymentResult(target=target)
        self._handlers = {
            NotStarted: self._start,
            HealthChecking: self._check_health,
            TransferringClosure: self._transfer_closure,
            Building: self._build,
            Activating: self._activate,
            GateChecking: self._check_gate,
            Committing: self._commit,
        }

    @property
    def name(self) -> str:
        return self.target.address

    def _ctx(self) -> dict:
        return new_ctx(run_id=self.run_id, host=self.name)

    # ------------------------- driving -------------------------

    def run(self) -> DeploymentResult:
        started = time.monotonic()
        state: State = NotStarted()
        try:
            while not state.terminal:
                state = self.advance(state)
                self._record(state)
        finally:
            self._close_session()

        if isinstance(state, Succeeded):
            self.bus.emit(HostDeploySucceeded(
                store_path=state.built.store_path,
                duration_ms=int((time.monotonic() - started) * 1000),
                **self._ctx(),
            ))
        else:
            self.bus.emit(HostDeployFailed(
                stage=self.result.stage.value,
                outcome=self.result.outcome.value,
                error_kind=self.result.error_kind or "",
                error=self.result.detail or "",
                **self._ctx(),
            ))
        return self.result

    def advance(self, state: State) -> State:
        """The one transition function: run the current stage, return the next one."""
        if state.terminal:
            raise InvalidTransition(f"{type(state).__name__} is terminal")

        handler = self._handlers[type(state)]
        if not isinstance(state, NotStarted):
            self.bus.emit(StageEntered(stage=state.stage.value, **self._ctx()))
        try:
            self._check_stop()
            return handler(state)
        except DeployFlakeError as exc:
            log.error("[%s] %s failed: %s", self.name, state.stage.value, exc.message)
            return Failed(
                stage=state.stage,
                error=exc,
                built=getattr(state, "built", None),
                activation=getattr(exc, "activation", None) or getattr(state, "activation", None),
            )

    def _check_stop(self) -> None:
        if self.stop.is_set():
            raise Interrupted(f"Deployment to {self.name} was interrupted")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise DeployTimeout(f"Deployment to {self.name} ran out of time")

    def _record(self, state: State) -> None:
        prev = self.result
        if isinstance(state, Failed):
            self.result = DeploymentResult(
                target=self.target,
                stage=state.stage,
                outcome=Outcome.FAILED,
                error_kind=state.error.kind,
                detail=state.error.format_message(),
                output=state.error.output,
                failed_units=prev.failed_units,
                store_path=state.built.store_path if state.built else prev.store_path,
                activation_unit=state.activation.unit if state.activation else prev.activation_unit,
            )
        elif isinstance(state, Aborted):
            err = Unhealthy(state.health.status, state.health.failed_units)
            self.result = DeploymentResult(
                target=self.target,
                stage=state.stage,
                outcome=Outcome.ABORTED,
                error_kind=err.kind,
                detail=err.format_message(),
                failed_units=state.health.failed_units,
            )
        elif isinstance(state, Succeeded):
            self.result = DeploymentResult(
                target=self.target,
                stage=Stage.SUCCEEDED,
                outcome=Outcome.SUCCEEDED,
                store_path=state.built.store_path,
                activation_unit=state.activation.unit,
            )
        else:
            built = getattr(state, "built", None)
            activation = getattr(state, "activation", None)
            self.result = DeploymentResult(
                target=self.target,
                stage=state.stage,
                store_path=built.store_path if built else prev.store_path,
                activation_unit=activation.unit if activation else prev.activation_unit,
            )

    # ------------------------- sessions -------------------------

    def _close_session(self) -> None:
        if self.session is not None:
            self.session.close()
            self.session = None

    def _reattach(self) -> RemoteSession:
        """Fresh session after the transport dropped mid-activation."""
        self._close_session()
        ssh = self.config.ssh

        def _on_retry(attempt: int, exc: Exception) -> None:
            log.warning("[%s] reconnect attempt %s/%s failed: %s", self.name, attempt, ssh.reconnect_attempts, exc)

        connect = retry(
            retries=ssh.reconnect_attempts,
            delay=ssh.reconnect_delay,
            retry_on=(RemoteConnectionError,),
            on_retry=_on_retry,
            sleep=self.stop.wait,
        )(self.connect)
        try:
            self.session = connect(self.target)
        except RetryError as exc:
            raise RemoteConnectionError(
                f"Could not reattach to {self.target.destination}",
                context=str(exc.last_error),
            ) from exc
        log.info("[%s] reattached", self.name)
        return self.session

    # ------------------------- stages -------------------------

    def _start(self, state: NotStarted) -> State:
        log.info("[%s] Starting deployment", self.name)
        self.bus.emit(HostDeployStarted(target=str(self.target), **self._ctx()))
        return HealthChecking()

    def _check_health(self, state: HealthChecking) -> State:
        self.session = self.connect(self.target)
        report = self.health.check(self.session)
        self.bus.emit(HealthReported(
            status=report.status,
            healthy=report.healthy,
            failed_units=list(report.failed_units),
            **self._ctx(),
        ))
        if not report.healthy:
            return Aborted(health=report)
        return TransferringClosure(health=report)

    def _transfer_closure(self, state: TransferringClosure) -> State:
        closure = self.transfer.transfer(self.target, self.source)
        self.bus.emit(ClosureTransferred(path=closure, **self._ctx()))
        return Building(closure=closure)

    def _build(self, state: Building) -> State:
        t0 = time.monotonic()
        profile = self.builder.resolve_profile(self.session, self.target)
        log.info("[%s] Building configuration %r", self.name, profile)
        built = self.builder.build(
            self.session,
            state.closure,
            profile,
            on_output=lambda line: log.debug("[%s] build | %s", self.name, line),
        )
        self.bus.emit(SystemBuilt(
            store_path=built.store_path,
            profile=built.profile,
            duration_ms=int((time.monotonic() - t0) * 1000),
            **self._ctx(),
        ))
        return Activating(built=built)

    def _activate(self, state: Activating) -> State:
        unit = unit_name(self.config.unit_prefix, ActivationMode.TEST, state.built, self.token)
        run = self.activator.launch(self.session, state.built, ActivationMode.TEST, unit=unit)
        self.bus.emit(ActivationLaunched(unit=run.unit, **self._ctx()))
        self.result = DeploymentResult(
            target=self.target,
            stage=Stage.ACTIVATING,
            store_path=state.built.store_path,
            activation_unit=run.unit,
        )

        try:
            run = self.activator.await_terminal(
                self.session,
                run,
                self.config.poll_interval,
                stop=self.stop,
                deadline=self.deadline,
                reconnect=self._reattach,
            )
        except Interrupted as exc:
            exc.context = f"Activation unit {run.unit} keeps running on {self.name}"
            raise

        self.bus.emit(ActivationFinished(
            unit=run.unit,
            state=run.state.value,
            exit_code=run.exit_code,
            **self._ctx(),
        ))
        try:
            self.activator.release(self.session, run)
        except RemoteConnectionError as exc:
            log.warning("[%s] could not unload %s: %s", self.name, run.unit, exc)

        if run.state is not ActivationState.SUCCEEDED:
            raise ActivationFailed(
                f"Test activation of {state.built.store_path} failed (exit code {run.exit_code})",
                context=f"Unit: {run.unit}",
                output=run.log_tail,
                exit_code=run.exit_code,
                activation=run,
            )
        log.info("[%s] Test activation succeeded", self.name)
        return GateChecking(built=state.built, activation=run)

    def _check_gate(self, state: GateChecking) -> State:
        script = self.config.pre_activate_script
        try:
            result = self.gate.check(self.session, state.built, script)
        except GateFailure:
            self.bus.emit(GateChecked(script=script, ok=False, **self._ctx()))
            raise
        self.bus.emit(GateChecked(script=result.script, ok=True, **self._ctx()))
        return Committing(built=state.built, activation=state.activation, gate=result)

    def _commit(self, state: Committing) -> State:
        self.committer.commit(self.session, state.built)
        self.bus.emit(BootCommitted(store_path=state.built.store_path, **self._ctx()))
        return Succeeded(built=state.built, activation=state.activation)
