# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/deploy_flake/deploy/models.py

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from ..nixos.models import Target


class Stage(str, Enum):
    """Stages of one host deployment, in the only order they can happen."""
    NOT_STARTED = "NotStarted"
    HEALTH_CHECKING = "HealthChecking"
    TRANSFERRING_CLOSURE = "TransferringClosure"
    BUILDING = "Building"
    ACTIVATING = "Activating"
    GATE_CHECKING = "GateChecking"
    COMMITTING = "Committing"
    SUCCEEDED = "Succeeded"

    @property
    def order(self) -> int:
        return list(Stage).index(self)

    @property
    def mutates_running_system(self) -> bool:
        """Failing at or after this stage means the running system may have been changed."""
        return self.order >= Stage.ACTIVATING.order


class Outcome(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    SUCCEEDED = "SUCCEEDED"
    ABORTED = "ABORTED"      # unhealthy before any change: nothing touched
    FAILED = "FAILED"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]


ABANDONED_KINDS = ("Timeout", "Interrupted")

_EXIT_CODES = {
    Outcome.SUCCEEDED: 0,
    Outcome.ABORTED: 1,
    Outcome.FAILED: 2,
    Outcome.NOT_STARTED: 2,
}


@dataclass(frozen=True)
class DeploymentResult:
    """What happened to one host. Replaced, never mutated, as the host's machine advances."""
    target: Target
    stage: Stage = Stage.NOT_STARTED
    outcome: Outcome = Outcome.NOT_STARTED
    error_kind: Optional[str] = None
    detail: Optional[str] = None
    output: str = ""                         # captured remote output relevant to the failure
    failed_units: Tuple[str, ...] = ()
    store_path: Optional[str] = None
    activation_unit: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is Outcome.SUCCEEDED

    @property
    def terminal(self) -> bool:
        return self.outcome is not Outcome.NOT_STARTED

    @property
    def abandoned(self) -> bool:
        """Given up on (timeout or interrupt) rather than failed by a step."""
        return self.outcome is Outcome.FAILED and self.error_kind in ABANDONED_KINDS

    @property
    def running_system_modified(self) -> bool:
        return self.outcome is Outcome.FAILED and self.stage.mutates_running_system

    def describe(self) -> str:
        if self.outcome is Outcome.SUCCEEDED:
            return f"{self.target}: deployed {self.store_path}"
        if self.outcome is Outcome.ABORTED:
            units = ", ".join(self.failed_units) or "none listed"
            return f"{self.target}: aborted at {self.stage.value}, nothing changed (failed units: {units})"
        if self.outcome is Outcome.NOT_STARTED:
            return f"{self.target}: did not finish"

        text = f"{self.target}: failed at {self.stage.value} [{self.error_kind}] {self.detail}"
        if self.abandoned:
            if self.stage.mutates_running_system:
                text += " (check the host: running system and boot entry may or may not have changed)"
        elif self.stage is Stage.COMMITTING:
            text += " (test activation succeeded, boot entry not updated; re-running the deploy should suffice)"
        elif self.running_system_modified:
            text += " (running system may be partially changed, boot entry unchanged)"
        return text


def aggregate_exit_code(results) -> int:
    """Worst per-host outcome; 0 only if every host succeeded."""
    return max((r.outcome.exit_code for r in results), default=0)
