# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/deploy_flake/nixos/errors.py

"""
Exception hierarchy for deploy-flake.

Every step of a host deployment raises one of these; the host state machine
catches them at the stage they belong to and turns them into a terminal
result for that host.
"""

from __future__ import annotations

from typing import List, Optional


class DeployFlakeError(Exception):
    """Base exception for all deploy-flake errors."""

    kind = "Error"

    def __init__(self, message: str, context: Optional[str] = None, output: str = ""):
        self.message = message
        self.context = context
        self.output = output
        super().__init__(self.format_message())

    def format_message(self) -> str:
        if self.context:
            return f"{self.message}\nContext: {self.context}"
        return self.message


class ConfigurationError(DeployFlakeError):
    """Raised when configuration is invalid or missing."""

    kind = "ConfigurationError"


class TargetParseError(ConfigurationError):
    """Raised when a target string cannot be parsed."""

    kind = "TargetParseError"


class RemoteConnectionError(DeployFlakeError, ConnectionError):
    """
    The transport failed: we could not ask the host anything.

    Never to be confused with a host that answered and reported a problem.
    """

    kind = "ConnectionError"


class Unhealthy(DeployFlakeError):
    kind = "Unhealthy"

    def __init__(self, status: str, failed_units: List[str]):
        self.status = status
        self.failed_units = list(failed_units)
        context = f"Failed units: {', '.join(failed_units)}" if failed_units else None
        super().__init__(f"System is not healthy (status={status})", context)


class TransferError(DeployFlakeError):
    kind = "TransferError"


class BuildError(DeployFlakeError):
    kind = "BuildError"


class ActivationFailed(DeployFlakeError):
    kind = "ActivationFailed"

    def __init__(
        self,
        message: str,
        context: Optional[str] = None,
        output: str = "",
        exit_code: Optional[int] = None,
        activation=None,
    ):
        self.exit_code = exit_code
        self.activation = activation     # the finished ActivationRun, when there was one
        super().__init__(message, context, output)


class Interrupted(DeployFlakeError):
    """
    The local control loop was told to stop. Anything already launched on
    the host (a detached activation unit) keeps running.
    """

    kind = "Interrupted"


class DeployTimeout(Interrupted):
    """The overall deadline for the run passed."""

    kind = "Timeout"


class GateFailure(DeployFlakeError):
    kind = "GateFailure"


class CommitError(DeployFlakeError):
    kind = "CommitError"
