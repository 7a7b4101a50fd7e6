# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/deploy_flake/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str                 # ISO timestamp
    run_id: str             # correlates all events in a single deploy invocation
    host: Optional[str]     # target the event is about; None for run-wide events

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def new_ctx(run_id: Optional[str] = None, host: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z"),
        "run_id": run_id or str(uuid.uuid4()),
        "host": host,
    }


# ---------------------------------------------------------------------
# Host lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class HostDeployStarted(BaseEvent):
    target: str

@dataclass(frozen=True)
class StageEntered(BaseEvent):
    stage: str

@dataclass(frozen=True)
class HostDeploySucceeded(BaseEvent):
    store_path: str
    duration_ms: int

@dataclass(frozen=True)
class HostDeployFailed(BaseEvent):
    stage: str
    outcome: str            # "ABORTED" | "FAILED"
    error_kind: str
    error: str


# ---------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class HealthReported(BaseEvent):
    status: str
    healthy: bool
    failed_units: List[str]

@dataclass(frozen=True)
class ClosureTransferred(BaseEvent):
    path: str

@dataclass(frozen=True)
class SystemBuilt(BaseEvent):
    store_path: str
    profile: str
    duration_ms: int

@dataclass(frozen=True)
class ActivationLaunched(BaseEvent):
    unit: str

@dataclass(frozen=True)
class ActivationFinished(BaseEvent):
    unit: str
    state: str
    exit_code: Optional[int] = None

@dataclass(frozen=True)
class GateChecked(BaseEvent):
    script: Optional[str]
    ok: bool

@dataclass(frozen=True)
class BootCommitted(BaseEvent):
    store_path: str


# ---------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class DeploySummary(BaseEvent):
    succeeded: int
    aborted: int
    failed: int
