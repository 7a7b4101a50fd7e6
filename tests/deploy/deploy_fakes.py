# tests/deploy/deploy_fakes.py
"""
Hand-written stand-ins for the per-host components, shared by the machine
and orchestrator tests. Every fake appends what it was asked to do to a
per-host call log so tests can assert on ordering.
"""
from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from deploy_flake.config.models import DeployConfig
from deploy_flake.deploy.machine import HostDeploymentMachine
from deploy_flake.nixos.errors import (
    BuildError,
    CommitError,
    GateFailure,
    RemoteConnectionError,
    TransferError,
)
from deploy_flake.nixos.gate import GateResult
from deploy_flake.nixos.interface import CommandResult
from deploy_flake.nixos.models import (
    ActivationRun,
    ActivationState,
    BuiltSystem,
    Health,
    HealthReport,
)

SOURCE = "/nix/store/aaaa-source"


@dataclass
class HostScript:
    """How one fake host behaves."""
    healthy: bool = True
    failed_units: Tuple[str, ...] = ()
    connect_fails: bool = False
    transfer_fails: bool = False
    build_fails: bool = False
    activation_rc: int = 0
    activation_log: str = ""
    gate_fails: bool = False
    gate_output: str = ""
    commit_fails: bool = False
    # when set, await_terminal blocks until the event is set, ignoring stop
    hang: Optional[threading.Event] = None
    calls: List[str] = field(default_factory=list)

    @property
    def store_path(self) -> str:
        return "/nix/store/bbbb-nixos-system-web1"


class FakeSession:
    def __init__(self, host: str, script: HostScript):
        self.host = host
        self.script = script
        self.closed = False

    def run(self, cmd, *, sudo=False, timeout=None, on_output=None):
        self.script.calls.append(f"run:{cmd}")
        return CommandResult(0, "", "", cmd)

    def close(self):
        self.closed = True
        self.script.calls.append("close")


class FakeHealth:
    def __init__(self, script: HostScript):
        self.script = script

    def check(self, session):
        self.script.calls.append("health")
        if self.script.healthy:
            return HealthReport(overall=Health.HEALTHY, status="running")
        return HealthReport(
            overall=Health.UNHEALTHY,
            status="degraded",
            failed_units=self.script.failed_units,
        )


class FakeTransfer:
    def __init__(self, script: HostScript):
        self.script = script

    def transfer(self, target, closure):
        self.script.calls.append("transfer")
        if self.script.transfer_fails:
            raise TransferError("nix copy failed", output="error: cannot connect")
        return closure


class FakeBuilder:
    def __init__(self, script: HostScript):
        self.script = script

    def resolve_profile(self, session, target):
        return target.profile or target.host_label

    def build(self, session, source, profile, on_output=None):
        self.script.calls.append("build")
        if self.script.build_fails:
            raise BuildError("build failed", output="error: attribute missing")
        if on_output:
            on_output("building '/nix/store/bbbb-nixos-system-web1.drv'...")
        return BuiltSystem(store_path=self.script.store_path, profile=profile)


class FakeActivator:
    def __init__(self, script: HostScript):
        self.script = script
        self.units: List[str] = []

    def launch(self, session, built, mode, *, unit):
        self.script.calls.append("launch")
        self.units.append(unit)
        return ActivationRun(unit=unit, started_at=datetime.now(timezone.utc))

    def await_terminal(self, session, run, poll_interval, *, stop=None, deadline=None, reconnect=None):
        self.script.calls.append("await")
        if self.script.hang is not None:
            self.script.hang.wait()
        state = ActivationState.SUCCEEDED if self.script.activation_rc == 0 else ActivationState.FAILED
        return replace(run, state=state, exit_code=self.script.activation_rc, log_tail=self.script.activation_log)

    def release(self, session, run):
        self.script.calls.append("release")


class FakeGate:
    def __init__(self, script: HostScript):
        self.script = script

    def check(self, session, built, script_path):
        self.script.calls.append("gate")
        if self.script.gate_fails:
            raise GateFailure("self-check rejected the system", output=self.script.gate_output)
        return GateResult(script=script_path, output=self.script.gate_output)


class FakeCommitter:
    def __init__(self, script: HostScript):
        self.script = script

    def commit(self, session, built):
        self.script.calls.append("commit")
        if self.script.commit_fails:
            raise CommitError("nix-env --set failed", output="permission denied")


def make_machine(target, script: HostScript, config: Optional[DeployConfig] = None, *, connect=None, activator=None, **kwargs):
    config = config or DeployConfig()
    sessions: List[FakeSession] = []

    def _connect(t):
        script.calls.append("connect")
        if script.connect_fails:
            raise RemoteConnectionError(f"Could not connect to {t.address}")
        session = FakeSession(t.address, script)
        sessions.append(session)
        return session

    machine = HostDeploymentMachine(
        target,
        config,
        source=SOURCE,
        connect=connect or _connect,
        transfer=FakeTransfer(script),
        health=FakeHealth(script),
        builder=FakeBuilder(script),
        activator=activator or FakeActivator(script),
        gate=FakeGate(script),
        committer=FakeCommitter(script),
        token="t0k3n",
        **kwargs,
    )
    machine.sessions = sessions
    return machine


def machine_factory(scripts):
    """Orchestrator-style factory: (target, config, **kwargs) -> machine, scripted per address."""
    def factory(target, config, **kwargs):
        return make_machine(target, scripts[target.address], config, **kwargs)
    return factory


def steps(script: HostScript) -> List[str]:
    """The call log without the raw session commands."""
    return [c for c in script.calls if not c.startswith("run:")]


# ---------------------------------------------------------------------
# Host-side systemd, for driving the real DetachedActivator
# ---------------------------------------------------------------------
class FakeSystemd:
    """Transient units of one fake host; outlives any single session."""

    def __init__(self, rc: int = 0, polls_until_done: int = 3):
        self.rc = rc
        self.polls_until_done = polls_until_done
        self.units = {}
        self.launched: List[str] = []

    def start(self, unit: str) -> None:
        self.launched.append(unit)
        self.units[unit] = {
            "LoadState": "loaded",
            "ActiveState": "activating",
            "Result": "success",
            "ExecMainStatus": "0",
            "ExecMainExitTimestampMonotonic": "0",
        }

    def show(self, unit: str) -> dict:
        self.polls_until_done -= 1
        if self.polls_until_done <= 0:
            self.units[unit].update({
                "ActiveState": "active" if self.rc == 0 else "failed",
                "Result": "success" if self.rc == 0 else "exit-code",
                "ExecMainStatus": str(self.rc),
                "ExecMainExitTimestampMonotonic": "123456789",
            })
        return self.units[unit]


class SystemdSession(FakeSession):
    """Session to a FakeSystemd host; raises a transport error from the Nth `systemctl show` on."""

    def __init__(self, host: str, script: HostScript, systemd: FakeSystemd, drop_on_show: Optional[int] = None):
        super().__init__(host, script)
        self.systemd = systemd
        self.drop_on_show = drop_on_show
        self.shows = 0

    def run(self, cmd, *, sudo=False, timeout=None, on_output=None):
        self.script.calls.append(f"run:{cmd}")
        if cmd.startswith("systemd-run"):
            self.systemd.start(re.search(r"--unit='([^']+)'", cmd).group(1))
        elif cmd.startswith("systemctl show"):
            self.shows += 1
            if self.drop_on_show is not None and self.shows >= self.drop_on_show:
                raise RemoteConnectionError(f"SSH transport to {self.host} failed")
            unit = re.search(r"systemctl show '([^']+)\.service'", cmd).group(1)
            props = self.systemd.show(unit)
            return CommandResult(0, "".join(f"{k}={v}\n" for k, v in props.items()), "", cmd)
        elif cmd.startswith("journalctl"):
            return CommandResult(0, "activating the configuration...\n", "", cmd)
        return CommandResult(0, "", "", cmd)
