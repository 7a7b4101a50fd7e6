# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/deploy_flake/nixos/activator.py

"""
Detached activation of a built system.

The activation command runs inside a transient systemd unit on the target,
so it keeps going when our SSH connection drops (which it may well do: we
could be reconfiguring the very network interface we are connected
through). Launching and observing are two separate operations:

  launch()         starts the unit and returns at once
  poll()           one bounded query of the unit, by name, on any session
  await_terminal() polls until the unit has finished

A launched unit is never cancelled from here; stopping the local polling
loop leaves it running on the target.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from .errors import ActivationFailed, DeployTimeout, Interrupted, RemoteConnectionError
from .interface import RemoteSession
from .models import ActivationMode, ActivationRun, ActivationState, BuiltSystem
from ..utils.ssh_runner import shq

log = logging.getLogger("deploy_flake")

UNIT_PROPERTIES = (
    "LoadState",
    "ActiveState",
    "SubState",
    "Result",
    "ExecMainStatus",
    "ExecMainExitTimestampMonotonic",
)
RUNNING_STATES = {"activating", "deactivating", "reloading"}


def unit_name(prefix: str, mode: ActivationMode, built: BuiltSystem, token: str) -> str:
    """Host-unique unit name for one activation attempt, e.g. deploy-flake-test--<hash>-nixos-system-web1-<token>."""
    return f"{prefix}-{mode.value}--{built.basename}-{token}"


def parse_properties(text: str) -> Dict[str, str]:
    props = {}
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            props[key.strip()] = value.strip()
    return props


def classify(unit: str, props: Dict[str, str]):
    """Map `systemctl show` properties to (state, exit_code)."""
    if props.get("LoadState") == "not-found":
        raise ActivationFailed(f"Activation unit {unit} is not known to the host")

    active = props.get("ActiveState", "")
    result = props.get("Result", "")
    status = props.get("ExecMainStatus", "")
    exit_code = int(status) if status.isdigit() else None
    exited = props.get("ExecMainExitTimestampMonotonic", "0") not in ("", "0")

    if active == "failed" or (exited and result not in ("", "success")):
        return ActivationState.FAILED, exit_code
    if active in RUNNING_STATES or not exited:
        # a queued start job shows up as inactive with no exit timestamp yet
        return ActivationState.RUNNING, None
    return ActivationState.SUCCEEDED, exit_code if exit_code is not None else 0


class DetachedActivator:
    def __init__(
        self,
        *,
        log_tail_lines: int = 50,
        timeout: Optional[float] = 60.0,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.log_tail_lines = log_tail_lines
        self.timeout = timeout
        self.clock = clock

    # ------------------------- launch -------------------------

    def launch(
        self,
        session: RemoteSession,
        built: BuiltSystem,
        mode: ActivationMode = ActivationMode.TEST,
        *,
        unit: str,
    ) -> ActivationRun:
        cmd = " ".join([
            "systemd-run",
            f"--unit={shq(unit)}",
            "--service-type=oneshot",
            "--property=RemainAfterExit=yes",
            "--working-directory=/tmp",
            "--send-sighup",
            "--no-block",
            # Fix perl complaining about bad locale settings:
            "--setenv=LC_ALL=C",
            shq(built.switch_script),
            mode.value,
        ])
        log.debug("[%s] Launching %s activation of %s as %s", session.host, mode.value, built.store_path, unit)

        res = session.run(cmd, sudo=True, timeout=self.timeout)
        if not res.ok:
            raise ActivationFailed(
                f"Could not launch activation unit {unit} (rc={res.returncode})",
                output=res.output,
                exit_code=res.returncode,
            )
        log.info("[%s] Activation running in unit %s", session.host, unit)
        return ActivationRun(unit=unit, started_at=self.clock())

    # ------------------------- poll -------------------------

    def poll(self, session: RemoteSession, run: ActivationRun) -> ActivationRun:
        if run.terminal:
            return run

        props_arg = ",".join(UNIT_PROPERTIES)
        res = session.run(f"systemctl show {shq(run.service)} --property={props_arg}", timeout=self.timeout)
        if not res.ok:
            raise ActivationFailed(
                f"Could not query activation unit {run.unit} (rc={res.returncode})",
                output=res.output,
            )

        state, exit_code = classify(run.unit, parse_properties(res.stdout))
        if state is ActivationState.RUNNING:
            return run

        return replace(run, state=state, exit_code=exit_code, log_tail=self._log_tail(session, run))

    def _log_tail(self, session: RemoteSession, run: ActivationRun) -> str:
        res = session.run(
            f"journalctl --unit={shq(run.service)} --no-pager --output=cat --lines={self.log_tail_lines}",
            sudo=True,
            timeout=self.timeout,
        )
        if not res.ok:
            log.warning("[%s] could not read the journal of %s: %s", session.host, run.unit, res.output)
            return ""
        return res.stdout.rstrip()

    # ------------------------- await -------------------------

    def await_terminal(
        self,
        session: RemoteSession,
        run: ActivationRun,
        poll_interval: float,
        *,
        stop: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
        reconnect: Optional[Callable[[], RemoteSession]] = None,
    ) -> ActivationRun:
        """
        Poll until the unit is terminal.

        stop ends the local loop with Interrupted, passing the deadline
        (time.monotonic) with DeployTimeout. reconnect() is called for a
        fresh session when the transport drops; without it the
        RemoteConnectionError propagates.
        """
        stop = stop or threading.Event()
        while True:
            if stop.is_set():
                raise Interrupted(
                    f"Stopped waiting for {run.unit}",
                    context="The activation keeps running on the host",
                )
            try:
                run = self.poll(session, run)
            except RemoteConnectionError as exc:
                if reconnect is None:
                    raise
                log.warning("[%s] lost connection while polling %s (%s); reattaching", session.host, run.unit, exc)
                session = reconnect()
                continue

            if run.terminal:
                return run
            if deadline is not None and time.monotonic() >= deadline:
                raise DeployTimeout(
                    f"Timed out waiting for {run.unit}",
                    context="The activation keeps running on the host",
                )
            stop.wait(poll_interval)

    # ------------------------- cleanup -------------------------

    def release(self, session: RemoteSession, run: ActivationRun) -> None:
        """Unload a finished unit so transient units do not pile up on the host."""
        if not run.terminal:
            return
        res = session.run(
            f"systemctl stop {shq(run.service)} && {{ systemctl reset-failed {shq(run.service)} 2>/dev/null || true; }}",
            sudo=True,
            timeout=self.timeout,
        )
        if not res.ok:
            log.warning("[%s] could not unload activation unit %s: %s", session.host, run.unit, res.output)
