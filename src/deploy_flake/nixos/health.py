# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/deploy_flake/nixos/health.py

from __future__ import annotations

import logging
from typing import Optional, Tuple

from .interface import RemoteSession
from .models import Health, HealthReport

log = logging.getLogger("deploy_flake")

STATUS_QUERY = "systemctl is-system-running --wait"
FAILED_UNITS_QUERY = "systemctl list-units --failed --plain --no-legend --no-pager"
NOMINAL_STATUS = "running"


def parse_failed_units(text: str) -> Tuple[str, ...]:
    """First column of `systemctl list-units --failed --plain --no-legend`."""
    units = []
    for line in text.splitlines():
        line = line.strip().lstrip("●").strip()
        if not line:
            continue
        units.append(line.split()[0])
    return tuple(units)


class HealthChecker:
    """
    Asks the target's service manager whether it is safe to change it.

    Healthy means: aggregate status is exactly "running" and nothing is in
    the failed state. "Could not ask" is not "unhealthy": transport errors
    propagate as RemoteConnectionError from the session.
    """

    def __init__(self, *, sudo: bool = True, timeout: Optional[float] = 300.0):
        self.sudo = sudo
        self.timeout = timeout

    def check(self, session: RemoteSession) -> HealthReport:
        status_res = session.run(STATUS_QUERY, sudo=self.sudo, timeout=self.timeout)
        lines = status_res.stdout.strip().splitlines()
        status = lines[-1].strip() if lines else "unknown"

        units_res = session.run(FAILED_UNITS_QUERY, sudo=self.sudo, timeout=self.timeout)
        if units_res.ok:
            failed_units = parse_failed_units(units_res.stdout)
        else:
            log.warning("[%s] could not list failed units (rc=%s): %s",
                        session.host, units_res.returncode, units_res.output)
            failed_units = ()

        healthy = status == NOMINAL_STATUS and units_res.ok and not failed_units
        report = HealthReport(
            overall=Health.HEALTHY if healthy else Health.UNHEALTHY,
            status=status,
            failed_units=failed_units,
        )

        if report.healthy:
            log.info("[%s] System is healthy (status=%s)", session.host, status)
        else:
            log.error("[%s] System is not healthy (status=%s)", session.host, status)
            for unit in failed_units:
                log.error("[%s]   failed unit: %s", session.host, unit)
        return report
