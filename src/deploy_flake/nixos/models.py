# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/deploy_flake/nixos/models.py

from __future__ import annotations

import ipaddress
import posixpath
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple
from urllib.parse import urlsplit

from .errors import TargetParseError

TARGET_SCHEME = "nixos"


@dataclass(frozen=True)
class Target:
    """
    One remote host to deploy to.

    Accepted forms:
      host
      user@host:port
      nixos://[user@]host[:port][/profile]
    """
    address: str
    profile: Optional[str] = None
    user: Optional[str] = None
    port: Optional[int] = None

    @classmethod
    def parse(cls, raw: str) -> "Target":
        text = raw.strip()
        if not text:
            raise TargetParseError("Empty target")

        if "://" in text:
            parsed = urlsplit(text)
            if parsed.scheme != TARGET_SCHEME:
                raise TargetParseError(
                    f"Unsupported target scheme {parsed.scheme!r}",
                    context=f"Target: {raw}; expected {TARGET_SCHEME}://host/profile",
                )
            profile = parsed.path.strip("/") or None
            if profile and "/" in profile:
                raise TargetParseError(f"Profile must be a single path segment: {profile!r}", context=f"Target: {raw}")
        else:
            parsed = urlsplit(f"//{text}")
            if parsed.path:
                raise TargetParseError(
                    f"Bare targets cannot carry a profile: {raw!r}",
                    context=f"Use {TARGET_SCHEME}://host/profile instead",
                )
            profile = None

        if parsed.query or parsed.fragment:
            raise TargetParseError(f"Unexpected query or fragment in target {raw!r}")
        if not parsed.hostname:
            raise TargetParseError(f"Target has no host: {raw!r}")
        try:
            port = parsed.port
        except ValueError as exc:
            raise TargetParseError(f"Invalid port in target {raw!r}") from exc

        return cls(address=parsed.hostname, profile=profile, user=parsed.username or None, port=port)

    def with_defaults(self, user: Optional[str] = None, port: Optional[int] = None) -> "Target":
        """Fill in SSH user/port from configuration where the target did not name them."""
        return replace(self, user=self.user or user, port=self.port or port)

    @property
    def destination(self) -> str:
        """user@host, as ssh and nix copy expect it."""
        return f"{self.user}@{self.address}" if self.user else self.address

    @property
    def host_label(self) -> Optional[str]:
        """
        Profile name derived from the address: the first DNS label.
        IP addresses have no such name.
        """
        try:
            ipaddress.ip_address(self.address)
            return None
        except ValueError:
            return self.address.split(".")[0] or None

    def __str__(self) -> str:
        if self.profile is None and self.port is None:
            return self.destination
        netloc = self.destination
        if self.port is not None:
            netloc = f"{netloc}:{self.port}"
        path = f"/{self.profile}" if self.profile else ""
        return f"{TARGET_SCHEME}://{netloc}{path}"


class Health(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class HealthReport:
    overall: Health
    status: str                         # systemctl is-system-running output
    failed_units: Tuple[str, ...] = ()

    @property
    def healthy(self) -> bool:
        return self.overall is Health.HEALTHY


@dataclass(frozen=True)
class BuiltSystem:
    """A system closure built on the target; store_path is /nix/store/<hash>-nixos-system-..."""
    store_path: str
    profile: str

    @property
    def basename(self) -> str:
        return posixpath.basename(self.store_path.rstrip("/"))

    def path(self, relative: str) -> str:
        return posixpath.join(self.store_path, relative)

    @property
    def switch_script(self) -> str:
        return self.path("bin/switch-to-configuration")


class ActivationMode(str, Enum):
    TEST = "test"
    BOOT = "boot"


class ActivationState(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class ActivationRun:
    unit: str                        # systemd unit name, without .service
    started_at: datetime
    state: ActivationState = ActivationState.RUNNING
    exit_code: Optional[int] = None
    log_tail: str = ""

    @property
    def terminal(self) -> bool:
        return self.state is not ActivationState.RUNNING

    @property
    def service(self) -> str:
        return f"{self.unit}.service"
