# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/deploy_flake/config/models.py

import posixpath
import re
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

_UNIT_NAME = re.compile(r"^[A-Za-z0-9:_.\-]+$")


class SSHSettings(BaseModel):
    """How to reach targets that do not name their own user/port."""

    user: Optional[str] = None
    port: int = Field(default=22, ge=1, le=65535)
    key_path: Optional[Path] = None
    connect_timeout: float = Field(default=20.0, gt=0)
    command_timeout: Optional[float] = None     # None: builds may take as long as they take
    keepalive_interval: int = Field(default=15, ge=0)

    # reattaching to a running activation after the connection drops
    reconnect_attempts: int = Field(default=5, ge=1)
    reconnect_delay: float = Field(default=5.0, ge=0)


class DeployConfig(BaseModel):
    """Read-only configuration shared by every host deployment of one invocation."""

    flake: Path = Path(".")
    pre_activate_script: Optional[str] = None   # relative to the built system closure
    gate_sudo: bool = False
    parallelism: Optional[int] = Field(default=None, ge=1)
    poll_interval: float = Field(default=2.0, gt=0)
    timeout: Optional[float] = Field(default=None, gt=0)   # overall, for the whole run
    unit_prefix: str = "deploy-flake"
    log_tail_lines: int = Field(default=50, ge=1)
    ssh: SSHSettings = Field(default_factory=SSHSettings)

    @field_validator("pre_activate_script")
    @classmethod
    def _script_inside_closure(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return None
        if value.startswith("/"):
            raise ValueError("pre_activate_script must be relative to the system closure")
        normalized = posixpath.normpath(value)
        if normalized == "." or normalized.startswith(".."):
            raise ValueError("pre_activate_script must point inside the system closure")
        return normalized

    @field_validator("unit_prefix")
    @classmethod
    def _valid_unit_prefix(cls, value: str) -> str:
        if not _UNIT_NAME.match(value):
            raise ValueError(f"unit_prefix {value!r} is not a valid systemd unit name fragment")
        return value
