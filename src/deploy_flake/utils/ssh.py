# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging

import paramiko

from ..config.models import SSHSettings
from ..nixos.errors import RemoteConnectionError
from ..nixos.models import Target
from .ssh_runner import TRANSPORT_ERRORS, SSHRunner

log = logging.getLogger("deploy_flake")


def _load_pkey(key_path: str):
    for key_cls in (
        paramiko.Ed25519Key,
        paramiko.RSAKey,
        paramiko.ECDSAKey,
    ):
        try:
            return key_cls.from_private_key_file(key_path)
        except paramiko.SSHException:
            continue
    raise RemoteConnectionError(f"Unsupported private key format for {key_path}")


def open_ssh(target: Target, settings: SSHSettings) -> SSHRunner:
    """Connect to *target* and return a fresh RemoteSession for it."""
    client = paramiko.SSHClient()
    client.load_system_host_keys()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

    pkey = None
    if settings.key_path:
        try:
            pkey = _load_pkey(str(settings.key_path.expanduser()))
        except OSError as exc:
            raise RemoteConnectionError(f"Could not read SSH key {settings.key_path}: {exc}") from exc

    port = target.port or settings.port
    username = target.user or settings.user
    log.debug("[%s] connecting to %s:%s as %s", target.address, target.address, port, username or "<default>")

    try:
        client.connect(
            hostname=target.address,
            port=port,
            username=username,
            pkey=pkey,
            timeout=settings.connect_timeout,
            allow_agent=True,
            look_for_keys=pkey is None,
        )
        transport = client.get_transport()
        if transport is not None and settings.keepalive_interval:
            transport.set_keepalive(settings.keepalive_interval)
    except TRANSPORT_ERRORS as exc:
        client.close()
        raise RemoteConnectionError(
            f"Could not connect to {target.destination}:{port}: {exc}",
        ) from exc

    return SSHRunner(client, target.address, command_timeout=settings.command_timeout)
