# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/deploy_flake/utils/ssh_runner.py

from __future__ import annotations

import codecs
import logging
import time
from typing import Callable, List, Optional

import paramiko

from ..nixos.errors import RemoteConnectionError
from ..nixos.interface import CommandResult

log = logging.getLogger("deploy_flake")

# exceptions that mean "the transport is gone", as opposed to "the command failed"
TRANSPORT_ERRORS = (paramiko.SSHException, OSError, EOFError)


def _discard(line: str) -> None:
    pass


def shq(s: str) -> str:
    """Shell-quote helper."""
    return "'" + s.replace("'", "'\"'\"'") + "'"


class _LineSplitter:
    """Turns a stream of byte chunks into complete lines for a callback."""

    def __init__(self, callback: Callable[[str], None]):
        self._callback = callback
        self._decoder = codecs.getincrementaldecoder("utf-8")("replace")
        self._pending = ""
        self.chunks: List[str] = []

    def feed(self, data: bytes) -> None:
        text = self._decoder.decode(data)
        self.chunks.append(text)
        self._pending += text
        *lines, self._pending = self._pending.split("\n")
        for line in lines:
            self._callback(line)

    def finish(self, rest: bytes = b"") -> str:
        if rest:
            self.feed(rest)
        tail = self._decoder.decode(b"", final=True)
        self.chunks.append(tail)
        self._pending += tail
        if self._pending:
            self._callback(self._pending)
            self._pending = ""
        return "".join(self.chunks)


class SSHRunner:
    """
    RemoteSession over one paramiko SSHClient.

    Every command runs through `bash -lc` (or `sudo -n bash -lc`); a session
    is owned by exactly one host deployment and is not thread-shared.
    """

    def __init__(self, client: paramiko.SSHClient, host: str, *, command_timeout: Optional[float] = None):
        self.client = client
        self.host = host
        self.command_timeout = command_timeout

    def run(
        self,
        cmd: str,
        *,
        sudo: bool = False,
        timeout: Optional[float] = None,
        on_output: Optional[Callable[[str], None]] = None,
    ) -> CommandResult:
        final = f"sudo -n bash -lc {shq(cmd)}" if sudo else f"bash -lc {shq(cmd)}"
        log.debug("[%s] $ %s", self.host, final)

        try:
            _, stdout, stderr = self.client.exec_command(final, timeout=timeout or self.command_timeout)
            # drain both streams together: a full stderr window stalls a stdout-only reader
            out, err, rc = self._stream(stdout, stderr, on_output or _discard)
        except TRANSPORT_ERRORS as exc:
            raise RemoteConnectionError(
                f"SSH transport to {self.host} failed: {exc}",
                context=f"Command: {cmd}",
            ) from exc

        # paramiko reports -1 when the channel closed without an exit status
        if rc == -1:
            raise RemoteConnectionError(
                f"Connection to {self.host} closed before the command finished",
                context=f"Command: {cmd}",
            )

        log.debug("[%s] [exit %s]", self.host, rc)
        return CommandResult(returncode=rc, stdout=out, stderr=err, command=cmd)

    def _stream(self, stdout, stderr, on_output: Callable[[str], None]):
        channel = stdout.channel
        out = _LineSplitter(on_output)
        err = _LineSplitter(on_output)

        while not channel.exit_status_ready():
            idle = True
            if channel.recv_ready():
                out.feed(channel.recv(4096))
                idle = False
            if channel.recv_stderr_ready():
                err.feed(channel.recv_stderr(4096))
                idle = False
            if idle:
                time.sleep(0.1)

        rc = channel.recv_exit_status()
        return out.finish(stdout.read()), err.finish(stderr.read()), rc

    def close(self) -> None:
        try:
            self.client.close()
        except TRANSPORT_ERRORS as exc:
            log.debug("[%s] error while closing SSH session: %s", self.host, exc)
