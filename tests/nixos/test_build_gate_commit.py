# tests/nixos/test_build_gate_commit.py
import json

import pytest

from deploy_flake.nixos.builder import RemoteBuilder
from deploy_flake.nixos.committer import SYSTEM_PROFILE, BootCommitter
from deploy_flake.nixos.errors import BuildError, CommitError, GateFailure
from deploy_flake.nixos.gate import PreActivateGate
from deploy_flake.nixos.interface import CommandResult
from deploy_flake.nixos.models import BuiltSystem, Target

STORE_PATH = "/nix/store/bbbb-nixos-system-web1"
BUILT = BuiltSystem(store_path=STORE_PATH, profile="web1")


class ScriptedSession:
    """
    Answers commands by prefix, in order of the rules given.
    A rule's answer is (rc, stdout, stderr).
    """
    host = "web1"

    def __init__(self, rules=()):
        self.rules = list(rules)
        self.calls = []

    def run(self, cmd, *, sudo=False, timeout=None, on_output=None):
        self.calls.append((cmd, sudo))
        for prefix, (rc, out, err) in self.rules:
            if cmd.startswith(prefix):
                if on_output:
                    for line in out.splitlines():
                        on_output(line)
                return CommandResult(rc, out, err, cmd)
        return CommandResult(0, "", "", cmd)

    def close(self):
        pass


# ---------------------------------------------------------------------
# builder
# ---------------------------------------------------------------------
def _json_result(path=STORE_PATH):
    return json.dumps([{"drvPath": "/nix/store/x.drv", "outputs": {"out": path}}])


def test_build_runs_twice_and_reads_the_out_path():
    session = ScriptedSession([
        ("env -C /tmp nix build -L --no-link --json", (0, _json_result(), "")),
        ("env -C /tmp nix build", (0, "building...\ndone\n", "")),
    ])
    seen = []

    built = RemoteBuilder().build(session, "/nix/store/aaaa-source", "web1", on_output=seen.append)

    assert built == BuiltSystem(store_path=STORE_PATH, profile="web1")
    assert seen == ["building...", "done"]
    first, second = [c for c, _ in session.calls]
    assert "--json" not in first
    assert "--json" in second
    assert 'path:/nix/store/aaaa-source#nixosConfigurations."web1".config.system.build.toplevel' in first


def test_build_failure_carries_the_build_log():
    session = ScriptedSession([
        ("env -C /tmp nix build", (1, "", "error: attribute 'web9' missing")),
    ])
    with pytest.raises(BuildError) as ei:
        RemoteBuilder().build(session, "/nix/store/aaaa-source", "web9")
    assert "attribute 'web9' missing" in ei.value.output
    assert len(session.calls) == 1


@pytest.mark.parametrize("stdout", [
    "not json",
    "[]",
    json.dumps([{"outputs": {"out": "/a"}}, {"outputs": {"out": "/b"}}]),
    json.dumps([{"outputs": {}}]),
    json.dumps({"outputs": {"out": "/a"}}),
])
def test_unexpected_build_json_is_a_build_error(stdout):
    session = ScriptedSession([
        ("env -C /tmp nix build -L --no-link --json", (0, stdout, "")),
    ])
    with pytest.raises(BuildError):
        RemoteBuilder().build(session, "/nix/store/aaaa-source", "web1")


def test_profile_comes_from_target_then_hostname_then_address():
    builder = RemoteBuilder()

    named = ScriptedSession()
    assert builder.resolve_profile(named, Target(address="web1", profile="edge")) == "edge"
    assert named.calls == []

    session = ScriptedSession([("hostname", (0, "web-prod-1\n", ""))])
    assert builder.resolve_profile(session, Target(address="10.0.0.5")) == "web-prod-1"

    broken = ScriptedSession([("hostname", (1, "", "not found"))])
    assert builder.resolve_profile(broken, Target(address="web1.example.com")) == "web1"

    with pytest.raises(BuildError):
        builder.resolve_profile(broken, Target(address="10.0.0.5"))


# ---------------------------------------------------------------------
# gate
# ---------------------------------------------------------------------
def test_no_gate_script_passes_without_running_anything():
    session = ScriptedSession()
    result = PreActivateGate().check(session, BUILT, None)
    assert result.script is None
    assert session.calls == []


def test_gate_runs_the_script_inside_the_closure():
    session = ScriptedSession([(f"'{STORE_PATH}/bin/self-check'", (0, "all good\n", ""))])
    result = PreActivateGate(sudo=True).check(session, BUILT, "bin/self-check")

    assert session.calls == [(f"'{STORE_PATH}/bin/self-check'", True)]
    assert result.script == "bin/self-check"
    assert result.output == "all good"


def test_failing_gate_keeps_its_output():
    session = ScriptedSession([(f"'{STORE_PATH}/bin/self-check'", (3, "dns ok\n", "gateway unreachable\n"))])
    with pytest.raises(GateFailure) as ei:
        PreActivateGate().check(session, BUILT, "bin/self-check")
    assert ei.value.output == "dns ok\n\ngateway unreachable"
    assert "rc=3" in ei.value.message


# ---------------------------------------------------------------------
# committer
# ---------------------------------------------------------------------
def test_commit_sets_the_profile_then_installs_the_boot_entry():
    session = ScriptedSession()
    BootCommitter().commit(session, BUILT)

    assert session.calls == [
        (f"nix-env -p '{SYSTEM_PROFILE}' --set '{STORE_PATH}'", True),
        (f"'{STORE_PATH}/bin/switch-to-configuration' boot", True),
    ]


def test_commit_stops_when_the_profile_cannot_be_set():
    session = ScriptedSession([("nix-env", (1, "", "permission denied"))])
    with pytest.raises(CommitError) as ei:
        BootCommitter().commit(session, BUILT)
    assert "permission denied" in ei.value.output
    assert len(session.calls) == 1


def test_commit_fails_when_the_boot_entry_cannot_be_installed():
    session = ScriptedSession([(f"'{STORE_PATH}/bin/switch-to-configuration'", (1, "", "bootloader error"))])
    with pytest.raises(CommitError):
        BootCommitter().commit(session, BUILT)
    assert len(session.calls) == 2
