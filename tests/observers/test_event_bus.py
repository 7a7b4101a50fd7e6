# tests/observers/test_event_bus.py
import json
from pathlib import Path

from deploy_flake.observers.dispatcher import EventBus
from deploy_flake.observers.events import new_ctx, GateChecked, HostDeployStarted
from deploy_flake.observers.jsonfile import JsonFileObserver


class Collect:
    def __init__(self):
        self.events = []

    def notify(self, event):
        self.events.append(event)


class Broken:
    def notify(self, event):
        raise RuntimeError("observer bug")


def test_bus_fans_out_and_survives_broken_observers():
    good = Collect()
    bus = EventBus(observers=[Broken(), good])

    bus.emit(HostDeployStarted(target="web1", **new_ctx(run_id="r1", host="web1")))

    assert len(good.events) == 1
    assert good.events[0].run_id == "r1"


def test_new_ctx_generates_a_run_id_when_missing():
    ctx = new_ctx()
    assert ctx["run_id"]
    assert ctx["host"] is None
    assert ctx["ts"].endswith("Z")


def test_json_file_observer_writes_one_line_per_event(tmp_path: Path):
    path = tmp_path / "events" / "run.jsonl"
    bus = EventBus(observers=[JsonFileObserver(path)])

    bus.emit(HostDeployStarted(target="web1", **new_ctx(run_id="r1", host="web1")))
    bus.emit(GateChecked(script="bin/self-check", ok=False, **new_ctx(run_id="r1", host="web1")))

    lines = [json.loads(l) for l in path.read_text().splitlines()]
    assert [l["type"] for l in lines] == ["HostDeployStarted", "GateChecked"]
    assert lines[1]["ok"] is False
    assert lines[1]["host"] == "web1"
