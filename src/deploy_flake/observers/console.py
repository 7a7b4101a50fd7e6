# src/deploy_flake/observers/console.py
import sys

from .events import BaseEvent

_SKIP = ("ts", "run_id", "host")


class ConsoleObserver:
    """One line per event on stdout, prefixed by the host it concerns (--events)."""

    def __init__(self, stream=None):
        self.stream = stream or sys.stdout

    def notify(self, event: BaseEvent) -> None:
        d = event.dict()
        k = event.__class__.__name__
        data = " ".join(f"{x}={y}" for x, y in d.items() if x not in _SKIP and y not in (None, "", []))
        print(f"[{d['ts']}] {d['host'] or '*'} {k} {data}".rstrip(), file=self.stream, flush=True)
