"""
Operator channel: hot-reload tunable parameters from a JSON file.

Edit the file while the pipeline runs, e.g.

    {"HueMin": 170, "HueMax": 10, "AreaMin": 200, "SetHSV": true}

and the new values are pushed into the parameter store on the next poll.
"""

import json
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from telemetry import ParameterStore


class RuntimeParamWatcher:
    """Watch a JSON file and push its values into the parameter store when it changes."""

    def __init__(self, path: Union[str, Path], store: ParameterStore) -> None:
        self.path = Path(path).expanduser().resolve()
        self.store = store
        self._stamp: Tuple[int, int] = (-1, -1)  # (mtime_ns, size)
        self.params: Dict[str, Any] = {}

        print(f"[Runtime] Watching: {self.path}")
        self._load(initial=True)

    # ------------------------------------------------------------------
    #   Internal helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _accepted(params: Dict[str, Any]) -> Dict[str, Any]:
        """Keep numbers and booleans; every parameter is a scalar"""
        accepted = {}
        for key, value in params.items():
            if isinstance(value, (bool, int, float)):
                accepted[key] = value
            else:
                print(f"[Runtime] Ignoring {key!r}: not a number or boolean")
        return accepted

    def _load(self, *, initial: bool = False) -> None:
        try:
            stat = self.path.stat()
            # Stamp before reading: a bad file is reported once, not every poll
            self._stamp = (stat.st_mtime_ns, stat.st_size)
            with self.path.open("r", encoding="utf-8") as fp:
                params = json.load(fp)
        except FileNotFoundError:
            if initial:
                print(
                    f"[Runtime] {self.path} not found - live-tuning disabled "
                    "(create the file to enable)."
                )
            else:
                print(f"[Runtime] {self.path} was deleted - keeping old params.")
            return
        except json.JSONDecodeError as exc:
            print(f"[Runtime] JSON error in {self.path}: {exc}")
            return
        except UnicodeDecodeError as exc:
            print(f"[Runtime] {self.path} is not UTF-8 text - keeping old params: {exc}")
            return
        except OSError as exc:
            print(f"[Runtime] Failed to read {self.path}: {exc}")
            return

        if not isinstance(params, dict):
            print(f"[Runtime] {self.path} must hold a JSON object - keeping old params.")
            return

        self.params = self._accepted(params)
        self.store.update(self.params)
        if not initial:
            print(f"[Runtime] Reloaded parameters from {self.path}")

    # ------------------------------------------------------------------
    #   Public API
    # ------------------------------------------------------------------
    def maybe_reload(self) -> bool:
        """
        If the watched file changed since the last call reload it and
        return **True**, else return **False**.
        """
        try:
            stat = self.path.stat()
        except FileNotFoundError:
            return False

        # Any change of mtime or size counts, including sub-second rewrites
        if (stat.st_mtime_ns, stat.st_size) != self._stamp:
            self._load()
            return True
        return False

    def watch(self, stop_event: threading.Event, poll_s: float = 0.5) -> None:
        """Poll the file until `stop_event` is set (run on a background thread)."""
        while not stop_event.wait(poll_s):
            self.maybe_reload()

    def get(self, key: str, default: Optional[Any] = None) -> Any:
        return self.params.get(key, default)
