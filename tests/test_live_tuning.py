"""Tests for the JSON operator channel."""

import json
import os
import threading
import time

from live_tuning import RuntimeParamWatcher
from target_pipeline import HUE_MIN, HUE_MAX, SET_HSV
from telemetry import ParameterStore


def write_json(path, data, mtime=None):
    path.write_text(json.dumps(data), encoding="utf-8")
    if mtime is not None:
        os.utime(path, (mtime, mtime))


def test_initial_load_pushes_values(tmp_path):
    path = tmp_path / "runtime_params.json"
    write_json(path, {HUE_MIN: 170, HUE_MAX: 10, SET_HSV: True})
    store = ParameterStore()

    watcher = RuntimeParamWatcher(path, store)

    assert store.get_number(HUE_MIN) == 170
    assert store.get_number(HUE_MAX) == 10
    assert store.take_boolean(SET_HSV)
    assert watcher.get(HUE_MIN) == 170


def test_missing_file_disables_tuning(tmp_path, capsys):
    store = ParameterStore({HUE_MIN: 55})
    watcher = RuntimeParamWatcher(tmp_path / "absent.json", store)
    assert not watcher.maybe_reload()
    assert store.snapshot() == {HUE_MIN: 55}
    out = capsys.readouterr().out
    assert "not found - live-tuning disabled" in out
    assert out.isascii()


def test_reload_on_change(tmp_path):
    path = tmp_path / "runtime_params.json"
    write_json(path, {HUE_MIN: 50}, mtime=1_000_000)
    store = ParameterStore()
    watcher = RuntimeParamWatcher(path, store)

    assert not watcher.maybe_reload()

    write_json(path, {HUE_MIN: 100, "AreaMin": 250.5}, mtime=1_000_010)
    assert watcher.maybe_reload()
    assert store.get_number(HUE_MIN) == 100
    assert store.get_number("AreaMin") == 250.5


def test_bad_json_keeps_previous_values(tmp_path):
    path = tmp_path / "runtime_params.json"
    write_json(path, {HUE_MIN: 50}, mtime=1_000_000)
    store = ParameterStore()
    watcher = RuntimeParamWatcher(path, store)

    path.write_text("{not json", encoding="utf-8")
    os.utime(path, (1_000_010, 1_000_010))
    watcher.maybe_reload()

    assert store.get_number(HUE_MIN) == 50


def test_non_scalar_values_are_ignored(tmp_path):
    path = tmp_path / "runtime_params.json"
    write_json(path, {HUE_MIN: [1, 2], HUE_MAX: "95", "AreaMin": 3})
    store = ParameterStore()
    RuntimeParamWatcher(path, store)
    assert store.snapshot() == {"AreaMin": 3}


def test_watch_returns_when_stopped(tmp_path):
    store = ParameterStore()
    watcher = RuntimeParamWatcher(tmp_path / "absent.json", store)
    stop = threading.Event()
    thread = threading.Thread(target=watcher.watch, args=(stop, 0.01))
    thread.start()
    stop.set()
    thread.join(timeout=1.0)
    assert not thread.is_alive()


def test_same_size_edit_within_a_second_is_reloaded(tmp_path):
    path = tmp_path / "runtime_params.json"
    write_json(path, {HUE_MIN: 55}, mtime=1_000_000.0)
    store = ParameterStore()
    watcher = RuntimeParamWatcher(path, store)

    write_json(path, {HUE_MIN: 65}, mtime=1_000_000.5)
    assert watcher.maybe_reload()
    assert store.get_number(HUE_MIN) == 65
    assert not watcher.maybe_reload()


def test_non_utf8_file_at_startup_keeps_store(tmp_path, capsys):
    path = tmp_path / "runtime_params.json"
    path.write_bytes(b'{"HueMin": 1, "x": "\xff"}')
    store = ParameterStore({HUE_MIN: 55})

    watcher = RuntimeParamWatcher(path, store)

    assert store.snapshot() == {HUE_MIN: 55}
    out = capsys.readouterr().out
    assert "is not UTF-8 text - keeping old params" in out
    assert watcher.get(HUE_MIN) is None
    # Reported once, not reloaded on every poll
    assert not watcher.maybe_reload()


def test_watch_survives_non_utf8_file(tmp_path):
    path = tmp_path / "runtime_params.json"
    write_json(path, {HUE_MIN: 50}, mtime=1_000_000)
    store = ParameterStore()
    watcher = RuntimeParamWatcher(path, store)
    stop = threading.Event()
    thread = threading.Thread(target=watcher.watch, args=(stop, 0.01), daemon=True)
    thread.start()
    try:
        path.write_bytes(b'{"HueMin": 1, "x": "\xff"}')
        os.utime(path, (1_000_010, 1_000_010))
        time.sleep(0.1)
        assert thread.is_alive()
        assert store.get_number(HUE_MIN) == 50

        write_json(path, {HUE_MIN: 70}, mtime=1_000_020)
        deadline = time.monotonic() + 2.0
        while store.get_number(HUE_MIN) != 70 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert store.get_number(HUE_MIN) == 70
    finally:
        stop.set()
        thread.join(timeout=1.0)
    assert not thread.is_alive()
