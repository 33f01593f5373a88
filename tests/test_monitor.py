from __future__ import annotations

import os
from pathlib import Path

import pytest
from pydantic import TypeAdapter

from storeplan.monitor import FileMonitor, MonitorFile, MonitorGlob
from storeplan.rebuild import Rebuild

INT = TypeAdapter(int)


def test_missing_record_is_a_miss(tmp_path: Path) -> None:
    check = FileMonitor(tmp_path / "cache" / "phase.json", "phase").check({"key": 1})
    assert not check.hit
    assert check.reason == "no cached result"


def test_unchanged_inputs_hit(tmp_path: Path) -> None:
    source = tmp_path / "input.txt"
    source.write_text("one", encoding="utf-8")
    monitor = FileMonitor(tmp_path / "cache" / "phase.json", "phase")
    monitor.update({"key": 1}, [MonitorFile(source)], {"answer": 42})

    check = monitor.check({"key": 1})
    assert check.hit
    assert check.record is not None
    assert check.record.output == {"answer": 42}


def test_content_change_is_a_miss_but_touching_is_not(tmp_path: Path) -> None:
    source = tmp_path / "input.txt"
    source.write_text("one", encoding="utf-8")
    monitor = FileMonitor(tmp_path / "cache" / "phase.json", "phase")
    monitor.update("key", [MonitorFile(source)], None)

    stat = source.stat()
    os.utime(source, ns=(stat.st_atime_ns, stat.st_mtime_ns + 5_000_000_000))
    assert monitor.check("key").hit

    source.write_text("two", encoding="utf-8")
    check = monitor.check("key")
    assert not check.hit
    assert check.reason == f"{source} changed"


def test_key_change_is_a_miss(tmp_path: Path) -> None:
    monitor = FileMonitor(tmp_path / "cache" / "phase.json", "phase")
    monitor.update({"a": 1, "b": 2}, [], None)
    assert monitor.check({"b": 2, "a": 1}).hit
    assert monitor.check({"a": 1, "b": 3}).reason == "settings changed"


def test_absent_file_is_monitored_for_creation(tmp_path: Path) -> None:
    source = tmp_path / "optional.json"
    monitor = FileMonitor(tmp_path / "cache" / "phase.json", "phase")
    monitor.update("key", [MonitorFile(source)], None)
    assert monitor.check("key").hit

    source.write_text("{}", encoding="utf-8")
    assert monitor.check("key").reason == f"{source} was created"


def test_glob_tracks_new_matches_and_their_content(tmp_path: Path) -> None:
    root = tmp_path / "project"
    (root / "a").mkdir(parents=True)
    first = root / "a" / "a.pkg.json"
    first.write_text("{}", encoding="utf-8")
    monitor = FileMonitor(tmp_path / "cache" / "phase.json", "phase")
    monitor.update("key", [MonitorGlob(root, "*/*.pkg.json")], None)
    assert monitor.check("key").hit

    first.write_text('{"changed": true}', encoding="utf-8")
    assert monitor.check("key").reason == f"{first} changed"

    monitor.update("key", [MonitorGlob(root, "*/*.pkg.json")], None)
    (root / "b").mkdir()
    (root / "b" / "b.pkg.json").write_text("{}", encoding="utf-8")
    assert "matches of */*.pkg.json" in monitor.check("key").reason


def test_unreadable_record_is_a_miss(tmp_path: Path) -> None:
    cache_file = tmp_path / "cache" / "phase.json"
    cache_file.parent.mkdir(parents=True)
    cache_file.write_text("{not json", encoding="utf-8")
    check = FileMonitor(cache_file, "phase").check("key")
    assert not check.hit
    assert check.reason == "cached result unreadable"


def test_rerun_if_changed_reuses_result(tmp_path: Path) -> None:
    source = tmp_path / "input.txt"
    source.write_text("3", encoding="utf-8")
    cache = FileMonitor(tmp_path / "cache" / "phase.json", "phase")
    calls: list[int] = []

    def body(rebuild: Rebuild) -> int:
        rebuild.monitor(MonitorFile(source))
        value = int(source.read_text(encoding="utf-8"))
        calls.append(value)
        return value * 2

    first = Rebuild()
    assert first.rerun_if_changed(cache, "key", INT, lambda: body(first)) == 6
    second = Rebuild()
    assert second.rerun_if_changed(cache, "key", INT, lambda: body(second)) == 6
    assert calls == [3]

    source.write_text("5", encoding="utf-8")
    third = Rebuild()
    assert third.rerun_if_changed(cache, "key", INT, lambda: body(third)) == 10
    assert calls == [3, 5]


def test_inner_inputs_belong_to_enclosing_frames_even_on_a_hit(tmp_path: Path) -> None:
    source = tmp_path / "input.txt"
    source.write_text("1", encoding="utf-8")
    cache = FileMonitor(tmp_path / "cache" / "inner.json", "inner")

    def body(rebuild: Rebuild) -> int:
        rebuild.monitor(MonitorFile(source))
        return 1

    for _ in range(2):
        rebuild = Rebuild()
        outer = rebuild.open_frame("outer")
        rebuild.rerun_if_changed(cache, "key", INT, lambda: body(rebuild))
        assert rebuild.close_frame(outer) == [MonitorFile(source)]


def test_failed_body_records_nothing_and_unwinds_its_frame(tmp_path: Path) -> None:
    cache = FileMonitor(tmp_path / "cache" / "phase.json", "phase")
    rebuild = Rebuild()
    outer = rebuild.open_frame("outer")

    def body() -> int:
        rebuild.open_frame("nested")
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        rebuild.rerun_if_changed(cache, "key", INT, body)
    assert not cache.cache_file.exists()
    assert rebuild.close_frame(outer) == []


def test_frames_close_in_order() -> None:
    rebuild = Rebuild()
    outer = rebuild.open_frame("outer")
    rebuild.open_frame("inner")
    with pytest.raises(RuntimeError, match="out of order"):
        rebuild.close_frame(outer)
