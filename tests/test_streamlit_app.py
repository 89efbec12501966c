from __future__ import annotations

from pathlib import Path

import pytest
from helpers import T0, minutes, placeholder_edit, position_edit

from timeline_geotag.gps_store import GpsPriorityStore
from timeline_geotag.models import GpsFix, GpsSource

testing = pytest.importorskip("streamlit.testing.v1")

APP = str(Path(__file__).resolve().parents[1] / "streamlit_app.py")


def test_app_without_files(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    at = testing.AppTest.from_file(APP)
    at.run(timeout=30)
    assert not at.exception
    assert at.error  # missing timeline is reported, not raised
    assert any("GPS 数据库不存在" in i.value for i in at.info)


def test_app_shows_timeline_and_store(tmp_path, monkeypatch, make_timeline):
    monkeypatch.chdir(tmp_path)
    timeline = make_timeline(
        [
            position_edit(T0, 40.0, -74.0),
            position_edit(T0 + minutes(90), 40.1, -74.1),
            placeholder_edit(T0 + minutes(120), ["/photos/a.jpg"]),
        ],
        name="tl.json",
    )
    store = GpsPriorityStore(tmp_path / "gps_store.json")
    store.store(tmp_path / "a.jpg", GpsFix(40.0, -74.0), GpsSource.EXIF_GPS)
    store.flush()

    at = testing.AppTest.from_file(APP)
    at.run(timeout=30)
    at.text_input(key="tz_name").set_value("UTC")
    at.text_input(key="timeline_path").set_value(str(timeline))
    at.run(timeout=30)

    assert not at.exception
    assert not at.error
    values = {m.label: m.value for m in at.metric}
    assert values["范围内记录"] == "3"
    assert values["有坐标"] == "2"
    assert values["扩展占位"] == "1"
    assert values["记录数"] == "1"
    assert values["HIGH"] == "1"


def test_invalid_zone_is_reported(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    at = testing.AppTest.from_file(APP)
    at.run(timeout=30)
    at.text_input(key="tz_name").set_value("Mars/Olympus")
    at.run(timeout=30)
    assert not at.exception
    assert at.error
    assert not at.metric
