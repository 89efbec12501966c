from __future__ import annotations

import json

import pytest

from timeline_geotag.gps_store import GpsPriorityStore, GpsStoreConfig, path_key
from timeline_geotag.models import GpsConfidence, GpsFix, GpsSource


@pytest.fixture
def store(tmp_path) -> GpsPriorityStore:
    return GpsPriorityStore(tmp_path / "gps_store.json")


def test_store_and_get(store, tmp_path):
    img = tmp_path / "a.jpg"
    assert store.store(img, GpsFix(40.0, -74.0), GpsSource.TIMELINE_INTERPOLATED, {"method": "closest_record"})
    record = store.get(img)
    assert record is not None
    assert record.file_name == "a.jpg"
    assert record.file_path == path_key(img)
    assert record.confidence is GpsConfidence.MEDIUM
    assert record.interpolation_details == {"method": "closest_record"}
    assert store.has(img)
    assert not store.has(tmp_path / "b.jpg")


def test_lower_priority_does_not_overwrite(store, tmp_path):
    img = tmp_path / "a.jpg"
    store.store(img, GpsFix(1.0, 1.0), GpsSource.EXIF_GPS)
    assert not store.store(img, GpsFix(2.0, 2.0), GpsSource.NEARBY_INTERPOLATED)
    record = store.get(img)
    assert record.coordinates.latitude == 1.0
    assert record.confidence is GpsConfidence.HIGH


def test_higher_priority_overwrites_and_keeps_created_at(store, tmp_path):
    img = tmp_path / "a.jpg"
    store.store(img, GpsFix(1.0, 1.0), GpsSource.NEARBY_INTERPOLATED)
    created = store.get(img).created_at
    assert store.store(img, GpsFix(2.0, 2.0), GpsSource.TIMELINE_INTERPOLATED)
    record = store.get(img)
    assert record.source is GpsSource.TIMELINE_INTERPOLATED
    assert record.coordinates.latitude == 2.0
    assert record.created_at == created


def test_invalid_coordinates_rejected(store, tmp_path):
    assert not store.store(tmp_path / "a.jpg", GpsFix(91.0, 0.0), GpsSource.EXIF_GPS)
    assert store.records() == []


def test_journal_survives_restart(tmp_path):
    cfg = GpsStoreConfig(path=tmp_path / "gps_store.json", flush_every=0)
    first = GpsPriorityStore(cfg)
    first.store(tmp_path / "a.jpg", GpsFix(40.0, -74.0), GpsSource.EXIF_GPS)
    assert first.journal_path.exists()
    assert not first.path.exists()

    second = GpsPriorityStore(cfg)
    record = second.get(tmp_path / "a.jpg")
    assert record is not None and record.source is GpsSource.EXIF_GPS


def test_truncated_journal_line_is_ignored(tmp_path):
    cfg = GpsStoreConfig(path=tmp_path / "gps_store.json", flush_every=0)
    first = GpsPriorityStore(cfg)
    first.store(tmp_path / "a.jpg", GpsFix(40.0, -74.0), GpsSource.EXIF_GPS)
    with first.journal_path.open("a", encoding="utf-8") as f:
        f.write('{"k": "/x.jpg", "v": {"filePa')
    assert len(GpsPriorityStore(cfg).records()) == 1


def test_flush_writes_snapshot_and_clears_journal(store, tmp_path):
    store.store(tmp_path / "a.jpg", GpsFix(40.0, -74.0), GpsSource.EXIF_GPS)
    store.store(tmp_path / "b.jpg", GpsFix(41.0, -73.0), GpsSource.NEARBY_INTERPOLATED)
    store.flush()

    assert not store.journal_path.exists()
    data = json.loads(store.path.read_text(encoding="utf-8"))
    assert data["metadata"]["recordCount"] == 2
    assert {r["source"] for r in data["records"]} == {"EXIF_GPS", "NEARBY_INTERPOLATED"}

    reloaded = GpsPriorityStore(store.path)
    assert reloaded.get(tmp_path / "b.jpg").confidence is GpsConfidence.LOW


def test_flush_every_folds_automatically(tmp_path):
    store = GpsPriorityStore(GpsStoreConfig(path=tmp_path / "gps_store.json", flush_every=1))
    store.store(tmp_path / "a.jpg", GpsFix(40.0, -74.0), GpsSource.EXIF_GPS)
    assert store.path.exists()
    assert not store.journal_path.exists()


def test_corrupt_snapshot_is_set_aside(tmp_path):
    path = tmp_path / "gps_store.json"
    path.write_text("{not json", encoding="utf-8")
    store = GpsPriorityStore(path)
    assert store.records() == []
    assert (tmp_path / "gps_store.json.broken").read_text(encoding="utf-8") == "{not json"


def test_unparseable_records_are_skipped(tmp_path):
    path = tmp_path / "gps_store.json"
    good = {
        "filePath": str(tmp_path / "a.jpg"),
        "coordinates": {"latitude": 1.0, "longitude": 2.0},
        "source": "EXIF_GPS",
    }
    path.write_text(json.dumps({"records": [good, {"filePath": "x"}, {**good, "source": "MAGIC"}]}), encoding="utf-8")
    records = GpsPriorityStore(path).records()
    assert len(records) == 1
    assert records[0].confidence is GpsConfidence.HIGH


def test_statistics_and_grouping(store, tmp_path):
    store.store(tmp_path / "a.jpg", GpsFix(1.0, 1.0), GpsSource.EXIF_GPS)
    store.store(tmp_path / "b.jpg", GpsFix(1.0, 1.0), GpsSource.TIMELINE_INTERPOLATED)
    store.store(tmp_path / "c.jpg", GpsFix(1.0, 1.0), GpsSource.TIMELINE_INTERPOLATED)

    stats = store.statistics()
    assert stats["total"] == 3
    assert stats["by_source"] == {"EXIF_GPS": 1, "TIMELINE_INTERPOLATED": 2}
    assert stats["by_confidence"] == {"HIGH": 1, "MEDIUM": 2}
    grouped = store.records_by_source()
    assert len(grouped[GpsSource.TIMELINE_INTERPOLATED]) == 2
    assert grouped[GpsSource.DATABASE] == []


def test_reset_clears_disk(store, tmp_path):
    store.store(tmp_path / "a.jpg", GpsFix(1.0, 1.0), GpsSource.EXIF_GPS)
    store.reset()
    assert store.records() == []
    assert json.loads(store.path.read_text(encoding="utf-8"))["records"] == []
    assert GpsPriorityStore(store.path).records() == []


def test_source_priority_order():
    assert [s.priority for s in GpsSource] == [0, 1, 2, 3]
    assert GpsSource.DATABASE.priority < GpsSource.NEARBY_INTERPOLATED.priority
