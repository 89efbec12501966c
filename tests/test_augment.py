from __future__ import annotations

import json

import pytest
from helpers import T0, minutes, photo, position_edit

from timeline_geotag import augment
from timeline_geotag.augment import (
    EXTENSION_DEVICE,
    IMAGE_DERIVED_DEVICE,
    AugmentationConfig,
    AugmentationReport,
    Candidate,
    DuplicateKind,
    augment_timeline,
    classify_candidate,
    consolidate_placeholders,
    sort_edits,
)
from timeline_geotag.models import PositionRecord
from timeline_geotag.timeline import TimelineFormatError
from timeline_geotag.timeutils import epoch_ms_from_dt


def _edits(path):
    return json.loads(path.read_text(encoding="utf-8"))["timelineEdits"]


def _backups(path):
    return sorted(p.name for p in path.parent.iterdir() if "_backup_before_augmentation_" in p.name)


def test_shared_timestamp_becomes_one_placeholder(tmp_path):
    path = tmp_path / "Timeline.json"
    images = [photo(f"IMG_{i:04d}.jpg", T0) for i in range(50)]

    report = augment_timeline(path, images)

    edits = _edits(path)
    assert len(edits) == 1
    entry = edits[0]["placeholderEntry"]
    assert edits[0]["deviceId"] == EXTENSION_DEVICE
    assert entry["timestamp"] == "2024-01-01T12:00:00.000Z"
    assert entry["imageCount"] == 50
    assert entry["consolidatedImages"] is True
    assert len(set(entry["filePaths"])) == 50
    assert report.extensions_created == 1
    assert report.candidates_before_consolidation == 50
    assert report.consolidation_savings == 49
    assert report.backup_path is None
    assert _backups(path) == []


def test_exact_duplicate_is_not_written(make_timeline):
    path = make_timeline([position_edit(T0, 40.0, -74.0)])
    before = path.read_text(encoding="utf-8")

    report = augment_timeline(path, [photo("dup.jpg", T0, 40.0, -74.0)])

    assert report.exact_duplicates_skipped == 1
    assert report.new_records_added == 0
    assert report.extensions_created == 0
    assert path.read_text(encoding="utf-8") == before
    assert _backups(path) == []


def test_placeholder_next_to_existing_record_is_skipped(make_timeline):
    path = make_timeline([position_edit(T0, 40.0, -74.0)])
    report = augment_timeline(path, [photo("dup.jpg", T0 + minutes(1), 40.0, -74.0)])
    assert report.exact_duplicates_skipped == 1
    assert report.placeholders_skipped == 1
    assert report.total_skipped == 2
    assert len(_edits(path)) == 1


def test_proximity_duplicate(make_timeline):
    path = make_timeline([position_edit(T0, 40.0, -74.0), position_edit(T0 + minutes(10), 40.0, -74.0)])
    # ~30 m north, 5 minutes later, inside the covered range
    report = augment_timeline(path, [photo("near.jpg", T0 + minutes(5), 40.00027, -74.0)])
    assert report.proximity_duplicates_skipped == 1
    assert report.exact_duplicates_skipped == 0
    assert report.extensions_created == 0
    assert len(_edits(path)) == 2


def test_exact_match_wins_over_earlier_proximity_match():
    t = epoch_ms_from_dt(T0)
    near = PositionRecord(timestamp_ms=t + 5 * 60_000, latitude=40.00027, longitude=-74.0)
    same = PositionRecord(timestamp_ms=t, latitude=40.0, longitude=-74.0)
    cand = Candidate(t, 40.0, -74.0)
    assert classify_candidate(cand, [near, same]).kind is DuplicateKind.EXACT
    assert classify_candidate(cand, [near]).kind is DuplicateKind.PROXIMITY
    assert classify_candidate(Candidate(t, 41.0, -74.0), [near, same]).kind is DuplicateKind.NEW


def test_placeholder_candidates_compare_by_time_only():
    t = epoch_ms_from_dt(T0)
    far_away = PositionRecord(timestamp_ms=t + 60_000, latitude=-30.0, longitude=120.0)
    assert classify_candidate(Candidate(t), [far_away]).kind is DuplicateKind.EXACT
    assert classify_candidate(Candidate(t + 10 * 60_000), [far_away]).kind is DuplicateKind.NEW


def test_new_record_is_written_with_backup(make_timeline):
    path = make_timeline([position_edit(T0, 40.0, -74.0)])
    original = path.read_text(encoding="utf-8")

    report = augment_timeline(path, [photo("new.jpg", T0 + minutes(60), 41.0, -73.0)])

    assert report.new_records_added == 1
    # the out-of-range placeholder collides with the record just added
    assert report.placeholders_skipped == 1
    assert report.backup_path is not None
    backups = _backups(path)
    assert len(backups) == 1 and backups[0].startswith("Timeline_backup_before_augmentation_")
    backup = path.parent / backups[0]
    assert backup.read_text(encoding="utf-8") == original
    assert str(backup) == report.backup_path

    edits = _edits(path)
    assert len(edits) == 2
    added = edits[1]
    assert added["deviceId"] == IMAGE_DERIVED_DEVICE
    position = added["rawSignal"]["signal"]["position"]
    assert position["point"] == {"latE7": 410_000_000, "lngE7": -730_000_000}
    assert position["source"] == "IMAGE_EXIF"
    assert position["timestamp"] == "2024-01-01T13:00:00.000Z"
    assert added["imageMetadata"]["fileName"] == "new.jpg"


def test_accepted_records_block_later_duplicates(tmp_path):
    path = tmp_path / "Timeline.json"
    images = [photo("a.jpg", T0, 40.0, -74.0), photo("b.jpg", T0, 40.0, -74.0)]

    report = augment_timeline(path, images)

    assert report.images_processed == 2
    assert report.images_with_gps == 2
    assert report.new_records_added == 1
    assert report.exact_duplicates_skipped == 1
    assert report.placeholders_skipped == 1
    assert len(_edits(path)) == 1


def test_edits_are_sorted_after_merge(make_timeline):
    path = make_timeline([position_edit(T0 + minutes(60), 40.0, -74.0)])
    augment_timeline(path, [photo("early.jpg", T0)])
    edits = _edits(path)
    assert [e["deviceId"] for e in edits] == [EXTENSION_DEVICE, "phone"]


def test_range_extension_can_be_disabled(tmp_path):
    path = tmp_path / "Timeline.json"
    report = augment_timeline(path, [photo("a.jpg", T0)], AugmentationConfig(extend_range=False))
    assert report.extensions_created == 0
    assert not path.exists()


def test_backup_can_be_disabled(make_timeline):
    path = make_timeline([position_edit(T0, 40.0, -74.0)])
    report = augment_timeline(path, [photo("new.jpg", T0 + minutes(60), 41.0, -73.0)], AugmentationConfig(create_backup=False))
    assert report.new_records_added == 1
    assert report.backup_path is None
    assert _backups(path) == []


def test_backup_failure_leaves_timeline_untouched(make_timeline, monkeypatch):
    path = make_timeline([position_edit(T0, 40.0, -74.0)])
    original = path.read_text(encoding="utf-8")

    def boom(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(augment.shutil, "copy2", boom)
    with pytest.raises(OSError):
        augment_timeline(path, [photo("new.jpg", T0 + minutes(60), 41.0, -73.0)])
    assert path.read_text(encoding="utf-8") == original


def test_malformed_timeline_is_rejected(tmp_path):
    path = tmp_path / "Timeline.json"
    path.write_text("[1, 2, 3]", encoding="utf-8")
    with pytest.raises(TimelineFormatError):
        augment_timeline(path, [photo("a.jpg", T0)])


def test_accepts_mapping_of_images(tmp_path):
    path = tmp_path / "Timeline.json"
    img = photo("a.jpg", T0, 40.0, -74.0)
    report = augment_timeline(path, {img.file_path: img})
    assert report.new_records_added == 1


def test_invalid_gps_is_reported():
    report = AugmentationReport()
    bad = photo("bad.jpg", T0, 95.0, 0.0)
    assert augment.extract_gps_candidates([bad], report) == []
    assert report.images_with_gps == 1
    assert len(report.errors) == 1


def test_gps_image_without_timestamp_is_counted():
    report = AugmentationReport()
    undated = photo("undated.jpg", None, 40.0, -74.0)
    assert augment.extract_gps_candidates([undated, photo("plain.jpg", T0)], report) == []
    assert report.images_with_gps == 1
    assert report.errors == []


def test_consolidation_is_idempotent():
    t = epoch_ms_from_dt(T0)
    items = [
        Candidate(t + 1000, file_paths=("/p/b.jpg",), file_names=("b.jpg",)),
        Candidate(t, file_paths=("/p/a.jpg",), file_names=("a.jpg",)),
        Candidate(t, file_paths=("/p/c.jpg", "/p/a.jpg"), file_names=("c.jpg", "a.jpg")),
    ]
    once = consolidate_placeholders(items)
    assert [c.file_paths for c in once] == [("/p/a.jpg", "/p/c.jpg"), ("/p/b.jpg",)]
    assert consolidate_placeholders(once) == once


def test_sort_edits_puts_unknown_times_last():
    edits = [
        {"name": "no-time"},
        position_edit(T0 + minutes(1), 1.0, 1.0, device="late"),
        {"placeholderEntry": {"timestamp": "2024-01-01T11:00:00Z"}},
        {"placeAggregates": {"processWindow": {"startTime": "2024-01-01T11:30:00Z"}}},
        "garbage",
    ]
    ordered, missing = sort_edits(edits)
    assert missing == 2
    assert ordered[0]["placeholderEntry"]["timestamp"].startswith("2024-01-01T11:00")
    assert "placeAggregates" in ordered[1]
    assert ordered[2]["deviceId"] == "late"
    assert ordered[3:] == [{"name": "no-time"}, "garbage"]


def test_sort_edits_tolerates_malformed_structures():
    edits = [
        {"rawSignal": "oops"},
        {"rawSignal": {"signal": 3}},
        {"placeholderEntry": "x"},
        {"placeAggregates": {"processWindow": "x"}},
        position_edit(T0, 1.0, 1.0),
    ]
    ordered, missing = sort_edits(edits)
    assert missing == 4
    assert ordered[0] is edits[4]
    assert ordered[1:] == edits[:4]


def test_report_as_dict():
    report = AugmentationReport(exact_duplicates_skipped=2, placeholders_skipped=1)
    data = report.as_dict()
    assert data["total_skipped"] == 3
    assert data["errors"] == []
