"""Tests for the SQLite run store and record settings."""

from __future__ import annotations

import pytest

from src.recording.models import (
    DetectorKind,
    Feature,
    FeatureType,
    GeoTag,
    Leg,
    Location,
    PixelBox,
    TrackedObject,
    leg_letter,
)
from src.recording.store import RunStore


@pytest.fixture
def store(tmp_path):
    s = RunStore(str(tmp_path / "db" / "run.db"))
    yield s
    s.close()


class TestRunStore:
    def test_feature_round_trip(self, store):
        feature = Feature(
            feature_id=7, block_id=3, box=PixelBox(10.5, 20, 12, 8),
            type=FeatureType.UNREAL, significant=True, object_id=2,
            location=Location(123.25, -45.5), height_m=1.75,
            height_algorithm=GeoTag.LOS, num_hot_pixels=42, max_heat=251,
            kind=DetectorKind.NEURAL, class_name="deer", confidence=0.83,
        )
        assert store.save_features([feature]) == 1
        [loaded] = store.load_features()
        assert loaded == feature

    def test_unlocated_feature_stays_unlocated(self, store):
        store.save_features([Feature(feature_id=1, block_id=1, box=PixelBox(0, 0, 5, 5))])
        [loaded] = store.load_features()
        assert loaded.location is None
        assert loaded.height_algorithm == GeoTag.NONE

    def test_object_round_trip(self, store):
        obj = TrackedObject(object_id=4, leg_id=2, name="B1", feature_ids=[1, 5, 9],
                            last_real_feature_id=9, significant=True, being_tracked=False,
                            location=Location(1.0, 2.0), location_err_m=0.4, height_m=3.2,
                            max_real_hot_pixels=120, num_real_features=3,
                            attributes="Yes: C3 D3 T1 E2")
        store.save_objects([obj])
        [loaded] = store.load_objects()
        assert loaded == obj

    def test_leg_round_trip(self, store):
        leg = Leg(leg_id=3, min_step_id=10, max_step_id=40, fix_alt_m=1.6,
                  best_fix_alt_m=1.6, sum_location_err_m=2.5, num_objects=4)
        store.save_legs([leg])
        [loaded] = store.load_legs()
        assert loaded == leg
        assert loaded.letter == "C"

    def test_resave_replaces_record(self, store):
        feature = Feature(feature_id=1, block_id=1, box=PixelBox(0, 0, 5, 5))
        store.save_features([feature])
        feature.object_id = 3
        store.save_features([feature])
        assert store.get_stats() == {"feature": 1}
        assert store.load_features()[0].object_id == 3

    def test_clear_all(self, store):
        store.save_legs([Leg(leg_id=1), Leg(leg_id=2)])
        assert store.clear_all() == 2
        assert store.load_legs() == []

    def test_in_memory_store(self):
        s = RunStore(":memory:")
        s.save_legs([Leg(leg_id=1)])
        assert s.get_stats() == {"leg": 1}
        s.close()


class TestLegLetter:
    @pytest.mark.parametrize("leg_id,letter", [(0, ""), (1, "A"), (26, "Z"), (27, "AA"), (53, "BA")])
    def test_letters(self, leg_id, letter):
        assert leg_letter(leg_id) == letter
