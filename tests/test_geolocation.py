"""Tests for flat-ground, line-of-sight and baseline geolocation."""

from __future__ import annotations

import math

import numpy as np
import pytest

from src.processing.geolocation import GeolocationEngine
from src.processing.terrain import GroundData, TerrainGrid
from src.recording.models import (
    UNKNOWN_HEIGHT,
    Block,
    Feature,
    FeatureType,
    GeoTag,
    Location,
    PixelBox,
)
from tests.conftest import make_block, make_step


def centred_feature(video_config, feature_id: int = 1, block_id: int = 1) -> Feature:
    """A 10x10 feature at the exact image centre."""
    x = video_config.image_width / 2 - 5
    y = video_config.image_height / 2 - 5
    return Feature(feature_id=feature_id, block_id=block_id, box=PixelBox(x, y, 10, 10),
                   num_hot_pixels=80)


def feature_at_angle(video_config, feature_id: int, block_id: int,
                     theta_deg: float, camera_deg: float) -> Feature:
    """A feature whose centroid is seen at theta_deg from vertical."""
    y_frac = ((theta_deg - camera_deg) / (video_config.vfov_deg / 2) + 1) / 2
    cy = video_config.image_height * (1 - y_frac)
    cx = video_config.image_width / 2
    return Feature(feature_id=feature_id, block_id=block_id,
                   box=PixelBox(cx - 5, cy - 5, 10, 10), num_hot_pixels=80)


class TestFlatGround:
    def test_centre_pixel_at_45_degrees(self, geolocator, video_config):
        """The image centre at 45 degrees lies one drone-height ahead."""
        block = make_block(1, make_step(altitude=100, camera_deg=45))
        feature = centred_feature(video_config)
        tag = geolocator.locate_flat_ground(feature, block)
        assert tag == GeoTag.FLAT
        assert feature.location.northing_m == pytest.approx(100.0)
        assert feature.location.easting_m == pytest.approx(0.0, abs=1e-9)
        assert feature.height_m == UNKNOWN_HEIGHT

    def test_yaw_rotates_offset(self, geolocator, video_config):
        """Flying east puts the target east of the drone."""
        block = make_block(1, make_step(northing=10, easting=20, altitude=100, yaw=90))
        feature = centred_feature(video_config)
        geolocator.locate_flat_ground(feature, block)
        assert feature.location.northing_m == pytest.approx(10.0, abs=1e-6)
        assert feature.location.easting_m == pytest.approx(120.0)

    def test_altitude_correction_scales_distance(self, geolocator, video_config):
        """FixAltM raises the drone and pushes the flat-ground point further out."""
        step = make_step(altitude=100, camera_deg=45)
        step.fix_alt_m = 10.0
        feature = centred_feature(video_config)
        geolocator.locate_flat_ground(feature, make_block(1, step))
        assert feature.location.northing_m == pytest.approx(110.0)

    def test_right_of_centre_is_to_the_right(self, geolocator, video_config):
        """A feature right of centre maps east of track when flying north."""
        block = make_block(1, make_step(altitude=100))
        feature = centred_feature(video_config)
        feature.box = feature.box.shifted(100, 0)
        geolocator.locate_flat_ground(feature, block)
        assert feature.location.easting_m > 0

    def test_relocation_is_idempotent(self, geolocator, video_config):
        """Repeating the calculation gives bit-identical results."""
        block = make_block(1, make_step(altitude=87.3, camera_deg=38, yaw=-73))
        feature = centred_feature(video_config)
        feature.box = PixelBox(101, 77, 13, 9)
        geolocator.locate_flat_ground(feature, block)
        first = (feature.location, feature.height_m)
        geolocator.locate_flat_ground(feature, block)
        assert (feature.location, feature.height_m) == first
        feature.reset_calculations()
        geolocator.locate_flat_ground(feature, block)
        assert (feature.location, feature.height_m) == first

    def test_unreal_copies_last_real(self, geolocator, video_config):
        """An unreal feature inherits the last real location and height."""
        block = make_block(2, make_step())
        last_real = centred_feature(video_config)
        last_real.location = Location(5.0, 6.0)
        last_real.height_m = 1.5
        unreal = Feature(feature_id=2, block_id=2, box=PixelBox(0, 0, 10, 10),
                         type=FeatureType.UNREAL)
        assert geolocator.locate_flat_ground(unreal, block, last_real) == GeoTag.UNREAL_COPY
        assert unreal.location == Location(5.0, 6.0)
        assert unreal.height_m == 1.5

    def test_block_without_step_is_skipped(self, geolocator, video_config):
        """Frames lacking telemetry are tagged, not located."""
        feature = centred_feature(video_config)
        assert geolocator.locate_flat_ground(feature, Block(block_id=1)) == GeoTag.FLAT_NO_STEP
        assert feature.location is None


class TestLineOfSight:
    def make_engine(self, video_config, geolocation_config, dem=None, dsm=None):
        return GeolocationEngine(video_config, geolocation_config, GroundData(dem, dsm))

    def test_shallow_camera_angle_is_skipped(self, video_config, geolocation_config):
        """A 5 degree look-down angle is outside the usable band."""
        engine = self.make_engine(video_config, geolocation_config, dem=TerrainGrid.flat(0.0))
        block = make_block(1, make_step(altitude=100, camera_deg=5))
        feature = centred_feature(video_config)
        engine.locate_flat_ground(feature, block)
        before = feature.location
        assert engine.refine_with_line_of_sight(feature, block) == GeoTag.LOS_ANGLE
        assert feature.location == before
        assert feature.height_m == UNKNOWN_HEIGHT

    def test_flat_terrain_hits_near_flat_estimate(self, video_config, geolocation_config):
        """On flat ground the sight line meets the surface near the flat estimate."""
        engine = self.make_engine(video_config, geolocation_config, dem=TerrainGrid.flat(0.0))
        block = make_block(1, make_step(altitude=100, camera_deg=45))
        feature = centred_feature(video_config)
        engine.locate_flat_ground(feature, block)
        assert engine.refine_with_line_of_sight(feature, block) == GeoTag.LOS
        assert feature.location.northing_m == pytest.approx(100.0, abs=0.5)
        assert 0.0 <= feature.height_m <= 0.25

    def test_canopy_gives_height_above_ground(self, video_config, geolocation_config):
        """A 10m surface over bare earth stops the sight line early."""
        engine = self.make_engine(video_config, geolocation_config,
                                  dem=TerrainGrid.flat(0.0), dsm=TerrainGrid.flat(10.0))
        block = make_block(1, make_step(altitude=100, camera_deg=45))
        feature = centred_feature(video_config)
        engine.locate_flat_ground(feature, block)
        assert engine.refine_with_line_of_sight(feature, block) == GeoTag.LOS
        assert feature.location.northing_m == pytest.approx(90.0, abs=0.5)
        assert feature.height_m == pytest.approx(10.1, abs=0.2)

    def test_missing_dem_tags_failure(self, video_config, geolocation_config):
        """Surface hit without bare-earth coverage leaves the height unset."""
        engine = self.make_engine(video_config, geolocation_config, dsm=TerrainGrid.flat(0.0))
        engine_dem = engine.ground.dem
        assert engine_dem is None
        block = make_block(1, make_step(altitude=100, camera_deg=45))
        feature = centred_feature(video_config)
        engine.locate_flat_ground(feature, block)
        assert engine.refine_with_line_of_sight(feature, block) == GeoTag.LOS_NO_DEM
        assert feature.height_m == UNKNOWN_HEIGHT

    def test_no_surface_coverage(self, video_config, geolocation_config):
        """A surface grid that misses the sight line tags LOS_NoDsm."""
        far_away = TerrainGrid.flat(0.0, min_northing_m=5000, min_easting_m=5000, size_m=100)
        engine = self.make_engine(video_config, geolocation_config, dem=far_away)
        block = make_block(1, make_step(altitude=100, camera_deg=45))
        feature = centred_feature(video_config)
        engine.locate_flat_ground(feature, block)
        before = feature.location
        assert engine.refine_with_line_of_sight(feature, block) == GeoTag.LOS_NO_DSM
        assert feature.location == before

    def wall_grids(self, dem_before_wall: float):
        """0.5m grids with a 30m surface wall north of N=85.5 over 20m bare earth."""
        dsm = np.zeros((400, 40))
        dsm[:229] = 30.0
        dem = np.full((400, 40), dem_before_wall)
        dem[:229] = 20.0
        return (TerrainGrid(dem, 200.0, -10.0, cell_size_m=0.5),
                TerrainGrid(dsm, 200.0, -10.0, cell_size_m=0.5))

    def test_negative_height_rolls_back_to_previous_step(self, video_config, geolocation_config):
        """A buried crossing falls back to the prior sample when it is closer to the ground."""
        dem, dsm = self.wall_grids(dem_before_wall=14.0)
        engine = self.make_engine(video_config, geolocation_config, dem=dem, dsm=dsm)
        block = make_block(1, make_step(altitude=100, camera_deg=45))
        feature = centred_feature(video_config)
        engine.locate_flat_ground(feature, block)
        assert engine.refine_with_line_of_sight(feature, block) == GeoTag.LOS
        assert feature.location.northing_m == pytest.approx(85.4, abs=0.05)
        assert feature.height_m == pytest.approx(0.6, abs=0.05)

    def test_negative_height_is_clamped(self, video_config, geolocation_config):
        """Without a better prior sample the crossing is kept with zero height."""
        dem, dsm = self.wall_grids(dem_before_wall=30.0)
        engine = self.make_engine(video_config, geolocation_config, dem=dem, dsm=dsm)
        block = make_block(1, make_step(altitude=100, camera_deg=45))
        feature = centred_feature(video_config)
        engine.locate_flat_ground(feature, block)
        assert engine.refine_with_line_of_sight(feature, block) == GeoTag.LOS
        assert feature.location.northing_m == pytest.approx(85.6, abs=0.05)
        assert feature.height_m == 0.0


class TestBaseline:
    CAMERA = 45.0

    def setup_pair(self, video_config, drone_gap_m=20.0):
        """Object 5m tall, 100m ahead of the first drone position, drone at 100m."""
        top_down = 95.0
        step1 = make_step(step_id=1, northing=0, altitude=100, camera_deg=self.CAMERA)
        step2 = make_step(step_id=2, northing=drone_gap_m, altitude=100, camera_deg=self.CAMERA)
        theta1 = math.degrees(math.atan(100.0 / top_down))
        theta2 = math.degrees(math.atan((100.0 - drone_gap_m) / top_down))
        first = feature_at_angle(video_config, 1, 1, theta1, self.CAMERA)
        last = feature_at_angle(video_config, 2, 2, theta2, self.CAMERA)
        return first, last, make_block(1, step1), make_block(2, step2)

    def test_height_from_baseline(self, geolocator, video_config):
        """Look-angle change over a known baseline recovers the object height."""
        first, last, b1, b2 = self.setup_pair(video_config)
        tag = geolocator.estimate_height_from_baseline(first, last, b1, b2, 0.0, 100.0)
        assert tag == GeoTag.BASELINE
        assert last.height_m == pytest.approx(5.0, abs=1e-6)

    def test_needs_two_distinct_features(self, geolocator, video_config):
        first, _, b1, _ = self.setup_pair(video_config)
        tag = geolocator.estimate_height_from_baseline(first, first, b1, b1, 0.0, 100.0)
        assert tag == GeoTag.BASELINE_FEW

    def test_drone_too_low(self, geolocator, video_config):
        first, last, b1, b2 = self.setup_pair(video_config)
        b2.step.altitude_m = 4.0
        tag = geolocator.estimate_height_from_baseline(first, last, b1, b2, 0.0, 100.0)
        assert tag == GeoTag.BASELINE_LOW

    def test_same_pixel_row(self, geolocator, video_config):
        first, last, b1, b2 = self.setup_pair(video_config)
        last.box = first.box.copy()
        tag = geolocator.estimate_height_from_baseline(first, last, b1, b2, 0.0, 100.0)
        assert tag == GeoTag.BASELINE_SAME_ROW

    def test_angle_difference_too_small(self, geolocator, video_config):
        first, last, b1, b2 = self.setup_pair(video_config, drone_gap_m=2.0)
        tag = geolocator.estimate_height_from_baseline(first, last, b1, b2, 0.0, 100.0)
        assert tag == GeoTag.BASELINE_SMALL
        assert last.height_m == UNKNOWN_HEIGHT

    def test_negative_height_rejected(self, geolocator, video_config):
        first, last, b1, b2 = self.setup_pair(video_config)
        tag = geolocator.estimate_height_from_baseline(first, last, b1, b2, 10.0, 100.0)
        assert tag == GeoTag.BASELINE_NEG
        assert last.height_m == UNKNOWN_HEIGHT

    def test_failure_keeps_earlier_height_source(self, geolocator, video_config):
        """A baseline failure never overwrites a line-of-sight height tag."""
        first, _, b1, _ = self.setup_pair(video_config)
        first.height_algorithm = GeoTag.LOS
        first.height_m = 3.0
        tag = geolocator.estimate_height_from_baseline(first, first, b1, b1, 0.0, 100.0)
        assert tag == GeoTag.BASELINE_FEW
        assert first.height_algorithm == GeoTag.LOS
        assert first.height_m == 3.0
