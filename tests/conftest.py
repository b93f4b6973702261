"""Shared test fixtures: configs, id sequences and synthetic steps, blocks and features."""

from __future__ import annotations

import math

import pytest

from src.config import (
    CalibrationConfig,
    FeatureConfig,
    GeolocationConfig,
    RayMarchConfig,
    TrackingConfig,
    VideoConfig,
)
from src.processing.geolocation import GeolocationEngine
from src.processing.terrain import GroundData
from src.processing.tracker import ObjectTracker
from src.recording.models import (
    Block,
    Detection,
    Feature,
    FlightStep,
    IdSequence,
    Location,
    PixelBox,
)


@pytest.fixture
def video_config() -> VideoConfig:
    return VideoConfig(image_width=640, image_height=512, hfov_deg=42.0, vfov_deg=34.0, fps=10.0)


@pytest.fixture
def feature_config() -> FeatureConfig:
    return FeatureConfig()


@pytest.fixture
def tracking_config() -> TrackingConfig:
    return TrackingConfig()


@pytest.fixture
def geolocation_config() -> GeolocationConfig:
    return GeolocationConfig()


@pytest.fixture
def raymarch_config() -> RayMarchConfig:
    return RayMarchConfig()


@pytest.fixture
def calibration_config() -> CalibrationConfig:
    return CalibrationConfig()


@pytest.fixture
def ids() -> IdSequence:
    return IdSequence()


@pytest.fixture
def geolocator(video_config, geolocation_config) -> GeolocationEngine:
    return GeolocationEngine(video_config, geolocation_config, GroundData())


@pytest.fixture
def tracker(tracking_config, feature_config, video_config, ids) -> ObjectTracker:
    return ObjectTracker(tracking_config, feature_config, video_config, ids)


def make_step(step_id: int = 1, northing: float = 0.0, easting: float = 0.0,
              altitude: float = 100.0, yaw: float = 0.0, camera_deg: float = 45.0,
              dem: float = 0.0) -> FlightStep:
    return FlightStep(
        step_id=step_id,
        location=Location(northing, easting),
        altitude_m=altitude,
        yaw_deg=yaw,
        camera_to_vertical_deg=camera_deg,
        dem_m=dem,
    )


def make_block(block_id: int, step: FlightStep | None = None) -> Block:
    return Block(block_id=block_id, step=step)


def make_feature(ids: IdSequence, block_id: int, x: float, y: float,
                 w: float = 10, h: float = 10, hot: int = 80) -> Feature:
    """A real feature; 80 hot pixels in a 10x10 box is dense and significant."""
    return Feature(
        feature_id=ids.next_feature_id(),
        block_id=block_id,
        box=PixelBox(x, y, w, h),
        num_hot_pixels=hot,
        max_heat=250,
    )


def box_for_target(video: VideoConfig, step: FlightStep, target: Location,
                   true_down_m: float, size: float = 20.0) -> PixelBox:
    """Pixel box at which a ground target appears, for a north-facing drone."""
    forward = target.northing_m - step.location.northing_m
    lateral = target.easting_m - step.location.easting_m
    theta = math.atan2(forward, true_down_m)
    slant = true_down_m / math.cos(theta)
    side_deg = math.degrees(math.atan2(lateral, slant))

    x_frac = (side_deg / (video.hfov_deg / 2.0) + 1.0) / 2.0
    y_frac = ((math.degrees(theta) - step.camera_to_vertical_deg) / (video.vfov_deg / 2.0) + 1.0) / 2.0
    cx = x_frac * video.image_width
    cy = video.image_height * (1.0 - y_frac)
    return PixelBox(cx - size / 2.0, cy - size / 2.0, size, size)


def detection_for_box(box: PixelBox, hot: int = 300) -> Detection:
    return Detection(x=box.x, y=box.y, w=box.w, h=box.h, num_hot_pixels=hot, max_heat=250)


TARGETS = [Location(150.0, -10.0), Location(150.0, 0.0), Location(150.0, 10.0)]


def fly_north_over_targets(pipeline, reported_alt: float = 50.0, true_alt: float = 52.0,
                           num_blocks: int = 20, first_block: int = 1,
                           camera_deg: float = 65.0) -> list[FlightStep]:
    """Fly north 3m per block past three ground targets, reporting a biased altitude."""
    video = pipeline.config.video
    steps = []
    for offset in range(num_blocks):
        block_id = first_block + offset
        step = make_step(step_id=block_id, northing=3.0 * offset, altitude=reported_alt,
                         camera_deg=camera_deg, dem=0.0)
        pipeline.add_step(step)
        detections = [detection_for_box(box_for_target(video, step, target, true_alt))
                      for target in TARGETS]
        pipeline.process_block(make_block(block_id, step), detections)
        steps.append(step)
    return steps
