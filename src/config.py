"""YAML configuration loader with dataclass mapping."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass
class VideoConfig:
    image_width: int = 640
    image_height: int = 512
    hfov_deg: float = 42.0     # horizontal field of view
    vfov_deg: float = 34.0     # vertical field of view
    fps: float = 30.0
    input_is_images: bool = False


@dataclass
class FeatureConfig:
    min_pixels: int = 8
    min_density_perc: int = 20
    max_size: int = 100
    min_overlap_perc: int = 25


@dataclass
class TrackingConfig:
    object_min_duration_ms: int = 500
    object_max_unreal_blocks: int = 3
    object_min_pixels_per_block: int = 5
    object_min_density_perc: int = 33
    weak_object_shift_px: int = 20
    wobble_margin_px: int = 5


@dataclass
class GeolocationConfig:
    los_min_deg: float = 10.0
    los_max_deg: float = 80.0
    los_vert_epsilon_m: float = 0.20
    los_min_vert_step: float = 0.1
    los_start_fraction: float = 0.2
    los_end_fraction: float = 1.4
    baseline_min_down_m: float = 5.0
    baseline_min_tan_diff: float = 0.1


@dataclass
class RayMarchConfig:
    max_search_distance_m: float = 1000.0
    base_step_m: float = 1.0
    max_step_m: float = 5.0
    min_steps_for_degraded: int = 10
    min_drone_height_m: float = 40.0


@dataclass
class CalibrationConfig:
    enabled: bool = True
    coarse_step_m: float = 0.2
    fine_step_m: float = 0.1
    max_abs_m: float = 8.0
    max_abs_no_ground_ref_m: float = 15.0
    noise_floor_m: float = 0.02


@dataclass
class TerrainConfig:
    dem_path: str = ""
    dsm_path: str = ""


@dataclass
class RecordingConfig:
    db_path: str = "data/db/objects.db"
    log_dir: str = "data/logs"


@dataclass
class AppConfig:
    video: VideoConfig = field(default_factory=VideoConfig)
    feature: FeatureConfig = field(default_factory=FeatureConfig)
    tracking: TrackingConfig = field(default_factory=TrackingConfig)
    geolocation: GeolocationConfig = field(default_factory=GeolocationConfig)
    raymarch: RayMarchConfig = field(default_factory=RayMarchConfig)
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)
    terrain: TerrainConfig = field(default_factory=TerrainConfig)
    recording: RecordingConfig = field(default_factory=RecordingConfig)


def _apply_dict(dc: object, data: dict) -> None:
    """Apply dictionary values onto a dataclass instance, ignoring unknown keys."""
    for key, value in data.items():
        if hasattr(dc, key):
            setattr(dc, key, value)


def load_config(path: str | Path | None = None) -> AppConfig:
    """Load configuration from a YAML file, falling back to defaults."""
    config = AppConfig()

    if path is None:
        path = os.environ.get("CONFIG_PATH", "config/default.yaml")

    path = Path(path)
    if path.exists():
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}

        section_map = {
            "video": config.video,
            "feature": config.feature,
            "tracking": config.tracking,
            "geolocation": config.geolocation,
            "raymarch": config.raymarch,
            "calibration": config.calibration,
            "terrain": config.terrain,
            "recording": config.recording,
        }

        for section_name, dc_instance in section_map.items():
            if section_name in raw and isinstance(raw[section_name], dict):
                _apply_dict(dc_instance, raw[section_name])

    # Environment variable overrides
    env_dem = os.environ.get("DEM_PATH")
    if env_dem:
        config.terrain.dem_path = env_dem

    env_dsm = os.environ.get("DSM_PATH")
    if env_dsm:
        config.terrain.dsm_path = env_dsm

    env_db = os.environ.get("DB_PATH")
    if env_db:
        config.recording.db_path = env_db

    return config
