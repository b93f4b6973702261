"""Adaptive-step line-of-sight to terrain intersection."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from src.config import RayMarchConfig
from src.processing.terrain import TerrainGrid
from src.recording.models import Location

_CONFIDENCE_ALT_CAP_M = 300.0


@dataclass
class RayHit:
    location: Location
    elevation_m: float
    confidence: float        # 0.0-1.0, zero for degraded results
    distance_m: float = 0.0
    steps: int = 0


@dataclass
class DroneState:
    location: Location
    altitude_m: float
    yaw_deg: float
    camera_down_deg: float   # pitch below the horizon


@dataclass
class CameraParameters:
    hfov_deg: float
    vfov_deg: float


@dataclass
class ImagePosition:
    horizontal: float        # -1 left to +1 right
    vertical: float          # -1 bottom to +1 top


def adaptive_step(height_above_m: float, terrain: TerrainGrid,
                  config: RayMarchConfig) -> float:
    """Smaller steps near the ground, never below the grid's vertical unit."""
    step = config.base_step_m * height_above_m / 50.0
    return max(terrain.vertical_unit_m, min(step, config.max_step_m))


def confidence_for(distance_m: float, initial_altitude_m: float, max_distance_m: float) -> float:
    conf = (0.7 * (1.0 - distance_m / max_distance_m)
            + 0.3 * (1.0 - min(initial_altitude_m, _CONFIDENCE_ALT_CAP_M) / _CONFIDENCE_ALT_CAP_M))
    return min(1.0, max(0.0, conf))


def intersect(origin: Location, altitude_m: float, bearing_rad: float,
              down_angle_rad: float, terrain: TerrainGrid,
              max_distance_m: Optional[float] = None,
              config: Optional[RayMarchConfig] = None) -> Optional[RayHit]:
    """March a ray from the drone until it meets the terrain.

    Returns None when the ray leaves terrain coverage too early to be
    meaningful. A ray that never meets the ground returns a zero-confidence
    hit at its last position.
    """
    cfg = config or RayMarchConfig()
    max_d = max_distance_m if max_distance_m is not None else cfg.max_search_distance_m

    direction = Location(math.cos(bearing_rad), math.sin(bearing_rad))
    tan_down = math.tan(down_angle_rad)
    position = origin
    altitude = altitude_m
    travelled = 0.0
    steps = 0
    last_terrain = 0.0

    start_terrain = terrain.elevation(origin)
    height_above = altitude - start_terrain if start_terrain >= 0 else altitude
    step = adaptive_step(height_above, terrain, cfg)

    while travelled < max_d:
        steps += 1
        vertical_step = step * tan_down
        position = position.add(direction.scale(step))
        altitude -= vertical_step
        travelled += step

        ground = terrain.elevation(position)
        if ground < 0:
            if steps >= cfg.min_steps_for_degraded:
                return RayHit(position, last_terrain, 0.0, travelled, steps)
            return None
        last_terrain = ground

        if altitude <= ground + terrain.vertical_unit_m:
            distance = travelled
            if vertical_step > 0:
                step_back = (ground - altitude) / vertical_step * step
                position = position.add(direction.scale(-step_back))
                distance -= step_back
                resampled = terrain.elevation(position)
                if resampled >= 0:
                    ground = resampled
            return RayHit(position, ground, confidence_for(distance, altitude_m, max_d),
                          distance, steps)

        step = adaptive_step(altitude - ground, terrain, cfg)

    return RayHit(position, last_terrain, 0.0, travelled, steps)


def estimate_target(drone: DroneState, camera: CameraParameters, image: ImagePosition,
                    terrain: TerrainGrid, config: Optional[RayMarchConfig] = None) -> Optional[RayHit]:
    """Locate the terrain point seen at an image position."""
    cfg = config or RayMarchConfig()
    if drone.altitude_m < cfg.min_drone_height_m:
        raise ValueError("Drone altitude is below minimum safe height")
    if not (-1 <= image.horizontal <= 1 and -1 <= image.vertical <= 1):
        raise ValueError("Image position fractions must be between -1 and 1")

    half_v = math.radians(camera.vfov_deg / 2.0)
    half_h = math.radians(camera.hfov_deg / 2.0)
    down_deg = drone.camera_down_deg - math.degrees(math.atan(image.vertical * math.tan(half_v)))
    bearing_deg = drone.yaw_deg + math.degrees(math.atan(image.horizontal * math.tan(half_h)))
    bearing_deg = bearing_deg % 360.0

    return intersect(drone.location, drone.altitude_m, math.radians(bearing_deg),
                     math.radians(down_deg), terrain, config=cfg)
