"""Image-to-world geolocation: flat-ground, line-of-sight and baseline-trig height.

None of these methods raise for missing data. Each returns the GeoTag
describing what it did, or why it did nothing, and stamps it on the
feature. A failure tag never overwrites an earlier successful height
provenance.
"""

from __future__ import annotations

import logging
import math
from typing import Optional

from src.config import GeolocationConfig, VideoConfig
from src.processing.terrain import GroundData
from src.recording.models import (
    UNKNOWN_VALUE,
    Block,
    Feature,
    FeatureType,
    GeoTag,
    Location,
)

logger = logging.getLogger(__name__)

HEIGHT_SOURCES = {GeoTag.LOS, GeoTag.BASELINE, GeoTag.UNREAL_COPY}


def stamp(feature: Feature, tag: GeoTag) -> GeoTag:
    if tag in HEIGHT_SOURCES or feature.height_algorithm not in HEIGHT_SOURCES:
        feature.height_algorithm = tag
    return tag


class GeolocationEngine:
    """Translates feature pixel boxes into world locations and heights."""

    def __init__(self, video: VideoConfig, config: GeolocationConfig,
                 ground: Optional[GroundData] = None):
        self._video = video
        self._cfg = config
        self._ground = ground

    @property
    def ground(self) -> Optional[GroundData]:
        return self._ground

    def image_fractions(self, feature: Feature) -> tuple[float, float]:
        """Centroid as (x, y) fractions: x 0=left, y 0=bottom."""
        cx, cy = feature.box.center
        x_frac = cx / self._video.image_width
        y_frac = (self._video.image_height - cy) / self._video.image_height
        return x_frac, y_frac

    def forward_deg(self, feature: Feature, block: Block) -> float:
        """Forward-down angle from vertical to the feature centroid."""
        _, y_frac = self.image_fractions(feature)
        return self._video.vfov_deg / 2.0 * (2.0 * y_frac - 1.0) + block.step.camera_to_vertical_deg

    def ground_below(self, block: Block) -> float:
        """Ground elevation beneath the drone, or 0 when nothing is known."""
        step = block.step
        if step.dem_m != UNKNOWN_VALUE:
            return step.dem_m
        if self._ground is not None and self._ground.dem is not None:
            dem = self._ground.dem.elevation(block.drone_location)
            if dem != UNKNOWN_VALUE:
                return dem
        return 0.0

    def locate_flat_ground(self, feature: Feature, block: Block,
                           last_real: Optional[Feature] = None) -> GeoTag:
        """First-approximation location assuming flat terrain and an on-ground object."""
        if feature.location is not None:
            return feature.height_algorithm
        if block.step is None:
            return stamp(feature, GeoTag.FLAT_NO_STEP)

        if feature.type == FeatureType.UNREAL and last_real is not None:
            # No new visual evidence: reuse the last real observation
            feature.location = last_real.location
            feature.height_m = last_real.height_m
            return stamp(feature, GeoTag.UNREAL_COPY)

        step = block.step
        x_frac, _ = self.image_fractions(feature)
        theta_deg = self.forward_deg(feature, block)
        if theta_deg >= 89.0:
            return stamp(feature, GeoTag.FLAT_HORIZON)

        down_m = step.fixed_altitude_m - self.ground_below(block)
        theta = math.radians(theta_deg)
        forward_m = down_m * math.tan(theta)
        slant_m = down_m / math.cos(theta)
        side_rad = math.radians(self._video.hfov_deg / 2.0 * (2.0 * x_frac - 1.0))
        lateral_m = slant_m * math.tan(side_rad)

        yaw = math.radians(step.yaw_deg)
        offset = Location(
            forward_m * math.cos(yaw) - lateral_m * math.sin(yaw),
            forward_m * math.sin(yaw) + lateral_m * math.cos(yaw),
        )
        feature.location = block.drone_location.add(offset)
        return stamp(feature, GeoTag.FLAT)

    def refine_with_line_of_sight(self, feature: Feature, block: Block) -> GeoTag:
        """Move the flat-ground estimate to where the sight line meets the surface.

        Marches from the drone towards (and beyond) the flat-ground estimate,
        dropping the sight line at the camera's forward-down angle, and stops
        at the first step at or below the surface model. Height above ground
        comes from the bare-earth model at that point.
        """
        if block.step is None or feature.location is None:
            return GeoTag.NONE
        if feature.type != FeatureType.REAL:
            return GeoTag.NONE

        cam_deg = block.step.camera_to_vertical_deg
        if cam_deg < self._cfg.los_min_deg or cam_deg > self._cfg.los_max_deg:
            return stamp(feature, GeoTag.LOS_ANGLE)
        tan = math.tan(math.radians(cam_deg))
        vert_step = 1.0 / tan
        if vert_step <= self._cfg.los_min_vert_step:
            return stamp(feature, GeoTag.LOS_ANGLE)

        surface = self._ground.surface if self._ground is not None else None
        if surface is None:
            return stamp(feature, GeoTag.LOS_NO_DSM)
        dem = self._ground.dem

        drone = block.drone_location
        delta = feature.location.subtract(drone)
        distance_m = delta.length_m
        if distance_m == 0:
            return stamp(feature, GeoTag.LOS_FLAT)
        unit = delta.unit_vector()

        epsilon = self._cfg.los_vert_epsilon_m
        horiz_step = epsilon / vert_step
        altitude = block.altitude_m
        prev: Optional[tuple[Location, float]] = None
        no_dsm = False

        test_m = distance_m * self._cfg.los_start_fraction
        end_m = distance_m * self._cfg.los_end_fraction
        while test_m < end_m:
            test_locn = drone.add(unit.scale(test_m))
            test_alt = altitude - test_m * vert_step
            surface_m = surface.elevation(test_locn)
            if surface_m == UNKNOWN_VALUE:
                no_dsm = True
                test_m += horiz_step
                continue

            dem_m = dem.elevation(test_locn) if dem is not None else UNKNOWN_VALUE
            height = test_alt - dem_m if dem_m != UNKNOWN_VALUE else None

            if test_alt <= surface_m + epsilon:
                feature.location = test_locn
                if height is None:
                    return stamp(feature, GeoTag.LOS_NO_DEM)
                if height < 0:
                    if prev is not None and abs(prev[1]) < abs(height):
                        feature.location, height = prev
                    height = max(height, 0.0)
                feature.height_m = height
                return stamp(feature, GeoTag.LOS)

            if height is not None:
                prev = (test_locn, height)
            test_m += horiz_step

        return stamp(feature, GeoTag.LOS_NO_DSM if no_dsm else GeoTag.LOS_MISS)

    def estimate_height_from_baseline(self, first_real: Optional[Feature], last_real: Feature,
                                      first_block: Optional[Block], last_block: Block,
                                      dem_m: float, avg_fixed_alt_m: float) -> GeoTag:
        """Height of an object from the change in its look angle as the drone moves."""
        if (first_real is None or first_block is None
                or first_real.feature_id == last_real.feature_id
                or first_block.step is None or last_block.step is None):
            return stamp(last_real, GeoTag.BASELINE_FEW)

        if last_block.step.fixed_distance_down_m < self._cfg.baseline_min_down_m:
            return stamp(last_real, GeoTag.BASELINE_LOW)

        baseline_m = first_block.drone_location.distance_to(last_block.drone_location)
        ground_down_m = avg_fixed_alt_m - dem_m

        if first_real.box.center[1] == last_real.box.center[1]:
            return stamp(last_real, GeoTag.BASELINE_SAME_ROW)

        first_tan = math.tan(math.radians(self.forward_deg(first_real, first_block)))
        last_tan = math.tan(math.radians(self.forward_deg(last_real, last_block)))
        tan_diff = first_tan - last_tan
        if abs(tan_diff) < self._cfg.baseline_min_tan_diff:
            return stamp(last_real, GeoTag.BASELINE_SMALL)

        height_m = ground_down_m - baseline_m / tan_diff
        if height_m < 0:
            return stamp(last_real, GeoTag.BASELINE_NEG)
        last_real.height_m = height_m
        logger.debug("Feature %d baseline height %.2fm over %.1fm",
                     last_real.feature_id, height_m, baseline_m)
        return stamp(last_real, GeoTag.BASELINE)
