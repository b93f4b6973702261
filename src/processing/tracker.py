"""Block-by-block feature-to-object tracker with persistence and birth."""

from __future__ import annotations

import logging
import math
from collections import OrderedDict
from typing import Optional

import numpy as np
from scipy.spatial.distance import cdist

from src.config import FeatureConfig, TrackingConfig, VideoConfig
from src.errors import ProcessingError, check
from src.processing.geolocation import GeolocationEngine
from src.recording.models import (
    UNKNOWN_HEIGHT,
    UNKNOWN_VALUE,
    Block,
    Feature,
    FeatureType,
    GeoTag,
    IdSequence,
    Location,
    PixelBox,
    TrackedObject,
    leg_letter,
)

logger = logging.getLogger(__name__)

# Filled fraction of an ellipse inscribed in its bounding box
_ELLIPSE_FILL = 0.785


class ObjectTracker:
    """Assigns each block's features to persistent objects.

    Objects and features live in id-addressed arenas; a feature refers to
    its owner by object id only. Blocks must be processed in increasing
    block id order.
    """

    def __init__(self, tracking: TrackingConfig, features: FeatureConfig,
                 video: VideoConfig, ids: Optional[IdSequence] = None,
                 geolocator: Optional[GeolocationEngine] = None):
        self._cfg = tracking
        self._feature_cfg = features
        self._video = video
        self._ids = ids or IdSequence()
        self._geolocator = geolocator

        self._blocks: OrderedDict[int, Block] = OrderedDict()
        self._features: dict[int, Feature] = {}
        self._objects: OrderedDict[int, TrackedObject] = OrderedDict()

        self._leg_id = 0
        self._leg_name_count = 0
        self._unnamed_count = 0
        self._phase = "idle"

    @property
    def blocks(self) -> dict[int, Block]:
        return self._blocks

    @property
    def features(self) -> dict[int, Feature]:
        return self._features

    @property
    def objects(self) -> dict[int, TrackedObject]:
        return self._objects

    @property
    def phase(self) -> str:
        return self._phase

    @property
    def leg_id(self) -> int:
        return self._leg_id

    def block_features(self, block_id: int) -> list[Feature]:
        return [self._features[fid] for fid in self._blocks[block_id].feature_ids]

    def object_features(self, obj: TrackedObject) -> list[Feature]:
        return [self._features[fid] for fid in obj.feature_ids]

    def first_feature(self, obj: TrackedObject) -> Optional[Feature]:
        return self._features.get(obj.first_feature_id)

    def last_feature(self, obj: TrackedObject) -> Optional[Feature]:
        return self._features.get(obj.last_feature_id)

    def last_real_feature(self, obj: TrackedObject) -> Optional[Feature]:
        return self._features.get(obj.last_real_feature_id)

    def leg_objects(self, leg_id: int) -> list[TrackedObject]:
        return [obj for obj in self._objects.values() if obj.leg_id == leg_id]

    # ------------------------------------------------------------------
    # Legs
    # ------------------------------------------------------------------

    def stop_tracking(self) -> None:
        for obj in self._objects.values():
            obj.being_tracked = False

    def start_leg(self, leg_id: int) -> None:
        self.stop_tracking()
        self._leg_id = leg_id
        self._leg_name_count = 0

    def end_leg(self) -> None:
        self.stop_tracking()
        self._leg_id = 0

    # ------------------------------------------------------------------
    # Feature viability
    # ------------------------------------------------------------------

    def feature_density_good(self, feature: Feature) -> bool:
        return feature.density * 100.0 >= self._feature_cfg.min_density_perc

    def feature_oversized(self, feature: Feature) -> bool:
        max_size = self._feature_cfg.max_size
        return feature.box.w > max_size or feature.box.h > max_size

    def feature_significant(self, feature: Feature) -> bool:
        return (feature.type == FeatureType.REAL
                and feature.num_hot_pixels >= self._feature_cfg.min_pixels
                and self.feature_density_good(feature)
                and not self.feature_oversized(feature))

    def significant_intersection(self, feature: Feature, expected: PixelBox) -> bool:
        """Overlap covers enough of either the feature or the expected box."""
        overlap = feature.box.intersection_area(expected)
        if overlap <= 0:
            return False
        min_overlap = self._feature_cfg.min_overlap_perc / 100.0
        if feature.box.area > 0 and overlap / feature.box.area >= min_overlap:
            return True
        return expected.area > 0 and overlap / expected.area >= min_overlap

    # ------------------------------------------------------------------
    # Block processing
    # ------------------------------------------------------------------

    def record_block(self, block: Block, features: list[Feature]) -> None:
        """Store a block that is not tracked (e.g. outside any leg)."""
        self._phase = "record_block"
        self._register_block(block, features)
        for feature in features:
            feature.is_tracked = False
            feature.significant = False

    def process_block(self, block: Block, features: list[Feature]) -> None:
        """Assign this block's features to objects, persist and create objects."""
        phase = "register"
        try:
            self._register_block(block, features)
            for feature in features:
                feature.significant = self.feature_significant(feature)
                if feature.type == FeatureType.REAL:
                    feature.is_tracked = feature.significant
            block_id = block.block_id

            phase = "scope"
            in_scope: list[TrackedObject] = []
            for obj in self._objects.values():
                last = self.last_feature(obj)
                if last is not None and last.block_id == block_id - 1 and self.vaguely_significant(obj):
                    in_scope.append(obj)
            available = list(in_scope)
            avail_features = [f for f in features if f.object_id == 0]

            for pass_no in (0, 1):
                phase = f"claim pass {pass_no}"
                self._phase = phase
                for obj in in_scope:
                    last = self.last_feature(obj)
                    if last.block_id != block_id - 1:
                        continue
                    if pass_no == 0 and last.type != FeatureType.REAL:
                        continue
                    if pass_no == 1 and last.type == FeatureType.CONSUMED:
                        continue
                    expected = self.expected_location(obj)
                    claimed = False
                    for feature in features:
                        if self.maybe_claim_feature(obj, feature, expected):
                            claimed = True
                            if feature in avail_features:
                                avail_features.remove(feature)
                    if claimed and obj in available:
                        available.remove(obj)

            phase = "weak objects"
            self._phase = phase
            for obj in available:
                if obj.num_real_features <= 2:
                    expected = self.expected_location(obj).shifted(0, self._cfg.weak_object_shift_px)
                    for feature in avail_features:
                        self.maybe_claim_feature(obj, feature, expected)

            phase = "persistence"
            self._phase = phase
            for obj in in_scope:
                last_real = self.last_real_feature(obj)
                if (obj.being_tracked and last_real is not None
                        and last_real.block_id < block_id
                        and self.keep_tracking(obj, block_id)):
                    self._add_persist_feature(obj, block)

            phase = "birth"
            self._phase = phase
            for feature in avail_features:
                if feature.is_tracked and feature.object_id == 0:
                    self.add_object(feature)

            phase = "naming"
            self._phase = phase
            for obj in in_scope:
                self._ensure_named(obj)
        except ProcessingError:
            raise
        except Exception as exc:
            raise ProcessingError(f"process_block {block.block_id} phase={phase}", str(exc)) from exc
        finally:
            self._phase = "idle"

    def _register_block(self, block: Block, features: list[Feature]) -> None:
        phase = f"register block {block.block_id}"
        check(block.block_id >= 0, phase, "negative block id")
        if self._blocks:
            last_id = next(reversed(self._blocks))
            check(block.block_id > last_id, phase,
                  f"block {block.block_id} not after block {last_id}")
        block.leg_id = self._leg_id
        self._blocks[block.block_id] = block
        for feature in features:
            check(feature.block_id == block.block_id, phase,
                  f"feature {feature.feature_id} belongs to block {feature.block_id}")
            check(feature.feature_id not in self._features, phase,
                  f"duplicate feature {feature.feature_id}")
            self._features[feature.feature_id] = feature
            block.feature_ids.append(feature.feature_id)

    def _add_persist_feature(self, obj: TrackedObject, block: Block) -> Feature:
        """Bridge a detection gap with an unreal feature at the predicted box."""
        feature = Feature(
            feature_id=self._ids.next_feature_id(),
            block_id=block.block_id,
            box=self.expected_location(obj),
            type=FeatureType.UNREAL,
        )
        self._features[feature.feature_id] = feature
        block.feature_ids.append(feature.feature_id)
        if self._geolocator is not None:
            self._geolocator.locate_flat_ground(feature, block, self.last_real_feature(obj))
        self.claim_feature(obj, feature)
        return feature

    def add_object(self, first_feature: Feature) -> TrackedObject:
        obj = TrackedObject(object_id=self._ids.next_object_id(), leg_id=self._leg_id)
        self._objects[obj.object_id] = obj
        self.claim_feature(obj, first_feature)
        logger.debug("Object %d born from feature %d in block %d",
                     obj.object_id, first_feature.feature_id, first_feature.block_id)
        return obj

    def _ensure_named(self, obj: TrackedObject) -> None:
        if obj.name or not obj.significant:
            return
        if obj.leg_id > 0:
            self._leg_name_count += 1
            obj.name = f"{leg_letter(obj.leg_id)}{self._leg_name_count}"
        else:
            self._unnamed_count += 1
            obj.name = f"#{self._unnamed_count}"
        logger.debug("Object %d named %s", obj.object_id, obj.name)

    # ------------------------------------------------------------------
    # Object behaviour
    # ------------------------------------------------------------------

    def expected_location(self, obj: TrackedObject) -> PixelBox:
        """Predicted pixel box of the object in the block after its last feature."""
        first = self.first_feature(obj)
        last = self.last_feature(obj)
        check(first is not None and last is not None, self._phase,
              f"object {obj.object_id} has no features")

        num_blocks = last.block_id - first.block_id + 1
        check(num_blocks >= 1, self._phase, f"object {obj.object_id} bad block span")
        if num_blocks < 2:
            return last.box.copy()

        fx, fy = first.box.center
        lx, ly = last.box.center
        vx = (lx - fx) / (num_blocks - 1)
        vy = (ly - fy) / (num_blocks - 1)

        grow_w = max(0.0, obj.max_real_width - last.box.w)
        grow_h = max(0.0, obj.max_real_height - last.box.h)
        box = last.box.shifted(vx - grow_w / 2.0, vy - grow_h / 2.0)
        box.w += grow_w
        box.h += grow_h

        if last.type == FeatureType.REAL:
            margin = self._cfg.wobble_margin_px
            box = box.inflate(margin, margin)
        return box

    def keep_tracking(self, obj: TrackedObject, block_id: int) -> bool:
        """Stop tracking once too many consecutive unreal features have been added."""
        if self._video.input_is_images:
            # Still images have no frame-to-frame continuity to bridge
            obj.being_tracked = False
            return False
        last_real = self.last_real_feature(obj)
        last = self.last_feature(obj)
        if obj.being_tracked and last_real is not None and last_real.block_id < block_id:
            obj.being_tracked = (last.block_id - last_real.block_id) < self._cfg.object_max_unreal_blocks
        return obj.being_tracked

    def maybe_claim_feature(self, obj: TrackedObject, feature: Feature,
                            expected: PixelBox) -> bool:
        if feature.object_id != 0:
            return False
        if not (feature.significant or obj.significant):
            return False
        if not self.significant_intersection(feature, expected):
            return False
        return self.claim_feature(obj, feature)

    def claim_feature(self, obj: TrackedObject, feature: Feature,
                      check_viability: bool = True) -> bool:
        """Take ownership of a feature. Returns False if it would spoil the object."""
        phase = f"claim_feature {self._phase}"
        last = self.last_feature(obj)
        if check_viability and feature.type == FeatureType.REAL and last is not None:
            if self.feature_oversized(feature) or not self.feature_density_good(feature):
                return False
            if self.feature_oversized(last):
                return False
            if last.type == FeatureType.REAL and not self.feature_density_good(last):
                return False

        check(feature.object_id == 0, phase,
              f"feature {feature.feature_id} already owned by object {feature.object_id}")
        check(feature.type != FeatureType.CONSUMED, phase,
              f"feature {feature.feature_id} is consumed")
        check(last is not None or feature.type == FeatureType.REAL, phase,
              f"object {obj.object_id} first feature must be real")
        check(last is None or feature.block_id >= last.block_id, phase,
              f"feature {feature.feature_id} precedes object {obj.object_id}")

        feature.object_id = obj.object_id
        was_significant = obj.significant

        if feature.type == FeatureType.REAL:
            feature.is_tracked = True
            last_real = self.last_real_feature(obj)
            if last_real is None or last_real.block_id < feature.block_id:
                obj.feature_ids.append(feature.feature_id)
                obj.last_real_feature_id = feature.feature_id
                obj.num_real_features += 1
                obj.max_real_hot_pixels = max(obj.max_real_hot_pixels, feature.num_hot_pixels)
                obj.max_real_width = max(obj.max_real_width, feature.box.w)
                obj.max_real_height = max(obj.max_real_height, feature.box.h)
            else:
                # Second feature this block: merge it into the first
                last_real.consume(feature)
                obj.max_real_hot_pixels = max(obj.max_real_hot_pixels, last_real.num_hot_pixels)
                obj.max_real_width = max(obj.max_real_width, last_real.box.w)
                obj.max_real_height = max(obj.max_real_height, last_real.box.h)
            self.calculate_object(obj)
        else:
            obj.feature_ids.append(feature.feature_id)
            feature.height_m = obj.height_m
            feature.height_algorithm = GeoTag.UNREAL_COPY

        newest = self.last_feature(obj)
        newest.significant = obj.significant and newest.type == FeatureType.REAL
        newest.attributes = obj.attributes
        if obj.significant and not was_significant:
            for owned in self.object_features(obj):
                owned.significant = True
        return True

    def rebuild_object(self, obj: TrackedObject) -> None:
        """Recompute every owned feature's location and re-claim them in order."""
        owned = self.object_features(obj)
        obj.reset()
        for feature in owned:
            feature.reset_calculations()
            feature.object_id = 0
            if feature.type == FeatureType.REAL:
                feature.significant = self.feature_significant(feature)
            if self._geolocator is not None:
                block = self._blocks[feature.block_id]
                self._geolocator.locate_flat_ground(feature, block, self.last_real_feature(obj))
                self._geolocator.refine_with_line_of_sight(feature, block)
            self.claim_feature(obj, feature, check_viability=False)
        obj.being_tracked = False

    # ------------------------------------------------------------------
    # Object statistics
    # ------------------------------------------------------------------

    def real_density(self, obj: TrackedObject) -> float:
        area = obj.max_real_width * obj.max_real_height * _ELLIPSE_FILL
        if area <= 0:
            return 0.0
        return obj.max_real_hot_pixels / area

    def seen_for_min_durations(self, obj: TrackedObject) -> float:
        """Time seen, in units of the minimum object duration."""
        if self._video.input_is_images:
            return 1.0
        seen_ms = 1000.0 * obj.num_real_features / self._video.fps
        return seen_ms / self._cfg.object_min_duration_ms

    def vaguely_significant(self, obj: TrackedObject) -> bool:
        min_density = self._cfg.object_min_density_perc / 100.0
        return (obj.max_real_hot_pixels > self._cfg.object_min_pixels_per_block
                and self.real_density(obj) > min_density)

    def calculate_significant(self, obj: TrackedObject) -> None:
        min_count = self._cfg.object_min_pixels_per_block
        count = obj.max_real_hot_pixels
        count_ok = count > min_count
        count_good = count > 2 * min_count
        count_great = count > 4 * min_count

        min_density = self._cfg.object_min_density_perc / 100.0
        density = self.real_density(obj)
        density_ok = density > min_density
        density_good = density > 1.5 * min_density
        density_great = density > 2 * min_density

        seen = self.seen_for_min_durations(obj)
        time_ok = seen >= 1
        time_good = seen >= 2
        time_great = seen >= 4

        elevation_ok = obj.height_m >= 0
        elevation_good = obj.height_m > 2
        elevation_great = obj.height_m > 4

        obj.significant = (count_ok and density_ok and time_ok and (
            elevation_great or count_great or density_great or (density_good and count_good)))
        if obj.significant:
            obj.num_sig_blocks += 1

        obj.attributes = "{}: {} {} {} {}".format(
            "Yes" if obj.significant else "No",
            "C3" if count_great else ("C2" if count_good else ("C1" if count_ok else "c")),
            "D3" if density_great else ("D2" if density_good else ("D1" if density_ok else "d")),
            "T3" if time_great else ("T2" if time_good else ("T1" if time_ok else "t")),
            "E3" if elevation_great else ("E2" if elevation_good else ("E1" if elevation_ok else "e")),
        )

    def calculate_object(self, obj: TrackedObject) -> None:
        """Location, height, size and significance from the real features."""
        reals = [f for f in self.object_features(obj) if f.type == FeatureType.REAL]

        located = [f for f in reals if f.location is not None]
        if located:
            points = np.array([[f.location.northing_m, f.location.easting_m] for f in located])
            centre = points.mean(axis=0)
            obj.location = Location(float(centre[0]), float(centre[1]))
            obj.location_err_m = float(cdist(points, centre[np.newaxis, :]).mean())

        if self._geolocator is not None and len(reals) >= 2:
            self._baseline_height(obj, reals[0], reals[-1])

        heights = [f.height_m for f in reals if f.height_m not in (UNKNOWN_HEIGHT, UNKNOWN_VALUE)]
        if heights:
            values = np.array(heights)
            obj.height_m = float(values.mean())
            obj.height_err_m = float(np.abs(values - obj.height_m).max())

        obj.max_heat = max((f.max_heat for f in reals), default=0)
        self._size_and_range(obj, located)
        self.calculate_significant(obj)

    def _baseline_height(self, obj: TrackedObject, first: Feature, last: Feature) -> None:
        first_block = self._blocks.get(first.block_id)
        last_block = self._blocks[last.block_id]
        if last_block.step is None:
            return

        dem_m = UNKNOWN_VALUE
        ground = self._geolocator.ground
        if obj.location is not None and ground is not None and ground.dem is not None:
            dem_m = ground.dem.elevation(obj.location)
        if dem_m == UNKNOWN_VALUE:
            dem_m = self._geolocator.ground_below(last_block)

        altitudes = [self._blocks[f.block_id].step.fixed_altitude_m
                     for f in self.object_features(obj)
                     if f.type == FeatureType.REAL and self._blocks[f.block_id].step is not None]
        avg_alt = float(np.mean(altitudes)) if altitudes else last_block.step.fixed_altitude_m

        self._geolocator.estimate_height_from_baseline(
            first, last, first_block, last_block, dem_m, avg_alt)

    def _size_and_range(self, obj: TrackedObject, located: list[Feature]) -> None:
        ranges = []
        for feature in located:
            block = self._blocks[feature.block_id]
            if block.drone_location is not None:
                ranges.append(feature.location.distance_to(block.drone_location))
        if not ranges:
            return
        obj.avg_range_m = float(np.mean(ranges))
        # Ground sample distance at the average range, in centimetres per pixel
        pixel_rad = math.radians(self._video.hfov_deg) / self._video.image_width
        gsd_cm = 100.0 * obj.avg_range_m * pixel_rad
        obj.size_cm2 = obj.max_real_hot_pixels * gsd_cm * gsd_cm
