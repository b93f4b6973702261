"""Shared data models for the detection-to-object pipeline."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

UNKNOWN_VALUE = -999        # no terrain coverage / not computed
UNKNOWN_HEIGHT = -2         # height above ground not computed


class FeatureType(str, Enum):
    REAL = "real"
    UNREAL = "unreal"
    CONSUMED = "consumed"


class DetectorKind(str, Enum):
    HEAT = "heat"
    NEURAL = "neural"


class GeoTag(str, Enum):
    """Provenance or failure-reason code stamped on a feature's location/height."""
    NONE = ""
    FLAT = "FLAT"
    FLAT_NO_STEP = "FLAT_NoStep"
    FLAT_HORIZON = "FLAT_Horizon"
    LOS = "LOS"
    LOS_NO_DSM = "LOS_NoDsm"
    LOS_NO_DEM = "LOS_NoDem"
    LOS_ANGLE = "LOS_Angle"
    LOS_FLAT = "LOS_Flat"
    LOS_MISS = "LOS_Miss"
    BASELINE = "BL"
    BASELINE_FEW = "BL_Few"
    BASELINE_LOW = "BL_Low"
    BASELINE_SAME_ROW = "BL_SameRow"
    BASELINE_SMALL = "BL_Small"
    BASELINE_NEG = "BL_Neg"
    UNREAL_COPY = "UC"


def _to_bool(value: str) -> bool:
    return str(value).strip().lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class Location:
    """A world position in metres, relative to the flight origin."""
    northing_m: float
    easting_m: float

    def add(self, other: Location) -> Location:
        return Location(self.northing_m + other.northing_m, self.easting_m + other.easting_m)

    def subtract(self, other: Location) -> Location:
        return Location(self.northing_m - other.northing_m, self.easting_m - other.easting_m)

    def scale(self, factor: float) -> Location:
        return Location(self.northing_m * factor, self.easting_m * factor)

    @property
    def length_m(self) -> float:
        return math.hypot(self.northing_m, self.easting_m)

    def distance_to(self, other: Location) -> float:
        return self.subtract(other).length_m

    def unit_vector(self) -> Location:
        length = self.length_m
        if length == 0:
            return Location(0.0, 0.0)
        return self.scale(1.0 / length)


@dataclass
class PixelBox:
    """Bounding rectangle in image space; y grows downwards."""
    x: float
    y: float
    w: float
    h: float

    @property
    def right(self) -> float:
        return self.x + self.w

    @property
    def bottom(self) -> float:
        return self.y + self.h

    @property
    def area(self) -> float:
        return self.w * self.h

    @property
    def center(self) -> tuple[float, float]:
        return (self.x + self.w / 2.0, self.y + self.h / 2.0)

    def intersection_area(self, other: PixelBox) -> float:
        iw = min(self.right, other.right) - max(self.x, other.x)
        ih = min(self.bottom, other.bottom) - max(self.y, other.y)
        if iw <= 0 or ih <= 0:
            return 0.0
        return iw * ih

    def union(self, other: PixelBox) -> PixelBox:
        left = min(self.x, other.x)
        top = min(self.y, other.y)
        return PixelBox(left, top, max(self.right, other.right) - left,
                        max(self.bottom, other.bottom) - top)

    def inflate(self, dx: float, dy: float) -> PixelBox:
        return PixelBox(self.x - dx, self.y - dy, self.w + 2 * dx, self.h + 2 * dy)

    def shifted(self, dx: float, dy: float) -> PixelBox:
        return PixelBox(self.x + dx, self.y + dy, self.w, self.h)

    def copy(self) -> PixelBox:
        return PixelBox(self.x, self.y, self.w, self.h)


@dataclass
class FlightStep:
    """One drone telemetry sample. Read-only apart from fix_alt_m."""
    step_id: int
    location: Location
    altitude_m: float              # reported altitude above sea level
    yaw_deg: float                 # 0 = north, clockwise
    camera_to_vertical_deg: float  # camera forward-down angle from vertical
    dem_m: float = UNKNOWN_VALUE   # cached ground elevation below the drone
    on_ground_ref: bool = True     # altitude has a reliable on-ground reference
    fix_alt_m: float = 0.0
    leg_id: int = 0

    @property
    def fixed_altitude_m(self) -> float:
        return self.altitude_m + self.fix_alt_m

    @property
    def fixed_distance_down_m(self) -> float:
        """Corrected height of the drone above the ground beneath it."""
        ground = self.dem_m if self.dem_m != UNKNOWN_VALUE else 0.0
        return self.fixed_altitude_m - ground


@dataclass
class Block:
    """One processed video frame and the features detected in it."""
    block_id: int
    step: Optional[FlightStep] = None
    drone_location: Optional[Location] = None   # smoothed intra-step drone location
    frame_ms: int = 0
    leg_id: int = 0
    feature_ids: list[int] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.drone_location is None and self.step is not None:
            self.drone_location = self.step.location

    @property
    def altitude_m(self) -> float:
        return self.step.fixed_altitude_m if self.step is not None else UNKNOWN_VALUE


@dataclass
class Detection:
    """A single detector output in one frame."""
    x: float                  # bounding box left
    y: float                  # bounding box top
    w: float                  # bounding box width
    h: float                  # bounding box height
    num_hot_pixels: int = 0
    min_heat: int = 0
    max_heat: int = 0
    sum_hot_pixels: int = 0
    kind: DetectorKind = DetectorKind.HEAT
    class_name: str = ""      # neural detector class
    confidence: float = 0.0   # neural detector confidence


@dataclass
class Feature:
    """A detection instance, or a synthetic placeholder bridging a tracking gap."""
    feature_id: int
    block_id: int
    box: PixelBox
    type: FeatureType = FeatureType.REAL
    significant: bool = False
    is_tracked: bool = True
    object_id: int = 0
    location: Optional[Location] = None
    height_m: float = UNKNOWN_HEIGHT
    height_algorithm: GeoTag = GeoTag.NONE
    num_hot_pixels: int = 0
    min_heat: int = 0
    max_heat: int = 0
    sum_hot_pixels: int = 0
    kind: DetectorKind = DetectorKind.HEAT
    class_name: str = ""
    confidence: float = 0.0
    attributes: str = ""

    @classmethod
    def from_detection(cls, feature_id: int, block_id: int, det: Detection) -> Feature:
        return cls(
            feature_id=feature_id,
            block_id=block_id,
            box=PixelBox(det.x, det.y, det.w, det.h),
            num_hot_pixels=det.num_hot_pixels,
            min_heat=det.min_heat,
            max_heat=det.max_heat,
            sum_hot_pixels=det.sum_hot_pixels,
            kind=det.kind,
            class_name=det.class_name,
            confidence=det.confidence,
        )

    @property
    def density(self) -> float:
        """Fraction of the box filled with hot pixels. Unreal features have none."""
        if self.type != FeatureType.REAL or self.box.area <= 0:
            return 0.0
        return self.num_hot_pixels / self.box.area

    def reset_calculations(self) -> None:
        self.location = None
        self.height_m = UNKNOWN_HEIGHT
        self.height_algorithm = GeoTag.NONE

    def consume(self, other: Feature) -> None:
        """Absorb a sibling feature from the same block."""
        self.box = self.box.union(other.box)
        self.num_hot_pixels += other.num_hot_pixels
        self.sum_hot_pixels += other.sum_hot_pixels
        self.max_heat = max(self.max_heat, other.max_heat)
        if other.min_heat > 0:
            self.min_heat = other.min_heat if self.min_heat <= 0 else min(self.min_heat, other.min_heat)
        other.type = FeatureType.CONSUMED
        other.significant = False
        other.is_tracked = False
        other.num_hot_pixels = 0
        other.sum_hot_pixels = 0

    def get_settings(self) -> list:
        """Primitive fields in store order. Must align with load_settings."""
        loc = self.location
        return [
            self.feature_id,
            self.is_tracked,
            self.significant,
            self.object_id,
            self.block_id,
            self.type.value,
            loc.northing_m if loc else UNKNOWN_VALUE,
            loc.easting_m if loc else UNKNOWN_VALUE,
            self.height_m,
            self.height_algorithm.value,
            self.box.x,
            self.box.y,
            self.box.w,
            self.box.h,
            self.min_heat,
            self.max_heat,
            self.num_hot_pixels,
            self.sum_hot_pixels,
            self.kind.value,
            self.class_name,
            self.confidence,
            self.attributes,
        ]

    @classmethod
    def load_settings(cls, settings: list[str]) -> Feature:
        s = [str(v) for v in settings]
        northing, easting = float(s[6]), float(s[7])
        location = None
        if northing != UNKNOWN_VALUE or easting != UNKNOWN_VALUE:
            location = Location(northing, easting)
        return cls(
            feature_id=int(s[0]),
            is_tracked=_to_bool(s[1]),
            significant=_to_bool(s[2]),
            object_id=int(s[3]),
            block_id=int(s[4]),
            type=FeatureType(s[5]),
            location=location,
            height_m=float(s[8]),
            height_algorithm=GeoTag(s[9]),
            box=PixelBox(float(s[10]), float(s[11]), float(s[12]), float(s[13])),
            min_heat=int(s[14]),
            max_heat=int(s[15]),
            num_hot_pixels=int(s[16]),
            sum_hot_pixels=int(s[17]),
            kind=DetectorKind(s[18]),
            class_name=s[19],
            confidence=float(s[20]),
            attributes=s[21],
        )


@dataclass
class TrackedObject:
    """A tracked entity composed of features claimed across blocks."""
    object_id: int
    leg_id: int = 0
    name: str = ""
    feature_ids: list[int] = field(default_factory=list)   # non-decreasing block id
    last_real_feature_id: int = 0
    significant: bool = False
    being_tracked: bool = True
    location: Optional[Location] = None
    location_err_m: float = UNKNOWN_VALUE
    height_m: float = UNKNOWN_HEIGHT
    height_err_m: float = UNKNOWN_VALUE
    max_real_hot_pixels: int = 0
    max_real_width: float = 0
    max_real_height: float = 0
    num_real_features: int = 0
    num_sig_blocks: int = 0
    max_heat: int = 0
    size_cm2: float = 0.0
    avg_range_m: float = 0.0
    attributes: str = ""

    @property
    def first_feature_id(self) -> int:
        return self.feature_ids[0] if self.feature_ids else 0

    @property
    def last_feature_id(self) -> int:
        return self.feature_ids[-1] if self.feature_ids else 0

    def reset(self) -> None:
        """Forget all claimed features and derived stats; keep identity."""
        self.feature_ids = []
        self.last_real_feature_id = 0
        self.significant = False
        self.being_tracked = True
        self.location = None
        self.location_err_m = UNKNOWN_VALUE
        self.height_m = UNKNOWN_HEIGHT
        self.height_err_m = UNKNOWN_VALUE
        self.max_real_hot_pixels = 0
        self.max_real_width = 0
        self.max_real_height = 0
        self.num_real_features = 0
        self.num_sig_blocks = 0
        self.max_heat = 0
        self.size_cm2 = 0.0
        self.avg_range_m = 0.0
        self.attributes = ""

    def get_settings(self) -> list:
        loc = self.location
        return [
            self.object_id,
            self.name,
            loc.northing_m if loc else UNKNOWN_VALUE,
            loc.easting_m if loc else UNKNOWN_VALUE,
            self.location_err_m,
            self.height_m,
            self.height_err_m,
            self.max_real_hot_pixels,
            self.max_real_width,
            self.max_real_height,
            self.num_real_features,
            self.max_heat,
            self.size_cm2,
            self.avg_range_m,
            self.leg_id,
            self.attributes,
            self.significant,
            self.being_tracked,
            self.last_real_feature_id,
            " ".join(str(fid) for fid in self.feature_ids),
        ]

    @classmethod
    def load_settings(cls, settings: list[str]) -> TrackedObject:
        s = [str(v) for v in settings]
        northing, easting = float(s[2]), float(s[3])
        location = None
        if northing != UNKNOWN_VALUE or easting != UNKNOWN_VALUE:
            location = Location(northing, easting)
        return cls(
            object_id=int(s[0]),
            name=s[1],
            location=location,
            location_err_m=float(s[4]),
            height_m=float(s[5]),
            height_err_m=float(s[6]),
            max_real_hot_pixels=int(s[7]),
            max_real_width=float(s[8]),
            max_real_height=float(s[9]),
            num_real_features=int(s[10]),
            max_heat=int(s[11]),
            size_cm2=float(s[12]),
            avg_range_m=float(s[13]),
            leg_id=int(s[14]),
            attributes=s[15],
            significant=_to_bool(s[16]),
            being_tracked=_to_bool(s[17]),
            last_real_feature_id=int(s[18]),
            feature_ids=[int(v) for v in s[19].split()],
        )


@dataclass
class Leg:
    """A flight segment with its altitude correction and summary statistics."""
    leg_id: int
    min_step_id: int = UNKNOWN_VALUE
    max_step_id: int = UNKNOWN_VALUE
    min_block_id: int = UNKNOWN_VALUE
    max_block_id: int = UNKNOWN_VALUE
    num_real_features: int = 0
    num_unreal_features: int = 0
    num_objects: int = 0
    num_significant_objects: int = 0
    fix_alt_m: float = 0.0
    best_fix_alt_m: float = 0.0
    best_sum_locn_err_m: float = 9999.0
    org_sum_locn_err_m: float = UNKNOWN_VALUE
    org_sum_height_err_m: float = UNKNOWN_VALUE
    sum_location_err_m: float = 0.0
    min_location_err_m: float = UNKNOWN_VALUE
    max_location_err_m: float = UNKNOWN_VALUE
    sum_height_m: float = 0.0
    sum_height_err_m: float = 0.0
    min_height_m: float = UNKNOWN_VALUE
    max_height_m: float = UNKNOWN_VALUE

    @property
    def letter(self) -> str:
        return leg_letter(self.leg_id)

    def summarise_objects(self, objects: list[TrackedObject]) -> None:
        """Recompute the summed and min/max error stats over the given objects."""
        self.sum_location_err_m = 0.0
        self.sum_height_m = 0.0
        self.sum_height_err_m = 0.0
        self.min_location_err_m = self.max_location_err_m = UNKNOWN_VALUE
        self.min_height_m = self.max_height_m = UNKNOWN_VALUE

        for obj in objects:
            if obj.location_err_m != UNKNOWN_VALUE:
                self.sum_location_err_m += obj.location_err_m
                self.min_location_err_m, self.max_location_err_m = _summarise(
                    self.min_location_err_m, self.max_location_err_m, obj.location_err_m)
            if obj.height_m not in (UNKNOWN_VALUE, UNKNOWN_HEIGHT):
                self.sum_height_m += obj.height_m
                self.min_height_m, self.max_height_m = _summarise(
                    self.min_height_m, self.max_height_m, obj.height_m)
            if obj.height_err_m != UNKNOWN_VALUE:
                self.sum_height_err_m += obj.height_err_m

    def get_settings(self) -> list:
        return [
            self.leg_id,
            self.min_step_id,
            self.max_step_id,
            self.min_block_id,
            self.max_block_id,
            self.num_real_features,
            self.num_unreal_features,
            self.num_objects,
            self.num_significant_objects,
            self.fix_alt_m,
            self.best_fix_alt_m,
            self.best_sum_locn_err_m,
            self.org_sum_locn_err_m,
            self.org_sum_height_err_m,
            self.sum_location_err_m,
            self.sum_height_err_m,
        ]

    @classmethod
    def load_settings(cls, settings: list[str]) -> Leg:
        s = [str(v) for v in settings]
        return cls(
            leg_id=int(s[0]),
            min_step_id=int(s[1]),
            max_step_id=int(s[2]),
            min_block_id=int(s[3]),
            max_block_id=int(s[4]),
            num_real_features=int(s[5]),
            num_unreal_features=int(s[6]),
            num_objects=int(s[7]),
            num_significant_objects=int(s[8]),
            fix_alt_m=float(s[9]),
            best_fix_alt_m=float(s[10]),
            best_sum_locn_err_m=float(s[11]),
            org_sum_locn_err_m=float(s[12]),
            org_sum_height_err_m=float(s[13]),
            sum_location_err_m=float(s[14]),
            sum_height_err_m=float(s[15]),
        )


def _summarise(lo: float, hi: float, value: float) -> tuple[float, float]:
    if lo == UNKNOWN_VALUE or value < lo:
        lo = value
    if hi == UNKNOWN_VALUE or value > hi:
        hi = value
    return lo, hi


def leg_letter(leg_id: int) -> str:
    """Leg 1 -> "A", leg 26 -> "Z", leg 27 -> "AA"."""
    if leg_id <= 0:
        return ""
    letters = ""
    n = leg_id
    while n > 0:
        n, rem = divmod(n - 1, 26)
        letters = chr(ord("A") + rem) + letters
    return letters


class IdSequence:
    """Feature and object id generator owned by one processing run."""

    def __init__(self) -> None:
        self._next_feature_id = 0
        self._next_object_id = 0

    def next_feature_id(self) -> int:
        self._next_feature_id += 1
        return self._next_feature_id

    def next_object_id(self) -> int:
        self._next_object_id += 1
        return self._next_object_id

    def reset(self) -> None:
        self._next_feature_id = 0
        self._next_object_id = 0
