"""Pipeline orchestrator: detections → geolocate → track → calibrate per leg."""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any, Optional

from src.config import AppConfig
from src.processing.calibrator import LegCalibrator
from src.processing.geolocation import GeolocationEngine
from src.processing.terrain import GroundData
from src.processing.tracker import ObjectTracker
from src.recording.models import (
    Block,
    Detection,
    Feature,
    FlightStep,
    IdSequence,
    Leg,
    TrackedObject,
)
from src.recording.store import RunStore

logger = logging.getLogger(__name__)


class Pipeline:
    """Main processing pipeline for one run over a flight's blocks."""

    def __init__(self, config: AppConfig, ground: Optional[GroundData] = None,
                 use_legs: bool = True):
        self._config = config
        self._use_legs = use_legs
        self._ground = ground if ground is not None else GroundData.load(
            config.terrain.dem_path, config.terrain.dsm_path)

        # Components
        self._ids = IdSequence()
        self._geolocator = GeolocationEngine(config.video, config.geolocation, self._ground)
        self._tracker = ObjectTracker(
            config.tracking, config.feature, config.video, self._ids, self._geolocator)
        self._calibrator = LegCalibrator(config.calibration, self._tracker)

        self._steps: OrderedDict[int, FlightStep] = OrderedDict()
        self._legs: list[Leg] = []
        self._leg_id = 0
        self._block_count = 0

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def tracker(self) -> ObjectTracker:
        return self._tracker

    @property
    def geolocator(self) -> GeolocationEngine:
        return self._geolocator

    @property
    def legs(self) -> list[Leg]:
        return list(self._legs)

    @property
    def in_leg(self) -> bool:
        return self._leg_id > 0

    @property
    def stats(self) -> dict[str, Any]:
        objects = self._tracker.objects.values()
        return {
            "blocks": self._block_count,
            "features": len(self._tracker.features),
            "objects": len(objects),
            "significant_objects": sum(1 for obj in objects if obj.significant),
            "legs": len(self._legs),
        }

    def add_step(self, step: FlightStep) -> None:
        self._steps[step.step_id] = step

    def step(self, step_id: int) -> Optional[FlightStep]:
        return self._steps.get(step_id)

    def start_leg(self, leg_id: int) -> None:
        """Begin a flight leg; objects from earlier legs stop being tracked."""
        if self.in_leg:
            self.end_leg()
        self._leg_id = leg_id
        self._tracker.start_leg(leg_id)
        logger.info("Leg %d started", leg_id)

    def end_leg(self) -> Optional[Leg]:
        """Close the current leg, calibrate its altitude correction and summarise it."""
        if not self.in_leg:
            return None
        leg_id = self._leg_id
        self._tracker.end_leg()
        self._leg_id = 0

        leg = Leg(leg_id=leg_id)
        steps = self._leg_steps(leg_id)
        objects = self._tracker.leg_objects(leg_id)
        if self._config.calibration.enabled and objects:
            self._calibrator.calibrate_leg(leg, steps, objects)
        else:
            self._calibrator.summarise_leg(leg, steps, objects)
        self._legs.append(leg)

        logger.info("Leg %d ended: %d objects (%d significant), FixAltM=%+.1fm",
                    leg_id, leg.num_objects, leg.num_significant_objects, leg.fix_alt_m)
        return leg

    def _leg_steps(self, leg_id: int) -> list[FlightStep]:
        steps: OrderedDict[int, FlightStep] = OrderedDict()
        for block in self._tracker.blocks.values():
            if block.leg_id == leg_id and block.step is not None:
                block.step.leg_id = leg_id
                steps[block.step.step_id] = block.step
        return list(steps.values())

    def process_block(self, block: Block, detections: list[Detection]) -> list[Feature]:
        """Turn one frame's detections into features and track them."""
        features = [
            Feature.from_detection(self._ids.next_feature_id(), block.block_id, det)
            for det in detections
        ]
        for feature in features:
            self._geolocator.locate_flat_ground(feature, block)
            self._geolocator.refine_with_line_of_sight(feature, block)

        if self.in_leg or not self._use_legs:
            self._tracker.process_block(block, features)
        else:
            self._tracker.record_block(block, features)

        self._block_count += 1
        return features

    def finish(self) -> list[Leg]:
        """End any open leg and return all leg summaries."""
        self.end_leg()
        return self.legs

    def significant_objects(self) -> list[TrackedObject]:
        return [obj for obj in self._tracker.objects.values() if obj.significant]

    def save(self, store: RunStore) -> None:
        store.save_features(self._tracker.features.values())
        store.save_objects(self._tracker.objects.values())
        store.save_legs(self._legs)
        logger.info("Saved run: %s", store.get_stats())
