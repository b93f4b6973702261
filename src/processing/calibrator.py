"""Per-leg search for the constant drone altitude correction (FixAltM)."""

from __future__ import annotations

import logging

from src.config import CalibrationConfig
from src.errors import ProcessingError
from src.processing.tracker import ObjectTracker
from src.recording.models import (
    UNKNOWN_VALUE,
    FeatureType,
    FlightStep,
    Leg,
    TrackedObject,
)

logger = logging.getLogger(__name__)


class LegCalibrator:
    """Chooses the altitude correction that best agrees object locations.

    Every evaluation re-geolocates all of the leg's features and re-claims
    them into their objects, so the search is a coarse two-sided scan with
    early exit followed by a single fine step.
    """

    def __init__(self, config: CalibrationConfig, tracker: ObjectTracker):
        self._cfg = config
        self._tracker = tracker
        self._evaluations = 0

    @property
    def evaluations(self) -> int:
        return self._evaluations

    def calibrate_leg(self, leg: Leg, steps: list[FlightStep],
                      objects: list[TrackedObject]) -> float:
        """Search, apply and return the leg's best FixAltM."""
        phase = "baseline"
        try:
            self._evaluations = 0
            max_abs = self._cfg.max_abs_m
            if not all(step.on_ground_ref for step in steps):
                max_abs = self._cfg.max_abs_no_ground_ref_m

            leg.best_sum_locn_err_m = 9999.0
            leg.org_sum_locn_err_m = UNKNOWN_VALUE
            self._try_value(leg, steps, objects, 0.0)

            phase = "scan up"
            self._scan(leg, steps, objects, self._cfg.coarse_step_m, max_abs)

            phase = "scan down"
            self._scan(leg, steps, objects, -self._cfg.coarse_step_m, max_abs)

            phase = "fine tune"
            best = leg.best_fix_alt_m
            if not self._try_value(leg, steps, objects, round(best + self._cfg.fine_step_m, 6)):
                self._try_value(leg, steps, objects, round(best - self._cfg.fine_step_m, 6))

            phase = "apply best"
            leg.fix_alt_m = leg.best_fix_alt_m
            self.apply(leg.fix_alt_m, steps, objects)
            self.summarise_leg(leg, steps, objects)
        except ProcessingError:
            raise
        except Exception as exc:
            raise ProcessingError(f"calibrate_leg {leg.leg_id} phase={phase}", str(exc)) from exc

        logger.info(
            "Leg %d: FixAltM=%+.1fm, sum location error %.2fm -> %.2fm (%d evaluations)",
            leg.leg_id, leg.fix_alt_m, leg.org_sum_locn_err_m,
            leg.sum_location_err_m, self._evaluations,
        )
        return leg.fix_alt_m

    def _scan(self, leg: Leg, steps: list[FlightStep], objects: list[TrackedObject],
              increment: float, max_abs: float) -> None:
        k = 1
        while abs(k * increment) <= max_abs + 1e-9:
            if not self._try_value(leg, steps, objects, round(k * increment, 6)):
                break
            k += 1

    def _try_value(self, leg: Leg, steps: list[FlightStep],
                   objects: list[TrackedObject], fix_alt_m: float) -> bool:
        """Apply a candidate value; keep it if it beats the best by the noise floor."""
        self.apply(fix_alt_m, steps, objects)
        leg.summarise_objects([obj for obj in objects if obj.significant])
        self._evaluations += 1
        err = leg.sum_location_err_m
        logger.debug("Leg %d: FixAltM=%+.2f sum location error %.3f", leg.leg_id, fix_alt_m, err)

        if leg.org_sum_locn_err_m == UNKNOWN_VALUE:
            leg.org_sum_locn_err_m = err
            leg.org_sum_height_err_m = leg.sum_height_err_m
            leg.best_sum_locn_err_m = err
            leg.best_fix_alt_m = fix_alt_m
            return True

        if err + self._cfg.noise_floor_m < leg.best_sum_locn_err_m:
            leg.best_sum_locn_err_m = err
            leg.best_fix_alt_m = fix_alt_m
            return True
        return False

    def apply(self, fix_alt_m: float, steps: list[FlightStep],
              objects: list[TrackedObject]) -> None:
        """Set the correction on every step and rebuild every object from scratch."""
        for step in steps:
            step.fix_alt_m = fix_alt_m
        for obj in objects:
            self._tracker.rebuild_object(obj)

    def summarise_leg(self, leg: Leg, steps: list[FlightStep],
                      objects: list[TrackedObject]) -> None:
        step_ids = [step.step_id for step in steps]
        if step_ids:
            leg.min_step_id, leg.max_step_id = min(step_ids), max(step_ids)

        block_ids = [b.block_id for b in self._tracker.blocks.values() if b.leg_id == leg.leg_id]
        if block_ids:
            leg.min_block_id, leg.max_block_id = min(block_ids), max(block_ids)
        leg.num_real_features = 0
        leg.num_unreal_features = 0
        for block_id in block_ids:
            for feature in self._tracker.block_features(block_id):
                if feature.type == FeatureType.REAL:
                    leg.num_real_features += 1
                elif feature.type == FeatureType.UNREAL:
                    leg.num_unreal_features += 1

        significant = [obj for obj in objects if obj.significant]
        leg.num_objects = len(objects)
        leg.num_significant_objects = len(significant)
        leg.summarise_objects(significant)
