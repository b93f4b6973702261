"""Entry point: CLI argument parsing + replay of a detection log through the pipeline."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import yaml

from src.config import load_config
from src.pipeline import Pipeline
from src.recording.models import Block, Detection, DetectorKind, FlightStep, Location
from src.recording.store import RunStore


def setup_logging(log_dir: str, verbose: bool = False) -> None:
    """Configure logging to both console and file."""
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

    logging.basicConfig(
        level=level,
        format=fmt,
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_path / "thermal_geolocate.log"),
        ],
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Thermal drone detection-to-geolocated-object processor"
    )
    parser.add_argument(
        "log",
        help="YAML or JSON detection log (steps + blocks with detections)",
    )
    parser.add_argument(
        "-c", "--config",
        default="config/default.yaml",
        help="Path to YAML config file (default: config/default.yaml)",
    )
    parser.add_argument(
        "--dem",
        default=None,
        help="DEM GeoTIFF path (overrides config)",
    )
    parser.add_argument(
        "--dsm",
        default=None,
        help="DSM GeoTIFF path (overrides config)",
    )
    parser.add_argument(
        "--db",
        default=None,
        help="SQLite file for the processed run (overrides config)",
    )
    parser.add_argument(
        "--no-save",
        action="store_true",
        help="Do not write the processed run to the database",
    )
    parser.add_argument(
        "--no-calibrate",
        action="store_true",
        help="Skip the per-leg altitude correction search",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    return parser.parse_args(argv)


def _step_from_dict(data: dict) -> FlightStep:
    return FlightStep(
        step_id=int(data["step_id"]),
        location=Location(float(data["northing_m"]), float(data["easting_m"])),
        altitude_m=float(data["altitude_m"]),
        yaw_deg=float(data.get("yaw_deg", 0.0)),
        camera_to_vertical_deg=float(data.get("camera_to_vertical_deg", 45.0)),
        dem_m=float(data.get("dem_m", -999)),
        on_ground_ref=bool(data.get("on_ground_ref", True)),
    )


def _detection_from_dict(data: dict) -> Detection:
    return Detection(
        x=data["x"],
        y=data["y"],
        w=data["w"],
        h=data["h"],
        num_hot_pixels=int(data.get("num_hot_pixels", 0)),
        min_heat=int(data.get("min_heat", 0)),
        max_heat=int(data.get("max_heat", 0)),
        sum_hot_pixels=int(data.get("sum_hot_pixels", 0)),
        kind=DetectorKind(data.get("kind", DetectorKind.HEAT.value)),
        class_name=data.get("class_name", ""),
        confidence=float(data.get("confidence", 0.0)),
    )


def replay(pipeline: Pipeline, raw: dict) -> None:
    """Feed a parsed detection log through the pipeline."""
    for step_data in raw.get("steps", []):
        pipeline.add_step(_step_from_dict(step_data))

    current_leg = 0
    for block_data in raw.get("blocks", []):
        leg_id = int(block_data.get("leg_id", 0))
        if leg_id != current_leg:
            if leg_id > 0:
                pipeline.start_leg(leg_id)
            else:
                pipeline.end_leg()
            current_leg = leg_id

        step = pipeline.step(int(block_data["step_id"])) if "step_id" in block_data else None
        drone_location = None
        if "drone_northing_m" in block_data:
            drone_location = Location(float(block_data["drone_northing_m"]),
                                      float(block_data["drone_easting_m"]))
        block = Block(
            block_id=int(block_data["block_id"]),
            step=step,
            drone_location=drone_location,
            frame_ms=int(block_data.get("frame_ms", 0)),
        )
        detections = [_detection_from_dict(d) for d in block_data.get("detections", [])]
        pipeline.process_block(block, detections)

    pipeline.finish()


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)

    # Load configuration
    config = load_config(args.config)

    # Apply CLI overrides
    if args.dem:
        config.terrain.dem_path = args.dem
    if args.dsm:
        config.terrain.dsm_path = args.dsm
    if args.db:
        config.recording.db_path = args.db
    if args.no_calibrate:
        config.calibration.enabled = False

    # Setup logging
    setup_logging(config.recording.log_dir, args.verbose)
    logger = logging.getLogger(__name__)
    logger.info("Processing detection log: %s", args.log)

    with open(args.log, "r") as f:
        raw = yaml.safe_load(f) or {}

    pipeline = Pipeline(config, use_legs=any("leg_id" in b for b in raw.get("blocks", [])))
    replay(pipeline, raw)

    for leg in pipeline.legs:
        print(f"Leg {leg.letter}: FixAltM={leg.fix_alt_m:+.1f}m "
              f"objects={leg.num_significant_objects}/{leg.num_objects} "
              f"sum_locn_err={leg.sum_location_err_m:.2f}m")
    for obj in pipeline.significant_objects():
        loc = obj.location
        where = f"N={loc.northing_m:.1f} E={loc.easting_m:.1f}" if loc else "unlocated"
        print(f"  {obj.name or obj.object_id}: {where} err={obj.location_err_m:.2f}m "
              f"height={obj.height_m:.1f}m")

    if not args.no_save:
        store = RunStore(config.recording.db_path)
        try:
            pipeline.save(store)
        finally:
            store.close()

    logger.info("Done: %s", pipeline.stats)


if __name__ == "__main__":
    main()
