"""
Register a model point cloud onto a scan point cloud

Loads both clouds, runs the registration pipeline (preprocessing, coarse
seeding, multi-level ICP) and writes the 4x4 model-to-scan pose.
"""

import sys
import argparse
import json
import logging
import time
import numpy as np
from pathlib import Path

# Add the src to the path to import modules
sys.path.append(str(Path(__file__).parent.parent / "src"))

from scan_registration.preprocessing.loader import PointCloudLoader
from scan_registration.alignment import (
    RegistrationPipeline,
    RegistrationRequest,
    RegistrationError,
)
from scan_registration.utils.config import load_config, AppConfig
from scan_registration.utils.export import export_points_to_las, export_points_to_npy
from scan_registration.utils.logging import setup_logger, configure_logging


def _parse_floats(text):
    return [float(v) for v in text.split(",") if v.strip()]


def main(argv=None):
    """
    Main function to run the registration workflow.
    """
    parser = argparse.ArgumentParser(description="Model-to-scan point cloud registration")
    parser.add_argument("model", type=str, help="Model point cloud (.las/.laz/.npy/.xyz/.txt/.csv)")
    parser.add_argument("scan", type=str, help="Scan point cloud in the sensor frame")
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to YAML configuration file (defaults to config/default.yaml)",
    )
    parser.add_argument(
        "--up",
        type=str,
        default="0,0,1",
        help="Gravity up vector of the scan frame, comma separated (default: 0,0,1)",
    )
    parser.add_argument(
        "--voxels",
        type=str,
        default=None,
        help="Voxel pyramid in meters, coarse to fine, comma separated (overrides config)",
    )
    parser.add_argument(
        "--yaws",
        type=str,
        default=None,
        help="Seed yaw angles in degrees, comma separated (overrides config)",
    )
    parser.add_argument("--trim", type=float, default=None, help="Trim fraction (overrides config)")
    parser.add_argument(
        "--output",
        type=str,
        default="registration_pose.txt",
        help="Where to write the 4x4 pose matrix",
    )
    parser.add_argument(
        "--metrics-json",
        type=str,
        default=None,
        help="Optional path for a JSON file with the registration metrics",
    )
    parser.add_argument(
        "--aligned-model",
        type=str,
        default=None,
        help="Optional path (.las/.laz/.npy) to write the model transformed into the scan frame",
    )
    args = parser.parse_args(argv)

    # Load configuration
    cfg: AppConfig = load_config(args.config)

    # Setup logging from config
    log_level = getattr(logging, cfg.logging.level.upper(), logging.INFO)
    logger = setup_logger(__name__, level=log_level, log_file=cfg.logging.file)
    configure_logging(cfg.logging.level, cfg.logging.file)

    loader = PointCloudLoader()
    model = loader.load(args.model)
    scan = loader.load(args.scan)

    request = RegistrationRequest(
        scan_points=scan["points"],
        model_points=model["points"],
        gravity_up=np.array(_parse_floats(args.up)),
        voxel_pyramid=tuple(_parse_floats(args.voxels)) if args.voxels else tuple(cfg.pyramid.voxel_sizes),
        seed_yaw_degrees=tuple(_parse_floats(args.yaws)) if args.yaws else tuple(cfg.coarse.seed_yaw_degrees),
        trim_fraction=args.trim if args.trim is not None else cfg.icp.trim_fraction,
        scan_confidences=scan["confidences"],
    )

    start = time.time()
    pipeline = RegistrationPipeline(cfg)
    try:
        output = pipeline.register(request)
    except RegistrationError as e:
        logger.error(f"Registration failed ({e.kind}): {e}")
        return 1

    output.pose.save(args.output)
    logger.info(f"Pose written to {args.output}")
    logger.info(f"Transformation matrix:\n{output.pose.matrix}")

    metrics = output.metrics.as_dict()
    logger.info(
        f"RMSE {metrics['rmse_meters']:.5f} m, inliers {100 * metrics['inlier_fraction']:.1f}%, "
        f"iterations {metrics['iterations']}, total {time.time() - start:.2f}s"
    )
    if args.metrics_json:
        Path(args.metrics_json).write_text(json.dumps(metrics, indent=2))
        logger.info(f"Metrics written to {args.metrics_json}")

    if args.aligned_model:
        aligned = output.pose.apply(model["points"])
        if Path(args.aligned_model).suffix.lower() in (".las", ".laz"):
            export_points_to_las(aligned, args.aligned_model)
        else:
            export_points_to_npy(aligned, args.aligned_model)

    return 0


if __name__ == "__main__":
    sys.exit(main())
