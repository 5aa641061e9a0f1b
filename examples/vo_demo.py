#!/usr/bin/env python3
"""Run stereo visual odometry on a EuRoC sequence.

Usage:
    uv run python examples/vo_demo.py data/euroc/MH_01_easy/mav0
    uv run python examples/vo_demo.py data/euroc/MH_01_easy/mav0 \
        --config configs/default.yaml --max-frames 500 --no-viewer
"""

import argparse
import logging
import time

import numpy as np

from stereo_vo import DatasetReader, FrontendStatus, VisualOdometry

logger = logging.getLogger("vo_demo")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("dataset", help="Path to the EuRoC mav0 directory")
    parser.add_argument("--config", default=None, help="YAML configuration file")
    parser.add_argument("--stride", type=int, default=1, help="Use every n-th frame")
    parser.add_argument("--max-frames", type=int, default=None)
    parser.add_argument(
        "--no-viewer", action="store_true", help="Disable the Rerun viewer"
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    return parser.parse_args()


def main() -> None:
    """Run the visual odometry demo."""
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )

    reader = DatasetReader(args.dataset, stride=args.stride, max_frames=args.max_frames)

    viewer = None
    vo = VisualOdometry.from_dataset_path(args.dataset, config_path=args.config)
    if not args.no_viewer:
        from stereo_vo.visualization.rerun_visualizer import RerunVisualizer

        viewer = RerunVisualizer(vo.map, app_name="stereo-vo")
        vo.frontend.set_viewer(viewer)

    logger.info("Processing %d frames", len(reader))

    lost_count = 0
    start = time.perf_counter()
    with vo:
        for i, sample in enumerate(reader):
            frame = vo.process_frame(sample.left, sample.right, sample.timestamp_ns)

            if vo.status == FrontendStatus.LOST:
                lost_count += 1

            if i % 20 == 0:
                pos = frame.pose.center
                logger.info(
                    "%6d %-13s inliers=%3d map=%5d kf=%4d [%7.2f, %7.2f, %7.2f]",
                    i,
                    vo.status.value,
                    vo.frontend.tracking_inliers,
                    vo.num_map_points,
                    vo.num_keyframes,
                    pos[0],
                    pos[1],
                    pos[2],
                )
    elapsed = time.perf_counter() - start

    positions = vo.trajectory_positions()
    distance = 0.0
    if len(positions) >= 2:
        distance = float(np.sum(np.linalg.norm(np.diff(positions, axis=0), axis=1)))

    n_frames = max(vo.num_frames, 1)
    logger.info("Frames processed:  %d", vo.num_frames)
    logger.info("Keyframes:         %d", vo.num_keyframes)
    logger.info("Map points:        %d", vo.num_map_points)
    logger.info(
        "Lost count:        %d (%.1f%%)", lost_count, 100 * lost_count / n_frames
    )
    logger.info("Distance traveled: %.2f m", distance)
    logger.info("Average time:      %.1f ms/frame", 1000 * elapsed / n_frames)
    if viewer is not None:
        viewer.update_map()


if __name__ == "__main__":
    main()
