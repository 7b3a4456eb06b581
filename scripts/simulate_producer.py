#!/usr/bin/env python3
"""
Simulate the sensor process.

Publishes synthetic frames on the shared-memory channel at a fixed rate,
writing the idle slot and flipping the sync flag after each frame, exactly
like the real producer. Run the detector against it in another terminal:

    python scripts/simulate_producer.py --mode sphere --rate 10
    python -m detection.process run --mode sphere
"""

import argparse
import sys
import time
from pathlib import Path

import numpy as np

# Add parent directory to path to import utils
sys.path.append(str(Path(__file__).parent.parent))

from detection.channel import ChannelUnavailable, FrameProducer
from detection.config import ConfigError, DetectionConfig, load_config
from utils.synthetic import cylinder_scene, sphere_scene


def jitter(points: np.ndarray, rng: np.random.Generator, scale: float) -> np.ndarray:
    return points + rng.normal(scale=scale, size=points.shape)


def main():
    parser = argparse.ArgumentParser(description="Publish synthetic frames over shared memory")
    parser.add_argument("--mode", choices=["sphere", "cylinder"], default="sphere")
    parser.add_argument("--config", help="Detection config JSON (channel names and sizes)")
    parser.add_argument("--rate", type=float, default=10.0, help="Frames per second")
    parser.add_argument("--frames", type=int, default=0, help="Stop after N frames (0 = forever)")
    parser.add_argument("--jitter", type=float, default=0.001, help="Per-frame noise (m)")
    parser.add_argument("--seed", type=int, default=0)
    args = parser.parse_args()

    try:
        config = load_config(Path(args.config)) if args.config else DetectionConfig()
    except ConfigError as e:
        print(f"Invalid config: {e}")
        sys.exit(1)

    channel_config = config.channel
    rng = np.random.default_rng(args.seed)
    build = sphere_scene if args.mode == "sphere" else cylinder_scene
    scenes = [build(rng, channel_config.point_count) for _ in channel_config.buffer_pairs]

    try:
        producer = FrameProducer.from_config(channel_config)
    except ChannelUnavailable as e:
        print(f"Channel unavailable: {e}")
        sys.exit(1)

    print(f"Publishing {args.mode} frames on '{channel_config.sync_name}' at {args.rate:.1f} Hz")
    for key, value in scenes[0].truth.items():
        print(f"  {key}: {value}")

    period = 1.0 / args.rate
    published = 0
    with producer:
        try:
            while args.frames == 0 or published < args.frames:
                frames = []
                for scene in scenes:
                    scene.points = jitter(scene.points, rng, args.jitter)
                    frames.append(scene.to_raw(rng))
                flag = producer.write_frames(frames)
                published += 1
                print(f"\rframe {published}  flag={flag}", end="", flush=True)
                time.sleep(period)
        except KeyboardInterrupt:
            pass
    print(f"\nPublished {published} frames")


if __name__ == "__main__":
    main()
