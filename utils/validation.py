"""Validation utilities for configuration files and raw sensor frames."""

import json
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from pydantic import ValidationError
import numpy as np

from detection.config import DetectionConfig


def validate_config_file(config_path: Path) -> Tuple[bool, Optional[DetectionConfig], List[str]]:
    """
    Validate a detection configuration JSON file.

    Args:
        config_path: Path to the JSON file

    Returns:
        Tuple of (is_valid, parsed_config, list_of_errors)
    """
    if not config_path.exists():
        return False, None, ["Config file does not exist"]

    try:
        with open(config_path, "r") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        return False, None, [f"Invalid JSON: {e}"]

    if not isinstance(data, dict):
        return False, None, ["Config must be a JSON object"]

    try:
        config = DetectionConfig(**data)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        return False, None, errors

    return True, config, []


def validate_raw_frame(
    raw: np.ndarray,
    point_count: int,
    channels: int = 4
) -> Tuple[bool, Dict, List[str]]:
    """
    Check a raw sensor frame before it is fed to the detector.

    Checks:
    - Size matches point_count * channels
    - Coordinates are finite
    - Frame is not all zeros (producer has not written yet)

    Returns:
        Tuple of (is_valid, frame_info, list_of_errors)
    """
    errors = []
    info = {"values": int(np.size(raw))}

    expected = point_count * channels
    if np.size(raw) != expected:
        return False, info, [f"Frame holds {np.size(raw)} values, expected {expected}"]

    points = np.asarray(raw, dtype=np.float32).reshape(point_count, channels)
    xyz = points[:, :3]

    finite = np.isfinite(xyz).all(axis=1)
    info["finite_points"] = int(finite.sum())
    if not finite.all():
        errors.append(f"{int((~finite).sum())} points have non-finite coordinates")

    if not xyz.any():
        errors.append("Frame is all zeros")

    if finite.any():
        valid = xyz[finite]
        info["min"] = valid.min(axis=0).tolist()
        info["max"] = valid.max(axis=0).tolist()
        # Sensor frame, before the host remap
        info["max_range"] = float(np.linalg.norm(valid, axis=1).max())

    return len(errors) == 0, info, errors
