"""Utility functions for LiDAR primitive detection."""

from .geometry import (
    sensor_to_host,
    host_to_sensor,
    planar_distance,
    spheres_from_quads,
    planes_from_triples,
    circles_from_triples,
)
from .validation import (
    validate_config_file,
    validate_raw_frame,
)

__all__ = [
    "sensor_to_host",
    "host_to_sensor",
    "planar_distance",
    "spheres_from_quads",
    "planes_from_triples",
    "circles_from_triples",
    "validate_config_file",
    "validate_raw_frame",
]
