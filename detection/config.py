"""
Detection configuration.

All scene-specific calibration values (admissible regions, epsilons,
iteration counts) live here instead of being compiled in.
"""

import json
from enum import Enum
from pathlib import Path
from typing import List, Literal, Optional, Tuple
from pydantic import BaseModel, Field, field_validator, model_validator


POINT_CLOUD_SIZE = 14976
CHANNELS = 4


class ConfigError(Exception):
    """Invalid or unreadable configuration."""
    pass


class Mode(str, Enum):
    """Primitive being fitted."""
    SPHERE = "sphere"
    CYLINDER = "cylinder"


class ChannelConfig(BaseModel):
    sync_name: str = Field(default="sync_mem", min_length=1)
    buffer_pairs: List[Tuple[str, str]] = Field(
        default_factory=lambda: [("shm_1", "shm_2")], min_length=1
    )
    point_count: int = Field(default=POINT_CLOUD_SIZE, gt=0)
    channels: int = Field(default=CHANNELS, ge=4)
    sync_size: int = Field(default=4, ge=4)

    @property
    def frame_byte_size(self) -> int:
        return self.point_count * self.channels * 4

    @field_validator("buffer_pairs")
    @classmethod
    def validate_buffer_pairs(cls, v):
        for first, second in v:
            if not first or not second:
                raise ValueError("Buffer names must not be empty")
            if first == second:
                raise ValueError(f"Buffer pair uses the same name twice: {first}")
        return v


class SphereRegion(BaseModel):
    """Annulus around the sensor (planar distance in the XZ plane)."""
    min_radius: float = Field(default=1.8, ge=0)
    max_radius: float = Field(default=3.2, gt=0)
    max_z: Optional[float] = 0.0

    @model_validator(mode="after")
    def check_radii(self):
        if self.min_radius >= self.max_radius:
            raise ValueError(
                f"min_radius ({self.min_radius}) must be below max_radius ({self.max_radius})"
            )
        return self


class SphereConfig(BaseModel):
    iterations: int = Field(default=4096, gt=0)
    epsilon: float = Field(default=0.02, gt=0)
    capacity: int = Field(default=4096, ge=4)
    min_inliers: int = Field(default=1, ge=1)
    # Hypotheses wider than this are discarded
    max_radius: float = Field(default=5.0, gt=0)
    region: SphereRegion = Field(default_factory=SphereRegion)


class CylinderConfig(BaseModel):
    plane_iterations: int = Field(default=2048, gt=0)
    cylinder_iterations: int = Field(default=4096 * 8, gt=0)
    plane_epsilon: float = Field(default=0.05, gt=0)
    cylinder_epsilon: float = Field(default=0.03, gt=0)
    capacity: int = Field(default=POINT_CLOUD_SIZE, ge=3)
    min_inliers: int = Field(default=1, ge=1)

    # Candidate predicate: points below this height
    max_height: float = -1.0

    # Region used to split the frame into plane / close points
    close_min_radius: float = Field(default=3.0, ge=0)
    close_max_radius: float = Field(default=7.0, gt=0)
    close_max_height: float = 1.0

    # Points the cylinder hypotheses are scored against
    score_target: Literal["close", "frame"] = "close"

    @model_validator(mode="after")
    def check_close_region(self):
        if self.close_min_radius >= self.close_max_radius:
            raise ValueError(
                f"close_min_radius ({self.close_min_radius}) must be below "
                f"close_max_radius ({self.close_max_radius})"
            )
        return self


class BackendConfig(BaseModel):
    group_size: int = Field(default=64, ge=2)
    max_lanes_per_batch: int = Field(default=1 << 20, gt=0)
    history_size: int = Field(default=256, ge=0)


class DetectionConfig(BaseModel):
    """Top-level configuration for the detection pipeline."""

    channel: ChannelConfig = Field(default_factory=ChannelConfig)
    sphere: SphereConfig = Field(default_factory=SphereConfig)
    cylinder: CylinderConfig = Field(default_factory=CylinderConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    initial_mode: Mode = Mode.SPHERE
    seed: Optional[int] = None


def load_config(config_path: Path) -> DetectionConfig:
    """
    Load and validate a JSON configuration file.

    Args:
        config_path: Path to the JSON file

    Returns:
        Parsed DetectionConfig
    """
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path, 'r') as f:
            data = json.load(f)
        return DetectionConfig(**data)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in config: {e}")
    except Exception as e:
        raise ConfigError(f"Failed to parse config: {e}")


def save_config(config: DetectionConfig, config_path: Path) -> Path:
    """Write a configuration as JSON."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, 'w') as f:
        f.write(config.model_dump_json(indent=2))
    return config_path
