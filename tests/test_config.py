"""Tests for configuration, validation helpers and the CLI."""

import json
from pathlib import Path

import numpy as np
import pytest
from pydantic import ValidationError
from typer.testing import CliRunner

from detection.config import (
    CHANNELS,
    POINT_CLOUD_SIZE,
    ChannelConfig,
    ConfigError,
    CylinderConfig,
    DetectionConfig,
    Mode,
    SphereConfig,
    SphereRegion,
    load_config,
    save_config,
)
from detection.process import app, load_raw_frame
from utils.synthetic import sphere_scene
from utils.validation import validate_config_file, validate_raw_frame

runner = CliRunner()


def write_json(path: Path, data) -> Path:
    with open(path, "w") as f:
        json.dump(data, f)
    return path


class TestDefaults:
    """Tests for default calibration values."""

    def test_channel_defaults(self):
        config = ChannelConfig()
        assert config.sync_name == "sync_mem"
        assert config.buffer_pairs == [("shm_1", "shm_2")]
        assert config.frame_byte_size == POINT_CLOUD_SIZE * CHANNELS * 4

    def test_sphere_defaults(self):
        config = SphereConfig()
        assert config.iterations == 4096
        assert config.capacity == 4096
        assert (config.region.min_radius, config.region.max_radius) == (1.8, 3.2)
        assert config.region.max_z == 0.0
        assert config.max_radius == 5.0

    def test_cylinder_defaults(self):
        config = CylinderConfig()
        assert config.plane_iterations == 2048
        assert config.cylinder_iterations == 4096 * 8
        assert config.max_height == -1.0
        assert config.capacity == POINT_CLOUD_SIZE
        assert config.score_target == "close"


class TestConstraints:
    """Tests for field constraints and validators."""

    def test_region_radii_order(self):
        with pytest.raises(ValidationError):
            SphereRegion(min_radius=3.0, max_radius=2.0)

    def test_close_region_order(self):
        with pytest.raises(ValidationError):
            CylinderConfig(close_min_radius=7.0, close_max_radius=3.0)

    def test_too_few_channels(self):
        with pytest.raises(ValidationError):
            ChannelConfig(channels=3)

    def test_buffer_pair_needs_two_names(self):
        with pytest.raises(ValidationError):
            ChannelConfig(buffer_pairs=[("shm_1", "shm_1")])

    def test_capacity_holds_a_minimal_sample(self):
        with pytest.raises(ValidationError):
            SphereConfig(capacity=3)

    def test_unknown_score_target(self):
        with pytest.raises(ValidationError):
            CylinderConfig(score_target="pool")


class TestLoadSave:
    """Tests for reading and writing config files."""

    def test_round_trip(self, tmp_path):
        config = DetectionConfig(seed=3, initial_mode=Mode.CYLINDER)
        config.sphere.region.max_z = None

        loaded = load_config(save_config(config, tmp_path / "nested" / "config.json"))

        assert loaded == config

    def test_partial_file_uses_defaults(self, tmp_path):
        path = write_json(tmp_path / "config.json", {"sphere": {"epsilon": 0.05}})
        config = load_config(path)

        assert config.sphere.epsilon == 0.05
        assert config.sphere.iterations == 4096

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(tmp_path / "missing.json")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_invalid_values(self, tmp_path):
        path = write_json(tmp_path / "config.json", {"sphere": {"iterations": 0}})
        with pytest.raises(ConfigError):
            load_config(path)


class TestValidation:
    """Tests for the non-raising validators."""

    def test_valid_config_file(self, tmp_path):
        path = write_json(tmp_path / "config.json", {"seed": 1})
        valid, config, errors = validate_config_file(path)

        assert valid
        assert config.seed == 1
        assert errors == []

    def test_invalid_config_lists_locations(self, tmp_path):
        path = write_json(tmp_path / "config.json", {"backend": {"group_size": 1}})
        valid, config, errors = validate_config_file(path)

        assert not valid
        assert config is None
        assert any(error.startswith("backend.group_size") for error in errors)

    def test_missing_config_file(self, tmp_path):
        valid, _, errors = validate_config_file(tmp_path / "none.json")
        assert not valid
        assert "does not exist" in errors[0]

    def test_raw_frame_ok(self):
        raw = np.random.default_rng(0).normal(size=400).astype(np.float32)
        valid, info, errors = validate_raw_frame(raw, 100)

        assert valid
        assert info["finite_points"] == 100
        assert errors == []

    def test_raw_frame_wrong_size(self):
        valid, _, errors = validate_raw_frame(np.zeros(10), 100)
        assert not valid
        assert "expected 400" in errors[0]

    def test_raw_frame_problems(self):
        raw = np.zeros(400, dtype=np.float32)
        valid, _, errors = validate_raw_frame(raw, 100)
        assert not valid
        assert "all zeros" in errors[0]

        raw[0] = np.nan
        raw[5] = 1.0
        valid, info, errors = validate_raw_frame(raw, 100)
        assert not valid
        assert info["finite_points"] == 99


class TestCli:
    """Tests for the command line interface."""

    def test_modes(self):
        result = runner.invoke(app, ["modes"])
        assert result.exit_code == 0
        assert "sphere" in result.output
        assert "cylinder" in result.output

    def test_show_config(self, tmp_path):
        path = write_json(tmp_path / "config.json", {"seed": 11})
        result = runner.invoke(app, ["show-config", "--config", str(path)])

        assert result.exit_code == 0
        assert '"seed": 11' in result.output

    def test_show_config_invalid(self, tmp_path):
        path = write_json(tmp_path / "config.json", {"sphere": {"epsilon": -1}})
        result = runner.invoke(app, ["show-config", "--config", str(path)])
        assert result.exit_code == 1

    def test_fit_file(self, tmp_path):
        """A saved synthetic frame is fitted and the marked buffer exported."""
        scene = sphere_scene(np.random.default_rng(0), 5000)
        frame_path = tmp_path / "frame.npy"
        np.save(frame_path, scene.to_raw())
        config_path = write_json(tmp_path / "config.json", {"sphere": {"iterations": 512}, "seed": 0})
        export = tmp_path / "out" / "marked.npy"

        result = runner.invoke(app, [
            "fit-file", str(frame_path),
            "--config", str(config_path),
            "--mode", "sphere",
            "--export", str(export),
        ])

        assert result.exit_code == 0, result.output
        marked = np.load(export)
        assert marked.shape == (5000, 4)
        assert (marked[:, 3] > 0).sum() > 1000

    def test_fit_file_unreadable(self, tmp_path):
        frame_path = tmp_path / "frame.bin"
        np.zeros(7, dtype=np.float32).tofile(frame_path)
        result = runner.invoke(app, ["fit-file", str(frame_path)])
        assert result.exit_code == 1

    def test_load_raw_frame_bin(self, tmp_path):
        frame_path = tmp_path / "frame.bin"
        np.arange(8, dtype=np.float32).tofile(frame_path)
        np.testing.assert_array_equal(load_raw_frame(frame_path, 4), np.arange(8))
