from __future__ import annotations

from pathlib import Path

import pytest

from Registration.config import LevelConfig, RegistrationConfig, load_config
from Registration.errors import InvalidConfiguration, IoError
from Registration.pipeline import build_deformable_optimizer


EXAMPLE = Path(__file__).resolve().parents[1] / "config" / "registration.example.yaml"


def test_defaults_without_a_file() -> None:
    cfg = load_config(None)
    assert cfg.rigid.metric.number_of_bins == 32
    assert cfg.deformable.metric.number_of_bins == 50
    assert cfg.deformable.bound_selection == 0
    assert [level.mesh_size for level in cfg.deformable.levels] == [3, 4]
    assert cfg.validation.method == "displacement_field"


def test_example_config_matches_defaults() -> None:
    cfg = load_config(EXAMPLE)
    defaults = RegistrationConfig()
    assert cfg.rigid.learning_rate == defaults.rigid.learning_rate
    assert cfg.rigid.metric.seed == 42
    assert cfg.rigid.metric.sampling_strategy == "none"
    assert cfg.deformable.levels == defaults.deformable.levels
    assert cfg.deformable.initial_mesh_size == 4


def test_partial_config_keeps_other_defaults(tmp_path) -> None:
    path = tmp_path / "cfg.yaml"
    path.write_text(
        "rigid:\n"
        "  learning_rate: 2.0\n"
        "  levels:\n"
        "    - [4, 2.0]\n"
        "    - {shrink_factor: 1}\n"
        "deformable:\n"
        "  bound_selection: 2\n"
        "  lower_bound: -5\n"
        "  upper_bound: 5\n"
        "  initial_mesh_size: [2, 3, 4]\n",
        encoding="utf-8",
    )
    cfg = load_config(path)
    assert cfg.rigid.learning_rate == 2.0
    assert cfg.rigid.number_of_iterations == 200
    assert cfg.rigid.levels == [LevelConfig(4, 2.0), LevelConfig(1, 0.0)]
    assert cfg.deformable.initial_mesh_size == (2, 3, 4)
    assert (cfg.deformable.lower_bound, cfg.deformable.upper_bound) == (-5, 5)


def test_per_axis_bounds_reach_the_optimizer(tmp_path) -> None:
    path = tmp_path / "cfg.yaml"
    path.write_text(
        "deformable:\n  bound_selection: 2\n  lower_bound: [-1, -2, -3]\n  upper_bound: 4\n",
        encoding="utf-8",
    )
    cfg = load_config(path)
    assert cfg.deformable.lower_bound == [-1.0, -2.0, -3.0]
    assert cfg.deformable.upper_bound == 4.0
    bounds = build_deformable_optimizer(cfg.deformable).bounds(6)
    assert bounds == [(-1.0, 4.0), (-1.0, 4.0), (-2.0, 4.0), (-2.0, 4.0), (-3.0, 4.0), (-3.0, 4.0)]


def test_unknown_keys_are_reported_and_ignored(tmp_path, capsys) -> None:
    path = tmp_path / "cfg.yaml"
    path.write_text("rigid:\n  learning_rat: 2.0\n", encoding="utf-8")
    cfg = load_config(path)
    assert cfg.rigid.learning_rate == 4.0
    assert "learning_rat" in capsys.readouterr().out


def test_empty_file_gives_defaults(tmp_path) -> None:
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")
    assert load_config(path) == RegistrationConfig()


@pytest.mark.parametrize(
    "text",
    [
        "rigid:\n  levels: []\n",
        "rigid:\n  levels:\n    - [2, 1.0, 4]\n",
        "rigid:\n  initialization: moments\n",
        "deformable:\n  bound_selection: 4\n",
        "deformable:\n  bound_selection: 2\n  lower_bound: 1\n  upper_bound: -1\n",
        "deformable:\n  bound_selection: 2\n  lower_bound: [0, 0, 2]\n  upper_bound: [1, 1, 1]\n",
        "deformable:\n  lower_bound: []\n",
        "deformable:\n  metric:\n    number_of_bins: 2\n",
        "validation:\n  method: exact\n",
        "isotropic_spacing: 0\n",
        "rigid: 5\n",
    ],
)
def test_invalid_values_are_rejected(tmp_path, text) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text(text, encoding="utf-8")
    with pytest.raises(InvalidConfiguration):
        load_config(path)


def test_malformed_yaml(tmp_path) -> None:
    path = tmp_path / "broken.yaml"
    path.write_text("rigid: [1, 2\n", encoding="utf-8")
    with pytest.raises(InvalidConfiguration):
        load_config(path)


def test_missing_file(tmp_path) -> None:
    with pytest.raises(IoError):
        load_config(tmp_path / "missing.yaml")


def test_level_shorthand_validation() -> None:
    assert LevelConfig.from_dict([2, 1.5, [3, 4, 5]]).mesh_size == (3, 4, 5)
    with pytest.raises(InvalidConfiguration):
        LevelConfig.from_dict([0, 1.0])
    with pytest.raises(InvalidConfiguration):
        LevelConfig(mesh_size=(3, 3))
