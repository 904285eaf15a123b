from pathlib import Path

import pytest
from pydantic import ValidationError

from relayci.config import EngineConfig, load_config


def test_defaults(tmp_path):
    config = load_config(environ={"RELAYCI_CONFIG": str(tmp_path / "absent.yaml")})
    assert config == EngineConfig()
    assert config.max_parallel_jobs is None
    assert config.slots is None
    assert config.isolate_jobs is True


def test_yaml_file_with_dashed_keys(tmp_path):
    path = tmp_path / "relayci.yaml"
    path.write_text("max-parallel-jobs: 2\nslots: 3\nslot_timeout: 1.5\nworkspace: /tmp/ws\n")
    config = load_config(path, environ={})
    assert config.max_parallel_jobs == 2
    assert config.slots == 3
    assert config.slot_timeout == 1.5
    assert config.workspace == Path("/tmp/ws")


def test_environment_overrides_file(tmp_path):
    path = tmp_path / "relayci.yaml"
    path.write_text("slots: 3\n")
    config = load_config(path, environ={"RELAYCI_SLOTS": "1", "RELAYCI_MAX_PARALLEL_JOBS": "4"})
    assert config.slots == 1
    assert config.max_parallel_jobs == 4


def test_explicit_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml", environ={})


def test_invalid_values(tmp_path):
    path = tmp_path / "relayci.yaml"
    path.write_text("slots: 0\n")
    with pytest.raises(ValidationError):
        load_config(path, environ={})

    path.write_text("- a\n- b\n")
    with pytest.raises(ValueError):
        load_config(path, environ={})
