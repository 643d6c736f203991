import pathlib

import pytest
from pydantic import ValidationError

from genorch.core.config import DEFAULT_CONFIG_PATH, AppConfig, load_config


@pytest.fixture(autouse=True)
def clear_config_cache():
    load_config.cache_clear()
    yield
    load_config.cache_clear()


def test_bundled_config_declares_both_policies():
    config = load_config(DEFAULT_CONFIG_PATH)

    policies = {family.id: family.allocation_policy for family in config.families}
    assert policies == {"image-gen": "shared", "agent-exec": "dedicated"}
    assert config.settings.low_balance_threshold == 10


def test_config_path_from_environment(tmp_path: pathlib.Path, monkeypatch):
    config_file = tmp_path / "families.yaml"
    config_file.write_text(
        "settings:\n"
        "  low_balance_threshold: 25\n"
        "families:\n"
        "  - id: video\n"
        "    name: Video\n"
        "    adapter: kie\n"
        "    base_url: https://kie.example/api/v1\n"
        "    low_balance_threshold: 50\n"
    )
    monkeypatch.setenv("GENORCH_CONFIG", str(config_file))

    config = load_config()

    assert config.family("video").is_shared
    assert config.threshold_for("video") == 50
    assert config.threshold_for("unknown") == 25


def test_empty_file_yields_defaults(tmp_path: pathlib.Path):
    config_file = tmp_path / "empty.yaml"
    config_file.write_text("")

    config = load_config(config_file)

    assert config.families == []
    assert config.settings.probe_failure_limit == 3


def test_invalid_policy_is_rejected():
    with pytest.raises(ValidationError):
        AppConfig(
            families=[
                {
                    "id": "video",
                    "name": "Video",
                    "adapter": "kie",
                    "allocation_policy": "round-robin",
                    "base_url": "https://kie.example",
                }
            ]
        )
