import json
import logging
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import config
from config import load_player_config, load_settings, parse_player_config


def test_load_player_config_reads_outputs(tmp_path: Path) -> None:
    path = tmp_path / "dmxrec.json"
    path.write_text(
        json.dumps(
            {
                "short_name": "Stage",
                "universes": [0, 1, 2],
                "outputs": [
                    {"ip": "192.168.0.21", "universe": [0, 1]},
                    {"serial": "/dev/ttyUSB0", "universe": [2]},
                ],
            }
        ),
        encoding="utf-8",
    )

    player = load_player_config(path)

    assert player.universes == [0, 1, 2]
    assert player.short_name == "Stage"
    assert player.outputs[0].ip == "192.168.0.21"
    assert player.outputs[0].port == 6454
    assert player.outputs[1].serial_port == "/dev/ttyUSB0"
    assert player.describe()["outputs"] == [
        {"target": "192.168.0.21", "universe": [0, 1]},
        {"target": "/dev/ttyUSB0", "universe": [2]},
    ]


def test_shipped_example_config_is_valid() -> None:
    player = load_player_config(config.DEFAULT_CONFIG_FILE)
    assert player.universes
    assert player.outputs


@pytest.mark.parametrize(
    "raw",
    [
        {},
        {"universes": "1,2"},
        {"universes": [1, -3]},
        {"universes": [1], "outputs": [{"universe": [1]}]},
        {"universes": [1], "outputs": [{"ip": "10.0.0.1", "universe": [300]}]},
        {"universes": [1], "outputs": [{"ip": "10.0.0.1", "universe": [1], "port": 0}]},
    ],
)
def test_invalid_player_config_raises_value_error(raw) -> None:
    with pytest.raises(ValueError):
        parse_player_config(raw)


def test_settings_defaults() -> None:
    settings = load_settings({})

    assert settings.fps == 35.0
    assert settings.idle_timeout == 3.0
    assert settings.fade_seconds == 1.0
    assert settings.passthrough is True
    assert settings.artnet_port == 6454


def test_settings_clamp_and_fall_back(caplog) -> None:
    caplog.set_level(logging.WARNING, logger=config.LOGGER.name)

    settings = load_settings(
        {
            "DMXREC_FPS": "500",
            "DMXREC_IDLE_TIMEOUT": "soon",
            "DMXREC_PASSTHROUGH": "off",
            "DMXREC_RECORDINGS_DIR": "/tmp/shows",
        }
    )

    assert settings.fps == 100.0
    assert settings.idle_timeout == 3.0
    assert settings.passthrough is False
    assert settings.recordings_dir == Path("/tmp/shows")
    assert any("DMXREC_IDLE_TIMEOUT" in record.getMessage() for record in caplog.records)
