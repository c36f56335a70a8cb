from __future__ import annotations

from pathlib import Path

import pytest

from taleweaver import EngineSettings, NarrativeEngine, Story


def test_from_env_uses_defaults_when_unset() -> None:
    settings = EngineSettings.from_env({})

    assert settings == EngineSettings()
    assert settings.max_undo_entries == 50
    assert settings.condition_cache_size == 100
    assert settings.autosave_enabled is False


def test_from_env_reads_prefixed_variables(tmp_path: Path) -> None:
    settings = EngineSettings.from_env(
        {
            "TALEWEAVER_STORY_PATH": f"  {tmp_path / 'story.json'}  ",
            "TALEWEAVER_SAVE_DIR": "~/saves",
            "TALEWEAVER_MAX_UNDO_ENTRIES": "5",
            "TALEWEAVER_MAX_REDO_ENTRIES": "7",
            "TALEWEAVER_MAX_CHECKPOINTS": "3",
            "TALEWEAVER_AUTOSAVE_ENABLED": "yes",
            "TALEWEAVER_AUTOSAVE_THROTTLE_SECONDS": "0.5",
            "TALEWEAVER_AUTOSAVE_MAX_ENTRIES": "4",
            "TALEWEAVER_CONDITION_CACHE_SIZE": "20",
            "TALEWEAVER_LOG_LEVEL": "debug",
        }
    )

    assert settings.story_path == tmp_path / "story.json"
    assert settings.save_dir == Path("~/saves").expanduser()
    assert settings.max_undo_entries == 5
    assert settings.max_redo_entries == 7
    assert settings.max_checkpoints == 3
    assert settings.autosave_enabled is True
    assert settings.autosave_throttle_seconds == 0.5
    assert settings.autosave_max_entries == 4
    assert settings.condition_cache_size == 20
    assert settings.log_level == "DEBUG"


def test_blank_values_fall_back_to_defaults() -> None:
    settings = EngineSettings.from_env(
        {"TALEWEAVER_SAVE_DIR": "   ", "TALEWEAVER_MAX_UNDO_ENTRIES": " ", "TALEWEAVER_LOG_LEVEL": ""}
    )

    assert settings.save_dir is None
    assert settings.max_undo_entries == 50
    assert settings.log_level == "INFO"


@pytest.mark.parametrize(
    "name, value, message",
    [
        ("TALEWEAVER_MAX_UNDO_ENTRIES", "many", "must be a positive integer"),
        ("TALEWEAVER_MAX_CHECKPOINTS", "0", "must be greater than zero"),
        ("TALEWEAVER_AUTOSAVE_THROTTLE_SECONDS", "-1", "must not be negative"),
        ("TALEWEAVER_AUTOSAVE_ENABLED", "maybe", "must be a boolean"),
    ],
)
def test_from_env_rejects_invalid_values(name: str, value: str, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        EngineSettings.from_env({name: value})


def test_engine_applies_settings(quest_story: Story) -> None:
    settings = EngineSettings(
        max_undo_entries=2, max_checkpoints=2, condition_cache_size=7, autosave_enabled=True
    )

    engine = NarrativeEngine(quest_story, settings=settings)

    assert engine.undo_redo_config.max_undo_entries == 2
    assert engine.persistence.max_checkpoints == 2
    assert engine.condition_evaluator.cache_info()["maxSize"] == 7
    assert engine.autosave_config.enabled
