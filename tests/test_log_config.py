from __future__ import annotations

import io
from pathlib import Path

from loguru import logger

from taleweaver import NarrativeEngine, Story, configure_logging


def test_configure_logging_formats_records() -> None:
    stream = io.StringIO()
    handler_ids = configure_logging("info", stream)
    try:
        logger.debug("hidden detail")
        logger.info("visible message")
    finally:
        for handler_id in handler_ids:
            logger.remove(handler_id)

    output = stream.getvalue()
    assert "visible message" in output
    assert "hidden detail" not in output
    assert "| INFO | " in output
    assert "test_configure_logging_formats_records" in output


def test_configure_logging_adds_file_sink(tmp_path: Path, quest_story: Story) -> None:
    log_file = tmp_path / "engine.log"
    handler_ids = configure_logging("DEBUG", io.StringIO(), log_file=log_file)
    try:
        NarrativeEngine(quest_story).reset_narrative()
    finally:
        for handler_id in handler_ids:
            logger.remove(handler_id)

    assert len(handler_ids) == 2
    assert "Narrative reset to gate" in log_file.read_text(encoding="utf-8")
