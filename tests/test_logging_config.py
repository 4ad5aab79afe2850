import json
import logging

import pytest

from horizon.config import LoggingSettings
from horizon.logging_config import setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def test_json_file_output(tmp_path, restore_root_logger):
    log_file = tmp_path / "logs" / "horizon.log"

    setup_logging(LoggingSettings(level="debug", format="console", file=str(log_file)))
    logging.getLogger("horizon.test").info("Phase 1 embeddings progress: 3/10")
    for handler in restore_root_logger.handlers:
        handler.flush()

    record = json.loads(log_file.read_text(encoding="utf-8").strip().splitlines()[-1])
    assert record["event"] == "Phase 1 embeddings progress: 3/10"
    assert record["level"] == "info"
    assert record["logger"] == "horizon.test"
    assert restore_root_logger.level == logging.DEBUG


def test_repeated_setup_replaces_handlers(restore_root_logger):
    setup_logging(LoggingSettings(format="json"))
    setup_logging(LoggingSettings(format="json"))

    assert len(restore_root_logger.handlers) == 1
    assert logging.getLogger("httpx").level == logging.WARNING
