import logging
import sys

from localnet_harness.logging_utils import move_debug, setup_stdout_logging


def test_setup_stdout_logging_installs_one_handler():
    root = logging.getLogger("localnet_harness")
    before = list(root.handlers)
    try:
        first = setup_stdout_logging(level=logging.DEBUG)
        second = setup_stdout_logging(level=logging.INFO)

        assert first is second
        assert first.stream is sys.stdout
        assert root.handlers.count(first) == 1
        assert first.level == logging.INFO
        assert logging.getLogger("aiohttp.access").level == logging.WARNING
    finally:
        for handler in root.handlers[:]:
            if handler not in before:
                root.removeHandler(handler)
        root.setLevel(logging.NOTSET)


def test_move_debug_only_when_enabled(monkeypatch, caplog):
    caplog.set_level(logging.WARNING, logger="localnet_harness.move")

    monkeypatch.delenv("SUI_IT_DEBUG_MOVE", raising=False)
    move_debug("build packagePath=%s", "/tmp/pkg")
    assert caplog.records == []

    monkeypatch.setenv("SUI_IT_DEBUG_MOVE", "1")
    move_debug("build packagePath=%s", "/tmp/pkg")
    assert [r.getMessage() for r in caplog.records] == ["[move-debug] build packagePath=/tmp/pkg"]
