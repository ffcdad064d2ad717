import logging
from pathlib import Path

import cli
from config import Settings


def test_http_server_binds_configured_address(tmp_path: Path) -> None:
    settings = Settings(db_path=tmp_path / "m.db", http_host="127.0.0.1", http_port=4321)
    server = cli._http_server(settings)
    assert server.config.host == "127.0.0.1"
    assert server.config.port == 4321


def test_configure_logging_writes_to_stderr(capsys) -> None:
    root = logging.getLogger()
    saved = root.handlers[:]
    saved_level = root.level
    root.handlers = []
    try:
        cli.configure_logging("warning")
        logging.getLogger("vector_memory.test").warning("store ready")
    finally:
        root.handlers = saved
        root.setLevel(saved_level)
    captured = capsys.readouterr()
    assert captured.out == ""
    assert "store ready" in captured.err
