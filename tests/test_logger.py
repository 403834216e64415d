# -*- coding: utf-8 -*-
"""
日志初始化测试
"""

import gzip

from picnexus.utils.logger import GZipRotator, bot_logger, close_logging, initialize_logging


def test_file_sinks(tmp_path):
    initialize_logging("INFO", log_dir=tmp_path)
    try:
        bot_logger.info("[Test] hello")
        bot_logger.error("[Test] broken")
    finally:
        close_logging()

    assert "[Test] hello" in (tmp_path / "picnexus.log").read_text(encoding="utf-8")
    error_log = (tmp_path / "error.log").read_text(encoding="utf-8")
    assert "[Test] broken" in error_log
    assert "[Test] hello" not in error_log


def test_gzip_rotator(tmp_path):
    source = tmp_path / "old.log"
    source.write_text("rotated", encoding="utf-8")

    rotator = GZipRotator()
    rotator(str(source))
    rotator.shutdown()

    assert not source.exists()
    with gzip.open(f"{source}.gz", "rt", encoding="utf-8") as f:
        assert f.read() == "rotated"
