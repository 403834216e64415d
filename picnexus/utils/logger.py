"""
loguru 日志配置

所有模块直接使用 bot_logger，日志消息以 [组件] 作为前缀，例如 "[S3] 上传成功"。
initialize_logging 只在 CLI 入口调用一次；作为库使用时保留 loguru 默认的 stderr 输出。
"""

import atexit
import gzip
import os
import shutil
import sys
from concurrent.futures import ThreadPoolExecutor
from datetime import time
from pathlib import Path
from typing import Any, Dict, List, Union

from loguru import logger

DEFAULT_LOG_DIR = Path("logs")
CONSOLE_FORMAT = (
    "<green>{time:MM-DD HH:mm:ss}</green> | <level>{level: <7}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <7} | {name}:{function}:{line} - {message}"

bot_logger = logger


class GZipRotator:
    """loguru compression 回调：轮转出的日志在后台线程里压缩成 .gz"""

    def __init__(self, compresslevel: int = 9):
        self.compresslevel = compresslevel
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="log-gzip")
        atexit.register(self.shutdown)

    def __call__(self, source: str):
        self._executor.submit(self._compress, source, f"{source}.gz")

    def _compress(self, source: str, dest: str):
        try:
            with open(source, "rb") as f_in, gzip.open(dest, "wb", compresslevel=self.compresslevel) as f_out:
                shutil.copyfileobj(f_in, f_out)
            os.remove(source)
        except OSError as e:
            print(f"[Logger] 压缩日志失败 {source}: {e}", file=sys.stderr)

    def shutdown(self):
        self._executor.shutdown(wait=True)


def _file_sinks(directory: Path) -> List[Dict[str, Any]]:
    """picnexus.log 记录全部调试信息并按天轮转；error.log 只记录错误并按大小轮转"""
    return [
        {
            "sink": directory / "picnexus.log",
            "level": "DEBUG",
            "rotation": time(0, 0, 0),
            "retention": "7 days",
            "compression": GZipRotator(),
            "diagnose": False,
        },
        {
            "sink": directory / "error.log",
            "level": "ERROR",
            "rotation": "10 MB",
            "retention": "30 days",
            "compression": "zip",
            "diagnose": True,
        },
    ]


def initialize_logging(log_level: str = "INFO", log_dir: Union[str, Path, None] = None, to_file: bool = True):
    """
    配置日志输出。

    Args:
        log_level: 控制台日志级别
        log_dir: 日志目录，默认 ./logs
        to_file: 是否同时写入日志文件
    """
    logger.remove()
    logger.add(
        sys.stderr,
        level=log_level.upper(),
        format=CONSOLE_FORMAT,
        colorize=True,
        enqueue=True,
        backtrace=True,
        diagnose=False,
    )
    if not to_file:
        return

    directory = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    directory.mkdir(parents=True, exist_ok=True)
    for options in _file_sinks(directory):
        logger.add(format=FILE_FORMAT, encoding="utf-8", enqueue=True, backtrace=True, **options)

    logger.debug(f"[Logger] 日志已初始化，目录: {directory.resolve()}")


def close_logging():
    """移除所有输出并等待队列写完"""
    logger.remove()
