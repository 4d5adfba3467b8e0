"""日志模块

进程启动时先调用 setup_logging, 之后各模块 `from logger import logger` 直接写日志。
未调用时沿用 loguru 默认的 stderr 输出 (测试中即是如此)。

每条日志带一个 loop 字段, 标明它来自哪个周期循环 (reminder / delivery),
循环之外的日志记为 main。Ticker 在执行期间通过 loop_context 设置该字段,
循环内部调用到的存储层、通道层日志也会自动带上。
"""

from __future__ import annotations

import sys
from contextlib import AbstractContextManager
from pathlib import Path
from typing import Literal, Union

from loguru import logger

LogLevel = Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL", "FATAL"]

DEFAULT_LOOP = "main"

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level:<8}</level> | "
    "<magenta>{extra[loop]:<8}</magenta> | "
    "<cyan>{name}:{line}</cyan> - <level>{message}</level>"
)

FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {extra[loop]:<8} | {name}:{function}:{line} - {message}"


def _level(value: str) -> str:
    value = str(value).upper()
    return "CRITICAL" if value == "FATAL" else value


def setup_logging(
    log_level: LogLevel,
    log_file: Union[str, Path],
    console_level: LogLevel = "INFO",
) -> None:
    """控制台 + 滚动日志文件 + 单独的 ERROR 文件"""
    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    error_file = log_file.with_name(f"{log_file.stem}_error{log_file.suffix}")

    # 两个循环并发写文件, 文件 sink 走队列
    file_options = dict(format=FILE_FORMAT, rotation="10 MB", compression="zip", encoding="utf-8", enqueue=True)

    logger.configure(
        handlers=[
            {"sink": sys.stderr, "level": _level(console_level), "format": CONSOLE_FORMAT, "colorize": True},
            {"sink": log_file, "level": _level(log_level), "retention": "30 days", **file_options},
            {"sink": error_file, "level": "ERROR", "retention": "90 days", **file_options},
        ],
        extra={"loop": DEFAULT_LOOP},
    )


def loop_context(name: str) -> AbstractContextManager:
    """在 with 块内 (包括其中 await 的协程) 产生的日志都记为来自 name 循环"""
    return logger.contextualize(loop=name)


__all__ = ["setup_logging", "loop_context", "logger", "DEFAULT_LOOP"]
