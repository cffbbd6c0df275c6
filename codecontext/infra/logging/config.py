"""
日志配置管理器

根据配置中心的 logging 节设置全局日志系统，支持控制台和文件输出。
"""

import logging
import logging.handlers
from datetime import datetime
from pathlib import Path
from typing import Dict, Any


def setup_logging(config_manager=None) -> None:
    """
    设置全局日志配置

    Args:
        config_manager: 配置管理器实例，如果为 None 则使用默认配置
    """
    if config_manager is None:
        from codecontext.config import get_config_manager
        config_manager = get_config_manager()
    logging_config = config_manager.get_logging_config()

    level = str(logging_config.get("level", "INFO")).upper()
    log_level = getattr(logging, level, logging.INFO)
    log_format = logging_config.get("format", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    formatter = logging.Formatter(log_format)
    handlers_config = logging_config.get("handlers", {})

    # 控制台处理器
    console_config = handlers_config.get("console", {})
    if console_config.get("enabled", True):
        console_handler = logging.StreamHandler()
        console_level = str(console_config.get("level", level)).upper()
        console_handler.setLevel(getattr(logging, console_level, log_level))
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    # 文件处理器
    file_config = handlers_config.get("file", {})
    if file_config.get("enabled", False):
        root_logger.addHandler(_build_file_handler(file_config, formatter))

    _configure_third_party_loggers()


def _build_file_handler(file_config: Dict[str, Any], formatter: logging.Formatter) -> logging.Handler:
    """
    按配置创建文件处理器（按日期或按大小轮转）

    Args:
        file_config: logging.handlers.file 配置节
        formatter: 共享的格式化器

    Returns:
        logging.Handler: 已设置级别与格式的文件处理器
    """
    use_daily_rotation = file_config.get("use_daily_rotation", True)
    base_filename = file_config.get("filename", "logs/codecontext.log")
    encoding = file_config.get("encoding", "utf-8")

    if use_daily_rotation:
        # 按日期创建日志文件：logs/codecontext_2025-01-15.log
        date_str = datetime.now().strftime("%Y-%m-%d")
        if base_filename.endswith(".log"):
            filename = base_filename.replace(".log", f"_{date_str}.log")
        else:
            filename = f"{base_filename}_{date_str}.log"
    else:
        filename = base_filename

    Path(filename).parent.mkdir(parents=True, exist_ok=True)

    if use_daily_rotation:
        handler: logging.Handler = logging.handlers.TimedRotatingFileHandler(
            filename=filename,
            when=file_config.get("rotation_when", "midnight"),
            interval=file_config.get("rotation_interval", 1),
            backupCount=file_config.get("backup_count", 30),
            encoding=encoding,
        )
    else:
        handler = logging.handlers.RotatingFileHandler(
            filename=filename,
            maxBytes=file_config.get("max_bytes", 10 * 1024 * 1024),
            backupCount=file_config.get("backup_count", 5),
            encoding=encoding,
        )

    file_level = str(file_config.get("level", "DEBUG")).upper()
    handler.setLevel(getattr(logging, file_level, logging.DEBUG))
    handler.setFormatter(formatter)
    return handler


def _configure_third_party_loggers() -> None:
    """
    配置第三方库的日志级别，避免过多噪音
    """
    third_party_loggers = {
        "urllib3": logging.WARNING,
        "requests": logging.WARNING,
        "httpx": logging.WARNING,
        "chromadb": logging.WARNING,
        "meilisearch": logging.WARNING,
        "sentence_transformers": logging.WARNING,
        "transformers": logging.WARNING,
        "torch": logging.WARNING,
    }

    for logger_name, level in third_party_loggers.items():
        logging.getLogger(logger_name).setLevel(level)


def get_logger(name: str) -> logging.Logger:
    """
    获取指定名称的日志记录器

    Args:
        name: 日志记录器名称，通常使用 __name__

    Returns:
        logging.Logger: 日志记录器实例
    """
    return logging.getLogger(name)
