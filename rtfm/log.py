"""日志配置模块

为知识库及其宿主进程（TUI、HTTP 服务、脚本）配置统一的日志格式。
"""

import logging
import sys
from typing import Optional

from rtfm.config import settings


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """配置应用日志系统

    设置日志格式、级别和处理器。

    Args:
        level: 日志级别名称，默认使用配置中的 log_level

    Returns:
        logging.Logger: rtfm 包的日志记录器
    """
    level_name = (level or settings.log_level).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(
        level=log_level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    # 设置第三方库的日志级别（避免过多日志）
    logging.getLogger("watchdog").setLevel(logging.WARNING)
    logging.getLogger("jieba").setLevel(logging.WARNING)

    logger = logging.getLogger("rtfm")
    logger.setLevel(log_level)
    return logger
