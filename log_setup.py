import logging
import os
from logging.handlers import RotatingFileHandler

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
ROOT_LOGGER = 'muxproxy'

_LEVELS = {
    'DEBUG': logging.DEBUG,
    'INFO': logging.INFO,
    'WARN': logging.WARNING,
    'WARNING': logging.WARNING,
    'ERROR': logging.ERROR,
}


def parse_level(name, default=logging.INFO) -> int:
    """把 DEBUG / INFO / WARN / ERROR 之类的名称转换为 logging 级别"""
    if isinstance(name, int):
        return name
    if not name:
        return default
    return _LEVELS.get(str(name).strip().upper(), default)


class CallbackHandler(logging.Handler):
    """把格式化后的日志转发给一个回调（例如宿主程序的日志窗口）"""

    def __init__(self, callback):
        super().__init__()
        self.callback = callback

    def emit(self, record):
        try:
            self.callback(self.format(record))
        except Exception:
            self.handleError(record)


def setup_logging(level='INFO', log_file=None, max_bytes=5 * 1024 * 1024, backup_count=3):
    """配置 muxproxy 日志：控制台输出，可选写入（滚动）日志文件"""
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(parse_level(level))
    formatter = logging.Formatter(LOG_FORMAT)

    for h in list(logger.handlers):
        if not isinstance(h, CallbackHandler):
            logger.removeHandler(h)
            h.close()

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        log_file = os.path.abspath(log_file)
        os.makedirs(os.path.dirname(log_file), exist_ok=True)
        fh = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8')
        fh.setFormatter(formatter)
        logger.addHandler(fh)

    logger.propagate = False
    return logger
