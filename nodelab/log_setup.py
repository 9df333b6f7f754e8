import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path


class HumanFormatter(logging.Formatter):
    def format(self, record):
        timestamp = self.formatTime(record, self.datefmt)
        message = (
            f"[nodelab] {timestamp} {record.levelname.lower()} "
            f"{record.name} {record.getMessage()}"
        )
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def setup_logging(level: str = "INFO", logfile: str = None) -> logging.Logger:
    """nodelab 패키지 로거에 파일/콘솔 핸들러를 한 번만 붙입니다."""
    logger = logging.getLogger("nodelab")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    if logger.handlers:
        return logger

    formatter = HumanFormatter(datefmt="%Y-%m-%d %H:%M:%S")

    if logfile:
        log_path = Path(logfile)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            str(log_path),
            maxBytes=5 * 1024 * 1024,
            backupCount=5
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    logger.propagate = False
    return logger
