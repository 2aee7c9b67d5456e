import json
import logging
import logging.config
import sys

# httpx는 INFO에서 요청 URL 전체(?key=<API 키>)를 남기므로 WARNING 이상만 출력
QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine")


class JsonFormatter(logging.Formatter):
    """One JSON object per line (CloudWatch)."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record, datefmt="%Y-%m-%d %H:%M:%S"),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def _logger(handlers, level, propagate=False):
    return {"handlers": handlers, "level": level, "propagate": propagate}


def setup_logging(log_level: str = "INFO", json_format: bool = False):
    """애플리케이션 로깅 설정

    json_format=True이면 stdout/stderr 모두 JSON 한 줄 형식 (Lambda 배포용)
    """
    log_level = log_level.upper()
    both = ["console", "error_console"]

    loggers = {
        "": _logger(["console"], log_level, propagate=True),
        "uvicorn.error": _logger(both, log_level),
        "uvicorn.access": _logger(["console"], log_level),
        "ledgerapi": _logger(both, log_level),
    }
    for name in QUIET_LOGGERS:
        loggers[name] = _logger(both, "WARNING")

    LOGGING_CONFIG = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "detailed": {
                "format": "%(asctime)s | %(levelname)-8s | %(name)s\n%(pathname)s:%(lineno)d\n%(message)s",
            },
            "simple": {
                "format": "%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s",
            },
            "json": {"()": JsonFormatter},
        },
        "handlers": {
            "console": {
                "formatter": "json" if json_format else "simple",
                "class": "logging.StreamHandler",
                "stream": sys.stdout,
            },
            "error_console": {
                "formatter": "json" if json_format else "detailed",
                "class": "logging.StreamHandler",
                "stream": sys.stderr,
                "level": "WARNING",
            },
        },
        "loggers": loggers,
    }
    logging.config.dictConfig(LOGGING_CONFIG)
    logging.getLogger("ledgerapi").info("Logging initialized!")
