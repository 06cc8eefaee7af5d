import logging
import logging.config
import queue
from logging.handlers import QueueHandler, QueueListener
from pathlib import Path
from typing import Any

import uvicorn

from portcullis.core.utils.config import Settings

LOG_DIRECTORY = Path("logs")
DATE_FORMAT = "%d-%b-%y %H:%M:%S"

# Named after the file each handler writes: (file name, max size in MB, number of backups)
LOG_FILES: dict[str, tuple[str, int, int]] = {
    "file_errors": ("errors.log", 10, 20),
    # Every incoming request and every authorization decision
    "file_access": ("access.log", 40, 50),
    # Issued and revoked grants, client authentication failures, replayed codes and tokens
    "file_security": ("security.log", 40, 50),
}

# Each logger writes to its own file and to the console
PORTCULLIS_LOGGERS: dict[str, str] = {
    "portcullis.access": "file_access",
    "portcullis.security": "file_security",
    # Errors which do not belong to one of the other loggers
    "portcullis.error": "file_errors",
    "uvicorn.error": "file_errors",
    "arq.worker": "file_errors",
}


class ColoredConsoleFormatter(uvicorn.logging.DefaultFormatter):
    """
    Print the level name in bold and the message in the level color.

    Colors can be found here: https://talyian.github.io/ansicolors/
    """

    LEVEL_COLORS = {
        logging.DEBUG: "\033[38;5;12m",
        logging.INFO: "\033[38;5;10m",
        logging.WARNING: "\033[38;5;11m",
        logging.ERROR: "\033[38;5;9m",
        logging.CRITICAL: "\033[38;5;1m",
    }
    BOLD = "\033[1m"
    END = "\033[0m"

    def __init__(self, *args, **kwargs):
        super().__init__(datefmt=DATE_FORMAT)
        self.formatters = {
            level: logging.Formatter(
                f"%(asctime)s - %(name)s - {self.BOLD}%(levelname)s{self.END} - {color}%(message)s{self.END}",
                DATE_FORMAT,
            )
            for level, color in self.LEVEL_COLORS.items()
        }

    def format(self, record: logging.LogRecord) -> str:
        formatter = self.formatters.get(record.levelno, self.formatters[logging.ERROR])
        return formatter.format(record)


class LogConfig:
    """
    Logging configuration of the authorization server and of its sweeper worker.

    Call `LogConfig().initialize_loggers(settings)` once, before the first record is emitted.
    """

    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    def get_config_dict(self, settings: Settings) -> dict[str, Any]:
        """
        Return the configuration as a [dict schema](https://docs.python.org/3/library/logging.config.html#logging-config-dictschema)
        """
        level = "DEBUG" if settings.LOG_DEBUG_MESSAGES else "INFO"

        handlers: dict[str, dict[str, Any]] = {
            # The console is always used, even in production
            "console": {
                "formatter": "console_formatter",
                "class": "logging.StreamHandler",
                "level": level,
            },
        }
        for handler_name, (filename, max_megabytes, backup_count) in LOG_FILES.items():
            handlers[handler_name] = {
                "formatter": "default",
                "class": "logging.handlers.RotatingFileHandler",
                "filename": str(LOG_DIRECTORY / filename),
                "maxBytes": max_megabytes * 1024 * 1024,
                "backupCount": backup_count,
                "level": "INFO",
            }

        loggers: dict[str, dict[str, Any]] = {
            "root": {"level": "DEBUG", "handlers": ["console"]},
            "portcullis": {"propagate": False},
            "scheduler": {"handlers": ["console"], "level": level},
            # Requests are logged by `portcullis.access`, with their request_id
            "uvicorn.access": {"handlers": []},
        }
        for logger_name, handler_name in PORTCULLIS_LOGGERS.items():
            loggers[logger_name] = {
                "handlers": [handler_name, "console"],
                "level": level,
            }
            if not logger_name.startswith("portcullis."):
                loggers[logger_name]["propagate"] = False

        return {
            "version": 1,
            # Database and uvicorn loggers are only kept when debugging
            "disable_existing_loggers": not settings.LOG_DEBUG_MESSAGES,
            "formatters": {
                "default": {"format": self.LOG_FORMAT, "datefmt": DATE_FORMAT},
                "console_formatter": {
                    "()": "portcullis.core.utils.log.ColoredConsoleFormatter",
                },
            },
            "handlers": handlers,
            "loggers": loggers,
        }

    def initialize_loggers(self, settings: Settings) -> None:
        """
        Apply the configuration, then move every handler behind a `QueueHandler`.

        Records are written by a `QueueListener` thread, so endpoints never wait on a file or on the console.
        See https://rob-blackbourn.medium.com/how-to-use-python-logging-queuehandler-with-dictconfig-1e8b1284e27a
        """
        # File handlers can not create their directory
        LOG_DIRECTORY.mkdir(parents=True, exist_ok=True)

        config_dict = self.get_config_dict(settings=settings)
        logging.config.dictConfig(config_dict)

        for name in config_dict["loggers"]:
            logger = logging.getLogger(name)
            if logger.handlers:
                self._queue_handlers(logger)

    @staticmethod
    def _queue_handlers(logger: logging.Logger) -> None:
        log_queue: queue.Queue[Any] = queue.Queue(-1)
        QueueListener(log_queue, *logger.handlers, respect_handler_level=True).start()
        logger.handlers = [QueueHandler(log_queue)]
