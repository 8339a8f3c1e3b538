from __future__ import annotations

import logging
import logging.handlers
import pathlib
import sys
from typing import Any, Callable, Dict, Optional, Union

import structlog
from pythonjsonlogger import jsonlogger

from hatchway.core.base import HatchwayManager
from hatchway.core.config_manager import LoggingConfig
from hatchway.utils.exceptions import ManagerInitializationError, ManagerShutdownError

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
JSON_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"


def lift_extra(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Merge a stdlib-style ``extra`` mapping into the structlog event dict."""
    extra = event_dict.pop("extra", None)
    if isinstance(extra, dict):
        for key, value in extra.items():
            event_dict.setdefault(key, value)
    return event_dict


class LoggingManager(HatchwayManager):
    """Sets up the root logger from the ``logging`` configuration section.

    Console output goes to stdout and, when enabled, records are also
    written to a size-rotated file. With the ``json`` format records are
    rendered by python-json-logger and :meth:`get_logger` hands out
    structlog loggers, so ``extra`` fields and bound context end up as
    JSON keys. With ``text`` it hands out plain stdlib loggers.

    Components that were given a stdlib logger keep working either way:
    both kinds propagate to the same root handlers.
    """

    def __init__(self, config_manager: Any) -> None:
        super().__init__(name="logging_manager")
        self._config_manager = config_manager
        self._settings: Optional[LoggingConfig] = None
        self._root_logger: Optional[logging.Logger] = None
        self._console_handler: Optional[logging.Handler] = None
        self._file_handler: Optional[logging.Handler] = None
        self._log_directory: Optional[pathlib.Path] = None
        self._enable_structlog = False
        self._change_handlers: Dict[str, Callable[[Any], None]] = {
            "logging.level": self._set_root_level,
            "logging.console.level": self._set_console_level,
            "logging.console.enabled": self._toggle_console,
        }

    def initialize(self) -> None:
        """Install the configured handlers on the root logger.

        Raises:
            ManagerInitializationError: If the section is invalid or the
                log file cannot be opened
        """
        try:
            settings = LoggingConfig.model_validate(self._config_manager.get("logging") or {})
            self._settings = settings
            self._enable_structlog = settings.format == "json"

            self._root_logger = logging.getLogger()
            self._root_logger.setLevel(settings.level)
            for handler in list(self._root_logger.handlers):
                self._root_logger.removeHandler(handler)

            formatter = self._build_formatter()

            if settings.console.enabled:
                self._console_handler = self._attach(
                    logging.StreamHandler(sys.stdout), settings.console.level, formatter
                )

            if settings.file.enabled:
                log_path = pathlib.Path(settings.file.path)
                self._log_directory = log_path.parent
                self._log_directory.mkdir(parents=True, exist_ok=True)
                self._file_handler = self._attach(
                    logging.handlers.RotatingFileHandler(
                        log_path,
                        maxBytes=settings.file.max_bytes,
                        backupCount=settings.file.backup_count,
                        encoding="utf-8",
                    ),
                    settings.level,
                    formatter,
                )

            if self._enable_structlog:
                self._configure_structlog()

            self._config_manager.register_listener("logging", self._on_config_changed)
            self._mark_ready()

            self._root_logger.debug(
                "Logging configured",
                extra={"format": settings.format, "file": settings.file.enabled},
            )
        except Exception as e:
            raise ManagerInitializationError(
                f"Failed to initialize LoggingManager: {str(e)}",
                manager_name=self.name,
            ) from e

    def _build_formatter(self) -> logging.Formatter:
        if not self._enable_structlog:
            return logging.Formatter(TEXT_FORMAT)
        return jsonlogger.JsonFormatter(
            fmt=JSON_FORMAT,
            datefmt="%Y-%m-%dT%H:%M:%S%z",
            rename_fields={"levelname": "level", "name": "logger"},
            json_ensure_ascii=False,
        )

    def _attach(self, handler: logging.Handler, level: str, formatter: logging.Formatter) -> logging.Handler:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        self._root_logger.addHandler(handler)
        return handler

    def _configure_structlog(self) -> None:
        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                structlog.stdlib.filter_by_level,
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso", utc=True),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                lift_extra,
                structlog.stdlib.render_to_log_kwargs,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

    def get_logger(self, name: str) -> Union[logging.Logger, Any]:
        """A structlog logger in ``json`` mode, a stdlib logger otherwise."""
        if self._initialized and self._enable_structlog:
            return structlog.get_logger(name)
        return logging.getLogger(name)

    def _on_config_changed(self, key: str, value: Any) -> None:
        handler = self._change_handlers.get(key)
        if handler is not None and self._root_logger is not None:
            handler(value)

    def _set_root_level(self, value: Any) -> None:
        level = str(value).upper()
        self._root_logger.setLevel(level)
        if self._file_handler:
            self._file_handler.setLevel(level)

    def _set_console_level(self, value: Any) -> None:
        if self._console_handler:
            self._console_handler.setLevel(str(value).upper())

    def _toggle_console(self, value: Any) -> None:
        if not self._console_handler:
            return
        attached = self._console_handler in self._root_logger.handlers
        if value and not attached:
            self._root_logger.addHandler(self._console_handler)
        elif not value and attached:
            self._root_logger.removeHandler(self._console_handler)

    def shutdown(self) -> None:
        """Flush and detach the handlers this manager installed.

        Raises:
            ManagerShutdownError: If a handler fails to close
        """
        if not self._initialized:
            return

        try:
            self._config_manager.unregister_listener("logging", self._on_config_changed)
            for handler in (self._console_handler, self._file_handler):
                if handler is None:
                    continue
                handler.flush()
                handler.close()
                if self._root_logger:
                    self._root_logger.removeHandler(handler)
            self._console_handler = None
            self._file_handler = None
            self._mark_stopped()
        except Exception as e:
            raise ManagerShutdownError(
                f"Failed to shut down LoggingManager: {str(e)}",
                manager_name=self.name,
            ) from e

    def status(self) -> Dict[str, Any]:
        status = super().status()
        if not self._initialized or self._root_logger is None:
            return status

        handlers = self._root_logger.handlers
        status.update({
            "log_directory": str(self._log_directory) if self._log_directory else None,
            "handlers": {
                "console": self._console_handler is not None and self._console_handler in handlers,
                "file": self._file_handler is not None and self._file_handler in handlers,
            },
            "structured_logging": self._enable_structlog,
        })
        return status
