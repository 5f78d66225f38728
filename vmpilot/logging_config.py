"""Logging setup shared by the vmpilot components.

Loggers are named ``<SERVICE>.<module>`` so the orchestrator, the process
supervisor, network isolation and the recommendation advisor can be told
apart in one stream. A rotating file handler is added when a log file or log
directory is configured.
"""
import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Optional

LOG_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)-24s | %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


def _resolve_log_path(log_file: Optional[Path], log_dir: Optional[Path]) -> Optional[Path]:
    """Explicit file, then VMPILOT_LOG_FILE, then vmpilot.log in the log directory."""
    if log_file:
        return Path(log_file).expanduser()
    if os.environ.get("VMPILOT_LOG_FILE"):
        return Path(os.environ["VMPILOT_LOG_FILE"]).expanduser()
    if log_dir is None and os.environ.get("VMPILOT_LOG_DIR"):
        log_dir = Path(os.environ["VMPILOT_LOG_DIR"])
    if log_dir is not None:
        return Path(log_dir).expanduser() / "vmpilot.log"
    return None


class UnifiedLogger:
    """Root logging configuration and the unified message formats."""

    SERVICE_ORCHESTRATOR = "ORCHESTRATOR"
    SERVICE_SUPERVISOR = "SUPERVISOR"
    SERVICE_NETWORK = "NETWORK"
    SERVICE_ADVISOR = "ADVISOR"
    SERVICES = (SERVICE_ORCHESTRATOR, SERVICE_SUPERVISOR, SERVICE_NETWORK, SERVICE_ADVISOR)

    _configured = False

    @classmethod
    def configure(
        cls,
        log_level: Optional[str] = None,
        log_file: Optional[Path] = None,
        log_dir: Optional[Path] = None,
        max_bytes: int = 10 * 1024 * 1024,
        backup_count: int = 5
    ) -> None:
        """Install the console handler and, when a path is known, a rotating file handler.

        Args:
            log_level: Level name. Defaults to VMPILOT_LOG_LEVEL, then INFO.
                      Unknown names fall back to INFO.
            log_file: Log file path. Defaults to VMPILOT_LOG_FILE.
            log_dir: Directory holding vmpilot.log. Defaults to VMPILOT_LOG_DIR.
            max_bytes: Rotation size, overridden by VMPILOT_LOG_MAX_BYTES.
            backup_count: Rotated files kept, overridden by VMPILOT_LOG_BACKUP_COUNT.
        """
        if cls._configured:
            return

        level_name = (log_level or os.environ.get("VMPILOT_LOG_LEVEL", "INFO")).upper()
        level = getattr(logging, level_name, None)
        if not isinstance(level, int):
            level = logging.INFO

        formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()

        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

        log_path = _resolve_log_path(log_file, log_dir)
        if log_path:
            max_bytes = _env_int("VMPILOT_LOG_MAX_BYTES", max_bytes)
            backup_count = _env_int("VMPILOT_LOG_BACKUP_COUNT", backup_count)
            try:
                log_path.parent.mkdir(parents=True, exist_ok=True)
                file_handler = logging.handlers.RotatingFileHandler(
                    log_path, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
                )
            except OSError as e:
                # console logging still works; a bad log path must not stop the CLI
                logging.warning(f"Cannot log to {log_path}: {e}")
            else:
                file_handler.setFormatter(formatter)
                root_logger.addHandler(file_handler)
                logging.info(f"Logging to file: {log_path} (rotation: {max_bytes} bytes, backups: {backup_count})")

        cls._configured = True
        logging.debug(f"Logging configured (level={logging.getLevelName(level)})")

    @classmethod
    def get_logger(cls, module_name: str, service: str) -> logging.Logger:
        """Return the ``<SERVICE>.<module>`` logger, configuring logging on first use."""
        if service not in cls.SERVICES:
            raise ValueError(f"Unknown logging service '{service}'")
        if not cls._configured:
            cls.configure()
        return logging.getLogger(f"{service}.{module_name.rsplit('.', 1)[-1]}")

    @classmethod
    def log_request(cls, logger: logging.Logger, method: str, path: str,
                    status_code: int, duration_ms: float = None):
        duration_str = f" ({duration_ms:.2f}ms)" if duration_ms else ""
        logger.info(f"HTTP {method} {path} -> {status_code}{duration_str}")

    @classmethod
    def log_error(cls, logger: logging.Logger, operation: str, error: Exception,
                  context: Optional[dict] = None):
        context_str = f" | Context: {context}" if context else ""
        logger.error(f"{operation} failed: {error}{context_str}")

    @classmethod
    def log_coherence_issue(cls, logger: logging.Logger, issue_type: str,
                            resource_id: str, details: str):
        """Warn about a mismatch between the registry and the live process table."""
        logger.warning(f"Coherence issue [{issue_type}] {resource_id}: {details}")
