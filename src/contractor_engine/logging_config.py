"""Logging configuration with JSON output to stdout and file."""

import json
import logging
import os
import sys
import yaml
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

# Global configuration cache
_logging_config: Optional[Dict] = None

# Error message for missing ENVIRONMENT variable
ENVIRONMENT_REQUIRED_ERROR = (
    "ENVIRONMENT variable is required but not set. "
    "Must be set to 'staging', 'production', or 'development'. "
    "This prevents accidental production deployments."
)

SERVICE_NAME = "grade-engine"


def _load_logging_config() -> Dict:
    """
    Load logging configuration from config/logging.yaml.

    Returns:
        Dict with logging configuration, or default config if file not found.
    """
    global _logging_config

    if _logging_config is not None:
        return _logging_config

    config_path = Path(__file__).parent.parent.parent / "config" / "logging.yaml"

    if config_path.exists():
        try:
            with open(config_path, "r") as f:
                _logging_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            print(
                f"Failed to load logging config from {config_path}: {e}",
                file=sys.stderr,
            )
            _logging_config = {}
    else:
        _logging_config = {}

    # Apply defaults if keys are missing
    if "console" not in _logging_config:
        _logging_config["console"] = {}
    if "structured" not in _logging_config:
        _logging_config["structured"] = {}

    _logging_config["console"].setdefault("max_contractor_name_length", 60)
    _logging_config["console"].setdefault("max_task_title_length", 60)
    _logging_config["console"].setdefault("max_token_display_length", 12)
    _logging_config["structured"].setdefault("include_display_fields", True)
    _logging_config["structured"].setdefault("preserve_full_values", True)

    return _logging_config


def format_display_name(
    value: str, max_length: Optional[int] = None, key: str = "max_contractor_name_length"
) -> Tuple[str, str]:
    """
    Format a name for logging with both full and display versions.

    Args:
        value: The full name to format.
        max_length: Maximum length for display version. If None, uses config value.
        key: Console config key holding the configured maximum.

    Returns:
        Tuple of (full_name, display_name)
    """
    if not value:
        return "", ""

    full_name = value.strip()

    if max_length is None:
        config = _load_logging_config()
        max_length = config["console"][key]

    if max_length <= 0 or len(full_name) <= max_length:
        return full_name, full_name

    if max_length <= 3:
        display_name = full_name[:max_length]
    else:
        display_name = full_name[: max_length - 3] + "..."

    return full_name, display_name


def mask_token(token: Optional[str]) -> str:
    """Shorten a device token so logs never carry the full credential."""
    if not token:
        return ""
    keep = _load_logging_config()["console"]["max_token_display_length"]
    if len(token) <= keep:
        return token
    return token[:keep] + "..."


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Every record becomes one JSON object with severity, timestamp,
    environment, service and either the StructuredLogger fields or a
    plain category/action/message triple.
    """

    def __init__(self, environment: str = "development"):
        """
        Initialize JSON formatter.

        Args:
            environment: Environment name (staging, production, development)
        """
        super().__init__()
        self.environment = environment

    def format(self, record: logging.LogRecord) -> str:
        """
        Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON string
        """
        severity_map = {
            logging.DEBUG: "DEBUG",
            logging.INFO: "INFO",
            logging.WARNING: "WARNING",
            logging.ERROR: "ERROR",
            logging.CRITICAL: "ERROR",
        }
        severity = severity_map.get(record.levelno, "INFO")

        log_entry: Dict[str, Any] = {
            "severity": severity,
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "environment": self.environment,
            "service": SERVICE_NAME,
        }

        if hasattr(record, "structured_fields"):
            log_entry.update(record.structured_fields)
        else:
            log_entry.update(
                {
                    "category": "system",
                    "action": "log",
                    "logger": record.name,
                    "message": record.getMessage(),
                }
            )

        if record.exc_info:
            exc_type, exc_value, exc_tb = record.exc_info
            log_entry["error"] = {
                "type": exc_type.__name__ if exc_type else "Exception",
                "message": str(exc_value),
                "stack": self.formatException(record.exc_info) if exc_tb else None,
            }

        return json.dumps(log_entry, default=str)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
) -> None:
    """
    Configure logging with JSON output to stdout and file.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Path to log file. If None, uses logs/grade-engine.log.

    Environment Variables:
        LOG_LEVEL: Override log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        LOG_FILE: Override log file path.
        ENVIRONMENT: Environment name (staging, production, development).
    """
    log_level = os.getenv("LOG_LEVEL", log_level).upper()

    if log_file is None and "LOG_FILE" not in os.environ:
        if os.getenv("ENVIRONMENT") == "production":
            log_file = "/srv/grade-engine/logs/grade-engine.log"
        else:
            log_file = str(Path(__file__).parent.parent.parent / "logs" / "grade-engine.log")
    else:
        log_file = os.getenv("LOG_FILE", log_file)

    # Default to "development" to avoid crashing at module load time
    environment = os.getenv("ENVIRONMENT")
    if not environment:
        environment = "development"
        print("WARNING: ENVIRONMENT not set, defaulting to 'development'", file=sys.stderr)

    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    json_formatter = JSONFormatter(environment=environment)

    handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(json_formatter)
    console_handler.setLevel(getattr(logging, log_level))
    handlers.append(console_handler)

    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(json_formatter)
    file_handler.setLevel(getattr(logging, log_level))
    handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, log_level),
        handlers=handlers,
        force=True,
    )

    logger = logging.getLogger(__name__)
    structured = StructuredLogger(logger)
    structured.worker_status(
        "logging_configured",
        details={
            "environment": environment,
            "level": log_level,
            "file": log_file,
        },
    )


class StructuredLogger:
    """
    Helper class for structured logging with JSON output.

    Each method builds a category/action/message/details entry that
    JSONFormatter merges into the emitted JSON line.
    """

    def __init__(self, logger: logging.Logger):
        """
        Initialize structured logger.

        Args:
            logger: Base logger instance

        Raises:
            ValueError: If ENVIRONMENT variable is not set
        """
        self.logger = logger
        self.environment = os.getenv("ENVIRONMENT")
        if not self.environment:
            raise ValueError(ENVIRONMENT_REQUIRED_ERROR)

    def _log(self, level: str, structured_fields: Dict[str, Any]) -> None:
        """
        Log with structured fields.

        Args:
            level: Log level (debug, info, warning, error)
            structured_fields: Structured log entry fields
        """
        log_method = getattr(self.logger, level.lower())
        message = structured_fields.get("message", "")
        log_method(message, extra={"structured_fields": structured_fields})

    def grade_transition(
        self,
        contractor_id: str,
        contractor_name: str,
        from_tier: Optional[str],
        to_tier: str,
        details: Optional[Dict] = None,
    ) -> None:
        """
        Log a committed tier change.

        Args:
            contractor_id: Contractor record id
            contractor_name: Display name, truncated for the message
            from_tier: Previous tier (None for a contractor never graded)
            to_tier: Newly persisted tier
            details: Optional additional details (score, reason)
        """
        full_name, display_name = format_display_name(contractor_name)
        structured_fields = {
            "category": "grading",
            "action": "transition",
            "message": f"Tier {from_tier} -> {to_tier}: {display_name or contractor_id}",
            "contractorId": contractor_id,
            "details": {
                "contractor_name": full_name,
                "contractor_name_display": display_name,
                "from_tier": from_tier,
                "to_tier": to_tier,
                **(details or {}),
            },
        }
        self._log("info", structured_fields)

    def fee_escalation(
        self, task_id: str, action: str, details: Optional[Dict] = None
    ) -> None:
        """
        Log surcharge activity for one task.

        Args:
            task_id: Task record id
            action: increased, capped, conflict, skipped, integrity_warning, failed
            details: Optional additional details (old/new surcharge, cadence)
        """
        structured_fields = {
            "category": "escalation",
            "action": action.lower(),
            "message": f"Surcharge {action.lower()} for task {task_id}",
            "taskId": task_id,
            "details": details or {},
        }

        level = "info"
        if action.lower() in ["failed", "error"]:
            level = "error"
        elif action.lower() == "integrity_warning":
            level = "warning"

        self._log(level, structured_fields)

    def notification_delivery(
        self,
        recipient_id: str,
        category: str,
        outcome: str,
        details: Optional[Dict] = None,
    ) -> None:
        """
        Log one delivery attempt outcome.

        Args:
            recipient_id: User or contractor id
            category: Notification category (tier_upgrade, fee_escalation, ...)
            outcome: success, failure, retry_exhausted, invalid_token
            details: Optional additional details (attempt, masked token, error)
        """
        structured_fields = {
            "category": "notification",
            "action": outcome.lower(),
            "message": f"Notification {category} to {recipient_id}: {outcome}",
            "recipientId": recipient_id,
            "details": {"notification_category": category, **(details or {})},
        }
        level = "info" if outcome.lower() == "success" else "warning"
        self._log(level, structured_fields)

    def batch_activity(self, operation: str, status: str, details: Optional[Dict] = None) -> None:
        """
        Log batch recomputation or escalation tick progress.

        Args:
            operation: Batch operation (recompute, escalation_tick)
            status: started, completed
            details: Optional additional details (counts)
        """
        structured_fields = {
            "category": "batch",
            "action": status.lower(),
            "message": f"Batch {operation} {status}",
            "details": {"operation": operation, **(details or {})},
        }
        self._log("info", structured_fields)

    def worker_status(self, status: str, details: Optional[Dict] = None) -> None:
        """
        Log worker status changes.

        Args:
            status: Worker status (started, stopping, idle, tick_completed)
            details: Optional additional details
        """
        structured_fields = {
            "category": "worker",
            "action": status.lower(),
            "message": f"Worker {status}",
            "details": details or {},
        }
        self._log("info", structured_fields)


def get_structured_logger(name: str) -> StructuredLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__).

    Returns:
        StructuredLogger instance.
    """
    base_logger = logging.getLogger(name)
    return StructuredLogger(base_logger)
