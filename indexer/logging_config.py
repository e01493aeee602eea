"""
Logging Infrastructure

Structured JSON logging with optional CloudWatch shipping, log rotation
and a dedicated reconciliation audit file.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
import structlog
from structlog.types import EventDict, Processor
import boto3
from botocore.exceptions import ClientError


# ============================================================================
# Custom Processors
# ============================================================================

def add_module_name(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add module name to log record"""
    event_dict["module"] = logger.name
    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add ISO 8601 timestamp to log record"""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    return event_dict


def add_log_level(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add log level to log record"""
    event_dict["level"] = method_name.upper()
    return event_dict


def add_context(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Ensure context field exists"""
    if "context" not in event_dict:
        event_dict["context"] = {}
    return event_dict


# ============================================================================
# CloudWatch Handler
# ============================================================================

class CloudWatchHandler(logging.Handler):
    """
    Ships log records to AWS CloudWatch Logs in batches.

    Disables itself if the client cannot be created, so a missing AWS
    setup never takes the indexer down.
    """

    def __init__(
        self,
        log_group: str,
        log_stream: str,
        region: str = "us-east-1",
        batch_size: int = 100
    ):
        super().__init__()
        self.log_group = log_group
        self.log_stream = log_stream
        self.batch_size = batch_size
        self.sequence_token: Optional[str] = None
        self.batch: List[Dict[str, Any]] = []

        try:
            self.client = boto3.client('logs', region_name=region)
            self._create_if_missing(self.client.create_log_group, logGroupName=log_group)
            self._create_if_missing(
                self.client.create_log_stream,
                logGroupName=log_group,
                logStreamName=log_stream
            )
            self.enabled = True
        except Exception as e:
            print(f"CloudWatch initialization failed: {e}", file=sys.stderr)
            self.enabled = False

    @staticmethod
    def _create_if_missing(create, **kwargs):
        try:
            create(**kwargs)
        except ClientError as e:
            if e.response['Error']['Code'] != 'ResourceAlreadyExistsException':
                raise

    def emit(self, record: logging.LogRecord):
        if not self.enabled:
            return

        try:
            self.batch.append({
                'timestamp': int(record.created * 1000),
                'message': self.format(record)
            })
            if len(self.batch) >= self.batch_size:
                self.flush()
        except Exception as e:
            print(f"CloudWatch emit error: {e}", file=sys.stderr)

    def flush(self):
        """Send batched logs to CloudWatch"""
        if not self.enabled or not self.batch:
            return

        batch, self.batch = sorted(self.batch, key=lambda x: x['timestamp']), []
        kwargs = {
            'logGroupName': self.log_group,
            'logStreamName': self.log_stream,
            'logEvents': batch
        }
        if self.sequence_token:
            kwargs['sequenceToken'] = self.sequence_token

        try:
            response = self.client.put_log_events(**kwargs)
            self.sequence_token = response.get('nextSequenceToken')
        except Exception as e:
            print(f"CloudWatch flush error: {e}", file=sys.stderr)

    def close(self):
        self.flush()
        super().close()


# ============================================================================
# Logging Configuration
# ============================================================================

class LoggingConfig:
    """
    Centralized logging configuration for the indexer.

    - structlog JSON rendering on top of stdlib handlers
    - console, rotating file and reconciliation audit outputs
    - optional CloudWatch shipping
    """

    def __init__(
        self,
        log_dir: Path = Path("logs"),
        log_level: str = "INFO",
        enable_cloudwatch: bool = False,
        cloudwatch_region: str = "us-east-1",
        cloudwatch_log_group: str = "MTokenIndexer",
        cloudwatch_log_stream: Optional[str] = None
    ):
        self.log_dir = Path(log_dir)
        self.log_level = log_level.upper()
        self.enable_cloudwatch = enable_cloudwatch
        self.cloudwatch_region = cloudwatch_region
        self.cloudwatch_log_group = cloudwatch_log_group
        self.cloudwatch_log_stream = cloudwatch_log_stream or (
            f"indexer-{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}"
        )

        self.log_dir.mkdir(parents=True, exist_ok=True)

        self._configure_structlog()
        self._configure_stdlib_logging()

    def _configure_structlog(self):
        processors: List[Processor] = [
            structlog.contextvars.merge_contextvars,
            add_module_name,
            add_timestamp,
            add_log_level,
            add_context,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ]

        structlog.configure(
            processors=processors,
            wrapper_class=structlog.make_filtering_bound_logger(
                logging.getLevelName(self.log_level)
            ),
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

    def _configure_stdlib_logging(self):
        root_logger = logging.getLogger()
        root_logger.setLevel(self.log_level)
        root_logger.handlers.clear()

        formatter = logging.Formatter('%(message)s')

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(self.log_level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=self.log_dir / "indexer.log",
            maxBytes=100 * 1024 * 1024,  # 100 MB
            backupCount=10,
            encoding='utf-8'
        )
        file_handler.setLevel(self.log_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

        # Audit trail of write failures and degraded reads
        audit_handler = logging.handlers.RotatingFileHandler(
            filename=self.log_dir / "reconciliation.log",
            maxBytes=100 * 1024 * 1024,
            backupCount=50,
            encoding='utf-8'
        )
        audit_handler.setLevel(logging.INFO)
        audit_handler.setFormatter(formatter)
        audit_handler.addFilter(lambda record: 'reconciliation' in record.name.lower())
        root_logger.addHandler(audit_handler)

        if self.enable_cloudwatch:
            cloudwatch_handler = CloudWatchHandler(
                log_group=self.cloudwatch_log_group,
                log_stream=self.cloudwatch_log_stream,
                region=self.cloudwatch_region,
                batch_size=100
            )
            cloudwatch_handler.setLevel(logging.INFO)
            cloudwatch_handler.setFormatter(formatter)
            root_logger.addHandler(cloudwatch_handler)

    def get_logger(self, name: str) -> structlog.stdlib.BoundLogger:
        return structlog.get_logger(name)


# ============================================================================
# Global Logger Instance
# ============================================================================

_logging_config: Optional[LoggingConfig] = None


def init_logging(
    log_dir: Path = Path("logs"),
    log_level: str = "INFO",
    enable_cloudwatch: bool = False,
    cloudwatch_region: str = "us-east-1",
    cloudwatch_log_group: str = "MTokenIndexer",
    cloudwatch_log_stream: Optional[str] = None
) -> LoggingConfig:
    """
    Initialize global logging configuration.

    Args:
        log_dir: Directory for log files
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_cloudwatch: Enable CloudWatch integration
        cloudwatch_region: AWS region for CloudWatch
        cloudwatch_log_group: CloudWatch log group name
        cloudwatch_log_stream: CloudWatch log stream name (auto-generated if None)

    Returns:
        LoggingConfig instance
    """
    global _logging_config
    _logging_config = LoggingConfig(
        log_dir=log_dir,
        log_level=log_level,
        enable_cloudwatch=enable_cloudwatch,
        cloudwatch_region=cloudwatch_region,
        cloudwatch_log_group=cloudwatch_log_group,
        cloudwatch_log_stream=cloudwatch_log_stream
    )
    return _logging_config


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger, initializing logging with defaults if needed.
    """
    global _logging_config
    if _logging_config is None:
        init_logging()
    return _logging_config.get_logger(name)


# ============================================================================
# Convenience Functions
# ============================================================================

def log_read_failure(
    logger: structlog.stdlib.BoundLogger,
    label: str,
    error: str,
    default: Any,
    context: Optional[Dict[str, Any]] = None
):
    """
    Log a contract read that was replaced by its default value.

    Args:
        logger: Logger instance
        label: Read description (e.g. 'balanceOf')
        error: Error message of the failed call
        default: Value substituted for the failed read
        context: Addresses, block and event source
    """
    logger.warning(
        "contract_read_failed",
        context={
            "event_type": "contract_read_failed",
            "read": label,
            "error": error,
            "default": str(default),
            **(context or {})
        }
    )


def log_write_failure(
    logger: structlog.stdlib.BoundLogger,
    entity: str,
    identity: str,
    source: str,
    error: str
):
    """
    Log a store write that failed for a single entity.

    Args:
        logger: Logger instance
        entity: 'transaction', 'position' or 'market_snapshot'
        identity: Row identity
        source: Event source or tick that triggered the write
        error: Error message
    """
    logger.error(
        "store_write_failed",
        context={
            "event_type": "store_write_failed",
            "entity": entity,
            "identity": identity,
            "source": source,
            "error": error
        }
    )


def log_market_snapshot(
    logger: structlog.stdlib.BoundLogger,
    market_name: str,
    snapshot: Dict[str, Any],
    degraded_fields: List[str]
):
    """
    Log the market metrics captured at a block tick.

    Args:
        logger: Logger instance
        market_name: Configured market name
        snapshot: Snapshot values (amounts already scaled for display)
        degraded_fields: Fields that fell back to their default
    """
    logger.info(
        "market_snapshot",
        context={
            "event_type": "market_snapshot",
            "market": market_name,
            "snapshot": snapshot,
            "degraded_fields": degraded_fields
        }
    )


def log_event_outcome(
    logger: structlog.stdlib.BoundLogger,
    outcome: Dict[str, Any]
):
    """
    Log the terminal state of an event whose processing was not clean.

    Args:
        logger: Logger instance
        outcome: EventOutcome.to_dict()
    """
    logger.warning(
        "event_outcome",
        context={
            "event_type": "event_outcome",
            "outcome": outcome
        }
    )
