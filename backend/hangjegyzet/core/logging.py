import os
import sys
import json
import logging
from typing import Dict, Any, Optional

from loguru import logger

from hangjegyzet.core.config import Settings, settings as default_settings


class InterceptHandler(logging.Handler):
    """
    Intercept standard logging messages toward loguru

    Uvicorn, SQLAlchemy and httpx log through the standard library; this
    handler forwards those records to loguru sinks.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find caller from where the logged message originated
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


class JSONFormatter:
    """
    JSON formatter for loguru records

    Bound extras (job_id, organization_id, mode) become top-level keys.
    """

    def __call__(self, record: Dict[str, Any]) -> str:
        log_record = {
            "timestamp": record["time"].strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record["level"].name,
            "message": record["message"],
            "module": record["name"],
            "function": record["function"],
            "line": record["line"],
            "process_id": record["process"].id,
        }

        if record["exception"]:
            log_record["exception"] = {
                "type": record["exception"].type.__name__,
                "value": str(record["exception"].value),
            }

        if record["extra"]:
            log_record.update({k: str(v) for k, v in record["extra"].items()})

        # loguru treats the returned string as a format template
        record["extra"]["serialized"] = json.dumps(log_record, ensure_ascii=False)
        return "{extra[serialized]}\n"


def setup_logging(config: Optional[Settings] = None) -> None:
    """
    Set up logging configuration

    Configures loguru sinks for the environment and routes the standard
    logging module through them.
    """
    config = config or default_settings

    logger.remove()

    log_level = "DEBUG" if config.DEBUG else "INFO"

    console_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
        "<level>{message}</level>"
    )
    logger.add(
        sys.stderr,
        format=console_format,
        level=log_level,
        diagnose=config.DEBUG,
        backtrace=True,
        enqueue=not config.TESTING,
    )

    if not config.TESTING:
        log_dir = os.path.abspath(config.LOG_DIR)
        os.makedirs(log_dir, exist_ok=True)

        logger.add(
            os.path.join(log_dir, f"{config.ENVIRONMENT}_error.log"),
            format=JSONFormatter() if config.ENVIRONMENT == "production" else console_format,
            level="ERROR",
            rotation="10 MB",
            retention="30 days",
            compression="zip",
            backtrace=True,
            enqueue=True,
        )

        if config.ENVIRONMENT in ["production", "staging"]:
            logger.add(
                os.path.join(log_dir, f"{config.ENVIRONMENT}_all.log"),
                format=JSONFormatter(),
                level=log_level,
                rotation="50 MB",
                retention="7 days",
                compression="zip",
                enqueue=True,
            )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    for logger_name in ["uvicorn", "uvicorn.error", "fastapi", "sqlalchemy.engine", "httpx"]:
        logging.getLogger(logger_name).handlers = [InterceptHandler()]

    logger.info(f"Logging configured for {config.ENVIRONMENT} environment at {log_level} level")
