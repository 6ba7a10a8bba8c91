import logging
from pathlib import Path

LOGGER_NAMESPACE = "agent_eval"


def setup_eval_logging(
    log_file: str = "agent_eval.log", level: int = logging.DEBUG
) -> None:
    """Set up unified logging for evaluations, google-adk and LiteLLM to a file.

    Args:
        log_file: Path to the log file.
        level: Logging level (default: DEBUG to capture model calls and turns).

    """
    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    log_path = Path(log_file)
    if log_path.parent and not log_path.parent.exists():
        log_path.parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(formatter)
    file_handler.setLevel(level)

    loggers = [
        LOGGER_NAMESPACE,
        "google_adk",
        "LiteLLM",
    ]

    for logger_name in loggers:
        logger = logging.getLogger(logger_name)
        logger.setLevel(level)
        # One file handler per logger, even if setup runs twice
        if not any(isinstance(h, logging.FileHandler) for h in logger.handlers):
            logger.addHandler(file_handler)


def get_logger(name: str) -> logging.Logger:
    """Return a logger for the agent_eval namespace."""
    if name.startswith(f"{LOGGER_NAMESPACE}.") or name == LOGGER_NAMESPACE:
        return logging.getLogger(name)
    return logging.getLogger(f"{LOGGER_NAMESPACE}.{name}")
