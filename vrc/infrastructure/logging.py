import logging
from pathlib import Path

LOG_FORMAT = '%(asctime)s - %(levelname)s - {role} - %(message)s'


def setup_logging(log_path: Path, debug: bool = False, role: str = "scheduler") -> logging.Logger:
    """
    Setup logging configuration for VRC.

    The scheduler and each worker process append to the same file; `role`
    tags every line with the process that wrote it.

    Args:
        log_path: Path to the log file, parent folders are created
        debug: If True, enable DEBUG level logging with per-step trace lines
        role: "scheduler" or "worker"
    """
    log_file = Path(log_path)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT.format(role=role),
        handlers=[logging.FileHandler(log_file, mode="a", encoding="utf-8")],
        force=True  # Override any existing configuration
    )

    logger = logging.getLogger("vrc")
    logger.info(f"Logging initialized: {log_file} role={role} (debug={'ON' if debug else 'OFF'})")

    return logger
