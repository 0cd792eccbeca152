import logging

# Third-party loggers that drown out analysis output at DEBUG
_NOISY_LOGGERS = ("urllib3", "pymysql")


def setup_logging(debug: bool = False) -> None:
    """Configure logging for the CLIs and the API service."""
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
