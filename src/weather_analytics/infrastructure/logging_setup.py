import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO", log_file: str | None = None) -> logging.Logger:
    """Configure root logging to stream to stdout (and optionally a file).

    Existing root handlers are dropped so repeated calls in workers and tests
    do not duplicate output.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for h in list(root_logger.handlers):
        root_logger.removeHandler(h)

    formatter = logging.Formatter(LOG_FORMAT)
    stream_handler = logging.StreamHandler(stream=sys.stdout)
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # kafka-python is chatty at INFO about coordinator heartbeats
    logging.getLogger("kafka").setLevel(logging.WARNING)
    return root_logger
