import logging
import os

from .config import Settings


def setup_logger(name='msgtrack'):
    """Set up a logger with console and file output.

    Creates a logger that writes:
    - INFO and above to console
    - DEBUG and above to file (<log_dir>/msgtrack.log)

    Args:
        name (str, optional): Logger name. Defaults to 'msgtrack'

    Returns:
        logging.Logger: Configured logger instance

    Side Effects:
        - Creates the log directory if it doesn't exist
        - Creates/appends to msgtrack.log
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(logging.DEBUG)
    # Handlers live on this logger only
    logger.propagate = False

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(name)s - %(message)s')

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logging.INFO)
    logger.addHandler(console_handler)

    log_dir = Settings.from_env().log_dir
    try:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(os.path.join(log_dir, 'msgtrack.log'), encoding='utf-8')
    except OSError as e:
        logger.warning(f"File logging disabled, cannot open {log_dir}: {e}")
    else:
        file_handler.setFormatter(formatter)
        file_handler.setLevel(logging.DEBUG)
        logger.addHandler(file_handler)

    return logger
