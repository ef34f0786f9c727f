import logging

LOGGER_NAME = "StakeCanary"


class CustomFormatter(logging.Formatter):
    FORMATS = {
        logging.DEBUG: "\033[90m[DEBUG]\033[0m %(message)s",
        logging.INFO: "\033[94m[INFO]\033[0m %(message)s",
        logging.WARNING: "\033[93m[ALERT]\033[0m %(message)s",
        logging.ERROR: "\033[91m[ERROR]\033[0m %(message)s",
        logging.CRITICAL: "\033[1;91m[FATAL]\033[0m %(message)s",
    }

    def format(self, record):
        log_fmt = self.FORMATS.get(record.levelno, "%(message)s")
        formatter = logging.Formatter(f"%(asctime)s {log_fmt}", datefmt="%Y-%m-%d %H:%M:%S")
        return formatter.format(record)


def get_logger(name: str = "") -> logging.Logger:
    """Child logger under the StakeCanary root, e.g. StakeCanary.reconciler."""
    return logging.getLogger(f"{LOGGER_NAME}.{name}" if name else LOGGER_NAME)


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    # Avoid stacking handlers when called twice (tests, re-entry from __main__)
    if not any(isinstance(h, logging.StreamHandler) and isinstance(h.formatter, CustomFormatter)
               for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(CustomFormatter())
        logger.addHandler(handler)
    return logger
