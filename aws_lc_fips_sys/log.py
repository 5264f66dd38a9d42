import logging
import sys

LOGGER_NAME = "aws_lc_fips_sys"
FORMAT = "[aws-lc-fips] %(message)s"


def setup_logging(verbose: bool = False) -> logging.Logger:
    """Send the package's log records to stderr, once."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    if not any(getattr(h, "_aws_lc_fips", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(FORMAT))
        handler._aws_lc_fips = True
        logger.addHandler(handler)
    return logger
