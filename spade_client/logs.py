import argparse
import logging
import sys

LOGGER_NAMES = ("Ace", "RETRYING", "Request", "Spade", "Boost", "Aria2", "Deal")


def get_logger(name: str, *, options: argparse.Namespace) -> logging.Logger:
    logger = logging.getLogger(name)
    if not any(getattr(h, "_spade_client", False) for h in logger.handlers):
        stdout_handler = logging.StreamHandler(sys.stdout)
        stdout_handler._spade_client = True
        formatter = logging.Formatter(f"[%(asctime)s] [%(levelname)s] {name}: %(message)s")
        stdout_handler.setFormatter(formatter)
        logger.addHandler(stdout_handler)
    if options.debug:
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)
    # Handlers are attached per logger, the root logger would print everything twice.
    logger.propagate = False
    return logger


def setup_logging(*, options: argparse.Namespace) -> None:
    for name in LOGGER_NAMES:
        get_logger(name, options=options)
