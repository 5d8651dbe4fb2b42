"""Logging setup."""

import logging

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str = "INFO", verbose: bool = False) -> None:
    """Configure the root logger.

    Args:
        level: Logging level name
        verbose: Force DEBUG regardless of ``level``
    """
    resolved = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=resolved, format=LOG_FORMAT, datefmt="%H:%M:%S")

    # The LiveKit SDK is chatty at DEBUG
    if not verbose:
        logging.getLogger("livekit").setLevel(logging.WARNING)
