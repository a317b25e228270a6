import logging
import os
import sys

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logger(name: str = "paybridge") -> logging.Logger:
    instance = logging.getLogger(name)
    if instance.handlers:
        return instance

    level_name = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()
    instance.setLevel(getattr(logging, level_name, logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    instance.addHandler(handler)
    instance.propagate = False
    return instance


logger = setup_logger()
