from __future__ import annotations

import logging

# library loggers live under this name: debrid_stack.executor, debrid_stack.workflow, ...
STACK_LOGGER = "debrid_stack"
_QUIET = ("httpx", "httpcore")


def setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    # the runner traces every host command at DEBUG
    logging.getLogger(STACK_LOGGER).setLevel(level)
    for name in _QUIET:
        logging.getLogger(name).setLevel(level)
