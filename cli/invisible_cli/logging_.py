from __future__ import annotations

import logging

LIBRARY_LOGGER = "invisible_setup"


def setup_logging(verbose: bool) -> None:
    """WARNING by default; ``-v`` shows every command the stages run."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s" if verbose else "%(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger(LIBRARY_LOGGER).setLevel(logging.DEBUG if verbose else logging.WARNING)

    # ifconfig.me and Mailpit requests stay quiet unless asked for
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.DEBUG if verbose else logging.WARNING)
