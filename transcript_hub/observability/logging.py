"""Root logger setup for the API process and the maintenance scripts."""
import logging

_configured = False


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger once; later calls only adjust the level.
    Why available: Called from the app lifespan and from scripts so every module's logging.getLogger(__name__) writes to the same handler."""
    global _configured
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    if _configured:
        logging.getLogger().setLevel(lvl)
        return
    logging.basicConfig(
        level=lvl,
        format="%(asctime)s %(levelname)-7s %(name)s - %(message)s",
    )
    _configured = True
