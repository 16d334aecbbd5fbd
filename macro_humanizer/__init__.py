"""
Macro Humanizer.

Discovers recurring patterns in recorded input macros and rewrites
recordings so they play back with human-like timing:
- Parses macro files and caches results by content hash
- Mines frequent command subsequences across recordings
- Predicts the next command from a transition model
- Humanizes recordings with validated settings or stored profiles
- Runs long work on background job queues
"""

import logging
from typing import Callable, Dict, Optional

from .config import validate_config
from .const import DOMAIN
from .engine import MacroEngine

_LOGGER = logging.getLogger(__name__)

__all__ = ["DOMAIN", "MacroEngine", "async_setup"]


async def async_setup(config: Optional[Dict] = None, sink: Optional[Callable] = None) -> MacroEngine:
    """
    Set up the macro humanizer.

    Lifecycle:
    1. Validate configuration
    2. Build the engine and its collaborators
    3. Create tables and seed default profiles
    4. Start the job queues

    Args:
        config: Full configuration mapping (with the `macro_humanizer` key)
        sink: Job notification sink

    Returns:
        Running engine; call `await engine.close()` when done
    """
    _LOGGER.info("Initializing Macro Humanizer")

    conf = validate_config(config)
    engine = MacroEngine.from_config(conf, sink=sink)
    engine.initialize()
    await engine.start()

    _LOGGER.info("Macro Humanizer setup complete")
    return engine
