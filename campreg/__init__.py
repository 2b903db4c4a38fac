"""
Registration Execution Coordinator

Watches for registration to open, starts the external attempt executor,
brokers bot-challenge interruptions to the user, and settles the held charge
once the attempt finishes.

1. Watch (campreg.watch)
   - Target window, adaptive polling cadence, open-signal classification

2. Challenge (campreg.challenge)
   - Checkpoints, challenge tickets and magic links, inbound SMS replies

3. Settlement (campreg.settlement)
   - Idempotent reservation outcome and charge capture/release

4. HTTP surface (campreg.api)
"""
from .common.config import Config, load_config

__version__ = "1.0.0"

__all__ = [
    "Config",
    "load_config",
]
