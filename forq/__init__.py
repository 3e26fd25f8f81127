"""forq - a terminal coding assistant."""

__version__ = "0.1.0"

from forq.config import Config
from forq.main import main

__all__ = ["Config", "main", "__version__"]
