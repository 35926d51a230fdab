"""glycoview: query engine for diabetes device data."""

from glycoview.logging_config import setup_logging
from glycoview.services.data_engine import DataEngine

__all__ = ["DataEngine", "setup_logging"]
