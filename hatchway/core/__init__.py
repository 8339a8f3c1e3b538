"""Core package containing the application core, managers and stores."""

from hatchway.core.base import HatchwayManager
from hatchway.core.config_manager import ConfigManager
from hatchway.core.logging_manager import LoggingManager
from hatchway.core.store import ConfigStore, JsonFileConfigStore, MemoryConfigStore
