from __future__ import annotations

import abc
from typing import Any, Dict


class HatchwayManager(abc.ABC):
    """Lifecycle contract for the configuration and logging managers.

    A manager is built unconfigured, becomes usable after
    :meth:`initialize` and is torn down by :meth:`shutdown`. Subclasses
    flip their state through :meth:`_mark_ready` and :meth:`_mark_stopped`
    so :meth:`status` always reflects it.
    """

    def __init__(self, name: str) -> None:
        self._name: str = name
        self._initialized: bool = False
        self._healthy: bool = False

    @abc.abstractmethod
    def initialize(self) -> None:
        """Make the manager usable.

        Raises:
            ManagerInitializationError: If the manager cannot start
        """

    @abc.abstractmethod
    def shutdown(self) -> None:
        """Release whatever :meth:`initialize` acquired.

        Raises:
            ManagerShutdownError: If resources could not be released
        """

    def _mark_ready(self) -> None:
        self._initialized = True
        self._healthy = True

    def _mark_stopped(self) -> None:
        self._initialized = False
        self._healthy = False

    def status(self) -> Dict[str, Any]:
        return {
            "name": self._name,
            "initialized": self._initialized,
            "healthy": self._healthy,
        }

    @property
    def name(self) -> str:
        return self._name

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def healthy(self) -> bool:
        return self._healthy

    def __repr__(self) -> str:
        state = "ready" if self._initialized else "stopped"
        return f"<{type(self).__name__} {self._name} ({state})>"
