"""
Connectivity signal sources.

A source reports online/offline transitions to subscribers. Subscribers
register at start-up and deregister on shutdown with the token they got
back from ``subscribe``.
"""
import itertools
import logging
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

logger = logging.getLogger("tracking.connectivity")

Callback = Callable[[], None]


class ConnectivitySource(ABC):
    """Emits "online" / "offline" transitions."""

    @property
    @abstractmethod
    def is_online(self) -> bool:
        pass

    @abstractmethod
    def subscribe(
        self,
        on_online: Optional[Callback] = None,
        on_offline: Optional[Callback] = None,
    ) -> int:
        """Register callbacks; returns a token for ``unsubscribe``."""
        pass

    @abstractmethod
    def unsubscribe(self, token: int) -> None:
        pass


class ManualConnectivity(ConnectivitySource):
    """
    Connectivity driven by explicit calls.

    Callbacks fire only on an actual transition, in subscription order.
    """

    def __init__(self, online: bool = True):
        self._online = online
        self._subscribers: Dict[int, Tuple[Optional[Callback], Optional[Callback]]] = {}
        self._tokens = itertools.count(1)

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(
        self,
        on_online: Optional[Callback] = None,
        on_offline: Optional[Callback] = None,
    ) -> int:
        token = next(self._tokens)
        self._subscribers[token] = (on_online, on_offline)
        return token

    def unsubscribe(self, token: int) -> None:
        self._subscribers.pop(token, None)

    def go_online(self) -> None:
        if self._online:
            return
        self._online = True
        logger.info("Connectivity: online")
        for on_online, _ in list(self._subscribers.values()):
            if on_online is not None:
                on_online()

    def go_offline(self) -> None:
        if not self._online:
            return
        self._online = False
        logger.info("Connectivity: offline")
        for _, on_offline in list(self._subscribers.values()):
            if on_offline is not None:
                on_offline()
