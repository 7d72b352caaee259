"""Events emitted by the device connection manager."""

from typing import Callable, List, Union

import pydantic

from kinepy.core import config, models

logger = config.get_logger()


class StateChanged(pydantic.BaseModel):
    """A device moved from one connection state to another."""

    model_config = pydantic.ConfigDict(frozen=True)

    device_id: str
    previous: models.DeviceState
    current: models.DeviceState
    at: float


class DeviceLost(pydantic.BaseModel):
    """A device could not be reconnected within the retry budget."""

    model_config = pydantic.ConfigDict(frozen=True)

    device_id: str
    at: float
    attempts: int


DeviceEvent = Union[StateChanged, DeviceLost]
Listener = Callable[[DeviceEvent], None]


class EventBus:
    """Delivers events to listeners synchronously, in emission order."""

    def __init__(self) -> None:
        """Initialize an empty bus."""
        self._listeners: List[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        """Register a listener. Registering the same listener twice is a no-op."""
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        """Unregister a listener if it is registered."""
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, event: DeviceEvent) -> None:
        """Deliver an event to every listener.

        A failing listener is logged and does not prevent delivery to the others.
        """
        logger.debug("Emitting %r.", event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Listener %r failed on %r.", listener, event)
