"""Connection state machine for paired wearables."""

import abc
import asyncio
import dataclasses
import time
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from kinepy.core import config, exceptions, models
from kinepy.devices import events

logger = config.get_logger()

CONNECTABLE_STATES = (models.DeviceState.discovered, models.DeviceState.disconnected)
LINKED_STATES = (models.DeviceState.connected, models.DeviceState.reconnecting)


class DeviceTransport(abc.ABC):
    """Abstract class defining the interface to the Bluetooth hardware layer."""

    @abc.abstractmethod
    async def connect(self, device_id: str) -> None:
        """Open a link to the device.

        Must raise an exception when the device cannot be reached.
        """
        pass

    @abc.abstractmethod
    async def disconnect(self, device_id: str) -> None:
        """Close the link to the device and release its resources."""
        pass


@dataclasses.dataclass
class _DeviceSlot:
    device: models.Device
    lock: asyncio.Lock = dataclasses.field(default_factory=asyncio.Lock)
    reconnect_task: Optional[asyncio.Task] = None


class DeviceConnectionManager:
    """Owns the connection state machine of every known device.

    Transitions of one device are serialized by a per-device lock, so they never
    interleave, while different devices proceed independently. Every transition
    is published as a StateChanged event, and a device that cannot be reconnected
    within the retry budget additionally produces a DeviceLost event.
    """

    def __init__(
        self,
        transport: DeviceTransport,
        settings: Optional[config.Settings] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        bus: Optional[events.EventBus] = None,
    ) -> None:
        """Initialize the manager.

        Args:
            transport: The hardware layer used to open and close links.
            settings: Timeouts and reconnect backoff. Defaults are used if None.
            clock: Source of the current time, used for last-seen and event times.
            sleep: Coroutine function used to wait between reconnect tries.
            bus: The event bus to publish on. A new one is created if None.
        """
        self.settings = settings or config.Settings()
        self._transport = transport
        self._clock = clock
        self._sleep = sleep
        self.bus = bus or events.EventBus()
        self._slots: Dict[str, _DeviceSlot] = {}

    def add_listener(self, listener: events.Listener) -> None:
        """Subscribe to state-change and device-lost events."""
        self.bus.add_listener(listener)

    def discover(
        self,
        device_id: str,
        capabilities: Optional[Iterable[models.Capability]] = None,
    ) -> models.Device:
        """Register a device seen during a scan.

        A known device only has its last-seen time and capabilities refreshed.

        Args:
            device_id: The device address.
            capabilities: Sensors the device advertises. Defaults to motion only.

        Returns:
            A snapshot of the device.
        """
        now = self._clock()
        capability_set = frozenset(capabilities or {models.Capability.motion})
        slot = self._slots.get(device_id)
        if slot is None:
            slot = _DeviceSlot(
                device=models.Device(
                    device_id=device_id,
                    last_seen=now,
                    capabilities=capability_set,
                )
            )
            self._slots[device_id] = slot
            logger.info("Discovered device %s.", device_id)
        else:
            slot.device = slot.device.model_copy(
                update={
                    "last_seen": now,
                    "capabilities": slot.device.capabilities | capability_set,
                }
            )
        return slot.device

    def get(self, device_id: str) -> models.Device:
        """Snapshot of a registered device.

        Raises:
            UnknownDeviceError: If the device is not registered.
        """
        return self._slot(device_id).device

    def devices(self) -> List[models.Device]:
        """Snapshots of all registered devices."""
        return [slot.device for slot in self._slots.values()]

    async def connect(self, device_id: str) -> models.Device:
        """Pair with and connect to a discovered or disconnected device.

        Args:
            device_id: The device to connect.

        Returns:
            A snapshot of the connected device.

        Raises:
            UnknownDeviceError: If the device is not registered.
            InvalidTransitionError: If the device is not discovered or disconnected.
            ConnectionTimeoutError: If the attempt exceeded the connect timeout.
                The device is left disconnected.
            DeviceConnectionError: If the transport could not reach the device.
                The device is left disconnected.
        """
        slot = self._slot(device_id)
        async with slot.lock:
            if self._slots.get(device_id) is not slot:
                raise exceptions.UnknownDeviceError(
                    f"Device {device_id} was unpaired.", device_id=device_id
                )
            previous = slot.device.state
            if previous not in CONNECTABLE_STATES:
                raise exceptions.InvalidTransitionError(
                    f"Cannot connect {device_id} while it is {previous.value}.",
                    device_id=device_id,
                )

            self._transition(slot, models.DeviceState.pairing)
            try:
                await asyncio.wait_for(
                    self._transport.connect(device_id),
                    timeout=self.settings.connect_timeout,
                )
            except asyncio.TimeoutError:
                self._transition(slot, models.DeviceState.disconnected)
                raise exceptions.ConnectionTimeoutError(
                    f"Connecting to {device_id} timed out after "
                    f"{self.settings.connect_timeout} s.",
                    device_id=device_id,
                ) from None
            except asyncio.CancelledError:
                self._transition(slot, previous)
                raise
            except Exception as e:
                self._transition(slot, models.DeviceState.disconnected)
                raise exceptions.DeviceConnectionError(
                    f"Could not connect to {device_id}: {e}", device_id=device_id
                ) from e

            self._transition(slot, models.DeviceState.connected, seen=True)
            return slot.device

    async def on_link_lost(self, device_id: str) -> Optional[asyncio.Task]:
        """Handle a dropped link by starting the reconnect loop.

        Only connected devices are affected; the event is ignored otherwise.

        Args:
            device_id: The device whose link dropped.

        Returns:
            The reconnect task, or None if the event was ignored.
        """
        slot = self._slots.get(device_id)
        if slot is None:
            logger.warning("Link lost for unknown device %s, ignoring.", device_id)
            return None

        async with slot.lock:
            if slot.device.state != models.DeviceState.connected:
                logger.info(
                    "Link lost for %s while %s, ignoring.",
                    device_id,
                    slot.device.state.value,
                )
                return None
            self._transition(slot, models.DeviceState.reconnecting)
            slot.reconnect_task = asyncio.create_task(self._reconnect(slot))
            return slot.reconnect_task

    async def unpair(self, device_id: str) -> None:
        """Forget a device, releasing its link and any reconnect loop.

        Valid from any state. Unpairing an unknown or already unpaired device does
        nothing.

        Args:
            device_id: The device to unpair.
        """
        slot = self._slots.get(device_id)
        if slot is None:
            logger.debug("Device %s is not registered, nothing to unpair.", device_id)
            return

        task = slot.reconnect_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.wait([task])

        async with slot.lock:
            if self._slots.get(device_id) is not slot:
                return
            if slot.device.state in LINKED_STATES:
                try:
                    await asyncio.wait_for(
                        self._transport.disconnect(device_id),
                        timeout=self.settings.connect_timeout,
                    )
                except Exception as e:
                    logger.warning("Transport did not release %s: %s", device_id, e)
            slot.reconnect_task = None
            self._transition(slot, models.DeviceState.unpaired)
            del self._slots[device_id]

    async def close(self) -> None:
        """Cancel every running reconnect loop.

        Devices that were reconnecting are left disconnected, so they can be
        connected again.
        """
        slots = [
            slot for slot in self._slots.values() if slot.reconnect_task is not None
        ]
        tasks: List[asyncio.Task] = [
            slot.reconnect_task for slot in slots if slot.reconnect_task is not None
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)
        for slot in slots:
            async with slot.lock:
                slot.reconnect_task = None
                if slot.device.state == models.DeviceState.reconnecting:
                    self._transition(slot, models.DeviceState.disconnected)

    async def _reconnect(self, slot: _DeviceSlot) -> None:
        """Retry the link with bounded exponential backoff."""
        device_id = slot.device.device_id
        delay = self.settings.reconnect_initial_delay
        attempts = self.settings.reconnect_max_retries

        for attempt in range(1, attempts + 1):
            await self._sleep(delay)
            delay = min(
                self.settings.reconnect_max_delay,
                delay * self.settings.reconnect_backoff_factor,
            )
            async with slot.lock:
                if slot.device.state != models.DeviceState.reconnecting:
                    return
                try:
                    await asyncio.wait_for(
                        self._transport.connect(device_id),
                        timeout=self.settings.connect_timeout,
                    )
                except asyncio.TimeoutError:
                    logger.warning(
                        "Reconnect %s/%s to %s timed out.", attempt, attempts, device_id
                    )
                    continue
                except Exception as e:
                    logger.warning(
                        "Reconnect %s/%s to %s failed: %s",
                        attempt,
                        attempts,
                        device_id,
                        e,
                    )
                    continue
                slot.reconnect_task = None
                self._transition(slot, models.DeviceState.connected, seen=True)
                return

        async with slot.lock:
            if slot.device.state != models.DeviceState.reconnecting:
                return
            slot.reconnect_task = None
            self._transition(slot, models.DeviceState.disconnected)
            logger.warning("Device %s lost after %s attempts.", device_id, attempts)
            self.bus.emit(
                events.DeviceLost(device_id=device_id, at=self._clock(), attempts=attempts)
            )

    def _slot(self, device_id: str) -> _DeviceSlot:
        slot = self._slots.get(device_id)
        if slot is None:
            raise exceptions.UnknownDeviceError(
                f"Device {device_id} is not registered.", device_id=device_id
            )
        return slot

    def _transition(
        self, slot: _DeviceSlot, state: models.DeviceState, seen: bool = False
    ) -> None:
        previous = slot.device.state
        now = self._clock()
        update: Dict[str, object] = {"state": state}
        if seen:
            update["last_seen"] = now
        slot.device = slot.device.model_copy(update=update)
        logger.info(
            "Device %s: %s -> %s.", slot.device.device_id, previous.value, state.value
        )
        self.bus.emit(
            events.StateChanged(
                device_id=slot.device.device_id,
                previous=previous,
                current=state,
                at=now,
            )
        )
