"""
PollingManager - session-start stagger and the registry of repeating timers.

Owns one timer per polling purpose. Starting a purpose always cancels the
timer already registered for it, so repeated start calls never accumulate
duplicate timers. Managers that need a repeating timer (WiFi status, reboot
countdown) register it here; this registry is the only coupling between them.

Session start issues the SSID query at once and spreads the remaining first
requests over the first half second: the device's HTTP server has only a few
free sockets and refuses connections when they all arrive together.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from core.errors import TransportError
from core.logging_helper import logger
from core.scheduler import Scheduler, TaskHandle, TaskNonFatalError
from managers.manager_base import ManagerBase
from services.device_client import DeviceClient
from services.display import DisplaySink, Regions

Query = Callable[[], Awaitable[None]]


class PollPurpose(Enum):
    """Logical reason for a repeating timer; the deduplication key."""

    SENSOR = "sensor"
    CLOCK = "clock"
    OTA_STATUS = "ota_status"
    WIFI_STATUS = "wifi_status"
    OTA_COUNTDOWN = "ota_countdown"


@dataclass
class PollTimer:
    purpose: PollPurpose
    interval_ms: int
    handle: TaskHandle
    active: bool = True


class PollingManager(ManagerBase):
    """Registry of repeating timers keyed by purpose, plus the startup stagger."""

    SENSOR_INTERVAL_MS = 5000
    CLOCK_INTERVAL_MS = 10000

    # Offsets from session start
    OTA_STATUS_OFFSET_MS = 100
    SENSOR_START_OFFSET_MS = 200
    CLOCK_START_OFFSET_MS = 300
    CONNECT_INFO_OFFSET_MS = 400

    def __init__(
        self,
        client: DeviceClient,
        display: DisplaySink,
        scheduler: Scheduler | None = None,
    ) -> None:
        super().__init__(scheduler)
        self.logger = logger("devpanel.polling")
        self.client = client
        self.display = display
        self._timers: dict[PollPurpose, PollTimer] = {}

    # --- Session start ---

    def start(self, ota_status_query: Query | None = None, connect_info_query: Query | None = None) -> None:
        """
        Kick off the session's first requests.

        The SSID query is issued immediately; the others follow at fixed
        offsets so at most one new connection is opened per 100 ms.

        Args:
            ota_status_query: One-shot firmware status query (OTA manager)
            connect_info_query: One-shot connection info query (WiFi manager)
        """
        self.logger.info("Starting session polling")
        self._track_task_handle(self.scheduler.schedule_now(self.query_ssid, priority=10, name="SSID Query"))

        if ota_status_query is not None:
            self._track_task_handle(
                self.scheduler.schedule_once(
                    ota_status_query, delay=self.OTA_STATUS_OFFSET_MS / 1000, name="Initial OTA Status"
                )
            )
        self._track_task_handle(
            self.scheduler.schedule_once(
                self._start_sensor_polling, delay=self.SENSOR_START_OFFSET_MS / 1000, name="Sensor Start"
            )
        )
        self._track_task_handle(
            self.scheduler.schedule_once(
                self._start_clock_polling, delay=self.CLOCK_START_OFFSET_MS / 1000, name="Clock Start"
            )
        )
        if connect_info_query is not None:
            self._track_task_handle(
                self.scheduler.schedule_once(
                    connect_info_query, delay=self.CONNECT_INFO_OFFSET_MS / 1000, name="Initial Connect Info"
                )
            )

    async def _start_sensor_polling(self) -> None:
        self.start_repeating(PollPurpose.SENSOR, self.SENSOR_INTERVAL_MS, self.query_sensor)

    async def _start_clock_polling(self) -> None:
        self.start_repeating(PollPurpose.CLOCK, self.CLOCK_INTERVAL_MS, self.query_clock)

    # --- Timer registry ---

    def start_repeating(self, purpose: PollPurpose, interval_ms: int, query: Query, immediate: bool = True) -> PollTimer:
        """
        Run ``query`` every ``interval_ms`` until stop_repeating(purpose).

        Any timer already registered for ``purpose`` is cancelled first.

        Args:
            purpose: Deduplication key
            interval_ms: Period in milliseconds
            query: Async callable invoked on every tick
            immediate: Run once right away; otherwise the first run is one interval out
        """
        self.stop_repeating(purpose)

        period = interval_ms / 1000
        handle = self.scheduler.schedule_periodic(
            coroutine=query,
            period=period,
            priority=30,
            name=f"Poll {purpose.value}",
            delay=0.0 if immediate else period,
        )
        timer = PollTimer(purpose, interval_ms, handle)
        self._timers[purpose] = timer
        self.logger.debug(f"Started {purpose.value} timer every {interval_ms}ms")
        return timer

    def stop_repeating(self, purpose: PollPurpose) -> bool:
        """
        Cancel the timer for ``purpose``. Idempotent.

        Returns:
            bool: True if a live timer was cancelled
        """
        timer = self._timers.pop(purpose, None)
        if timer is None:
            return False
        timer.active = False
        cancelled = self.scheduler.cancel(timer.handle)
        if cancelled:
            self.logger.debug(f"Stopped {purpose.value} timer")
        return cancelled

    def is_active(self, purpose: PollPurpose) -> bool:
        timer = self._timers.get(purpose)
        return timer is not None and timer.active and self.scheduler.is_active(timer.handle)

    def active_purposes(self) -> list[PollPurpose]:
        return [purpose for purpose in self._timers if self.is_active(purpose)]

    def timer(self, purpose: PollPurpose) -> PollTimer | None:
        return self._timers.get(purpose)

    # --- Queries ---

    async def query_ssid(self) -> None:
        """Fetch the device's access point SSID; needed for page identity."""
        try:
            ssid = await self.client.get_ap_ssid()
        except TransportError as e:
            raise TaskNonFatalError(f"SSID query failed: {e}") from e
        self.display.set_text(Regions.AP_SSID, ssid)

    async def query_sensor(self) -> None:
        try:
            reading = await self.client.get_sensor_reading()
        except TransportError as e:
            self.logger.debug(f"Sensor poll failed, waiting for next tick: {e}")
            return
        self.display.set_text(Regions.TEMPERATURE, reading.temp)
        self.display.set_text(Regions.HUMIDITY, reading.humidity)

    async def query_clock(self) -> None:
        try:
            local_time = await self.client.get_local_time()
        except TransportError as e:
            self.logger.debug(f"Clock poll failed, waiting for next tick: {e}")
            return
        self.display.set_text(Regions.LOCAL_TIME, local_time)

    # --- Lifecycle ---

    def stop(self) -> None:
        """Cancel every registered timer and any pending startup request."""
        for purpose in list(self._timers):
            self.stop_repeating(purpose)
        self.shutdown()
