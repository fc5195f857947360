"""
WifiConnectManager - credential submission and connection-status polling.

States:
    Idle -> Submitting -> Connecting -> Connected | Failed
    Connected/Failed -> Idle on disconnect; a new submission starts over

The credential submission is fire-and-forget: its response says nothing about
the outcome. Only status polls move the machine, and the first successful
poll is what establishes Connecting. Status codes:
    2      connection failed
    3      connected
    other  still connecting

A failed status poll is not an outcome: the poll is also the only heartbeat of
connection progress, so the next tick simply tries again. Polling is bounded
by WIFI_CONNECT_MAX_POLLS ticks.
"""

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from core.errors import TransportError, ValidationError
from core.logging_helper import logger
from core.scheduler import Scheduler
from core.settings import DEFAULT_WIFI_CONNECT_MAX_POLLS, get_int
from managers.manager_base import ManagerBase
from managers.polling_manager import PollingManager, PollPurpose
from services.device_client import AccessPoint, ConnectInfo, DeviceClient
from services.display import DisplaySink, Regions

WIFI_STATUS_FAILED = 2
WIFI_STATUS_CONNECTED = 3

SSID_EMPTY_MESSAGE = "SSID cannot be empty!"
PASSWORD_EMPTY_MESSAGE = "Password cannot be empty!"
CONNECTING_MESSAGE = "Connecting..."
CONNECT_FAILED_HTML = "<h4 class='rd'>Failed to Connect. Please check your AP credentials and compatibility</h4>"
CONNECT_TIMEOUT_HTML = "<h4 class='rd'>Connection timed out. Please check your AP credentials and try again</h4>"
CONNECT_SUCCESS_HTML = "<h4 class='gr'>Connection Success!</h4>"


class WifiConnectStatus(Enum):
    IDLE = "Idle"
    SUBMITTING = "Submitting"
    CONNECTING = "Connecting"
    FAILED = "Failed"
    CONNECTED = "Connected"


@dataclass
class WifiConnectSession:
    status: WifiConnectStatus = WifiConnectStatus.IDLE
    attempts: int = 0
    ssid: str = ""


class WifiConnectManager(ManagerBase):
    """State machine for joining the device to an external access point."""

    STATUS_POLL_INTERVAL_MS = 2800
    RELOAD_AFTER_DISCONNECT_MS = 2000

    def __init__(
        self,
        client: DeviceClient,
        display: DisplaySink,
        polling: PollingManager,
        scheduler: Scheduler | None = None,
        reload: Callable[[], None] | None = None,
        max_polls: int | None = None,
    ) -> None:
        """
        Args:
            client: Endpoint client
            display: Display sink
            polling: Timer registry used for the status poll
            scheduler: Scheduler for one-shot requests (defaults to the registry's)
            reload: Full page reload; defaults to display.reload
            max_polls: Status polls before giving up; 0 disables the bound.
                       Defaults to $WIFI_CONNECT_MAX_POLLS.
        """
        super().__init__(scheduler or polling.scheduler)
        self.logger = logger("devpanel.wifi")
        self.client = client
        self.display = display
        self.polling = polling
        self._reload = reload or display.reload
        self.max_polls = (
            max_polls if max_polls is not None else get_int("WIFI_CONNECT_MAX_POLLS", DEFAULT_WIFI_CONNECT_MAX_POLLS)
        )
        self.session = WifiConnectSession()
        self.connect_info: ConnectInfo | None = None

    @property
    def status(self) -> WifiConnectStatus:
        return self.session.status

    def _set_status(self, status: WifiConnectStatus) -> None:
        if status is not self.session.status:
            self.logger.info(f"WiFi state {self.session.status.value} -> {status.value}")
        self.session.status = status

    # --- Connect ---

    @staticmethod
    def validate_credentials(ssid: str, password: str) -> list[str]:
        """Return every violated constraint; empty when the credentials are usable."""
        errors = []
        if ssid == "":
            errors.append(SSID_EMPTY_MESSAGE)
        if password == "":
            errors.append(PASSWORD_EMPTY_MESSAGE)
        return errors

    def connect(self, ssid: str, password: str) -> None:
        """
        Submit credentials and start polling for the outcome.

        Raises:
            ValidationError: EMPTY_CREDENTIALS listing every empty field; no
                             request is sent and the state is unchanged
        """
        errors = self.validate_credentials(ssid, password)
        if errors:
            self.display.set_html(Regions.CREDENTIAL_ERRORS, "".join(f"<h4 class='rd'>{e}</h4>" for e in errors))
            raise ValidationError(ValidationError.EMPTY_CREDENTIALS, errors)

        self.display.set_html(Regions.CREDENTIAL_ERRORS, "")
        self.polling.stop_repeating(PollPurpose.WIFI_STATUS)
        self.session = WifiConnectSession(ssid=ssid)
        self._set_status(WifiConnectStatus.SUBMITTING)
        self.logger.info(f"Submitting credentials for '{ssid}'")

        async def submit() -> None:
            try:
                await self.client.submit_wifi_credentials(ssid, password)
            except TransportError as e:
                self.logger.debug(f"Credential submission reported an error, status polls decide: {e}")

        self._track_task_handle(self.scheduler.schedule_now(submit, priority=20, name="WiFi Credential Submit"))
        self.polling.start_repeating(
            PollPurpose.WIFI_STATUS, self.STATUS_POLL_INTERVAL_MS, self.poll_status, immediate=False
        )

    async def poll_status(self) -> None:
        """One status-poll tick.

        A reply that arrives after connect() or disconnect() replaced the
        attempt belongs to the old attempt and is dropped.
        """
        session = self.session
        if session.status not in (WifiConnectStatus.SUBMITTING, WifiConnectStatus.CONNECTING):
            self.polling.stop_repeating(PollPurpose.WIFI_STATUS)
            return

        session.attempts += 1
        try:
            code = await self.client.get_wifi_connect_status()
        except TransportError as e:
            if self.session is session:
                self.logger.debug(f"Status poll {session.attempts} failed, retrying next tick: {e}")
                self._check_poll_budget()
            return

        if self.session is not session:
            self.logger.debug(f"Dropping status {code} for replaced attempt on '{session.ssid}'")
            return

        if self.session.status is WifiConnectStatus.SUBMITTING:
            self._set_status(WifiConnectStatus.CONNECTING)
        self.display.set_html(Regions.WIFI_CONNECT_STATUS, CONNECTING_MESSAGE)

        if code == WIFI_STATUS_FAILED:
            self.polling.stop_repeating(PollPurpose.WIFI_STATUS)
            self._set_status(WifiConnectStatus.FAILED)
            self.display.set_html(Regions.WIFI_CONNECT_STATUS, CONNECT_FAILED_HTML)
        elif code == WIFI_STATUS_CONNECTED:
            self.polling.stop_repeating(PollPurpose.WIFI_STATUS)
            self._set_status(WifiConnectStatus.CONNECTED)
            self.display.set_html(Regions.WIFI_CONNECT_STATUS, CONNECT_SUCCESS_HTML)
            await self.refresh_connect_info()
        else:
            self._check_poll_budget()

    def _check_poll_budget(self) -> None:
        if self.max_polls <= 0 or self.session.attempts < self.max_polls:
            return
        self.logger.warning(f"No connection result after {self.session.attempts} status polls, giving up")
        self.polling.stop_repeating(PollPurpose.WIFI_STATUS)
        self._set_status(WifiConnectStatus.FAILED)
        self.display.set_html(Regions.WIFI_CONNECT_STATUS, CONNECT_TIMEOUT_HTML)

    # --- Connection info ---

    async def refresh_connect_info(self) -> ConnectInfo | None:
        """Fetch and display the station connection details."""
        try:
            info = await self.client.get_connect_info()
        except TransportError as e:
            self.logger.debug(f"Connect info query failed: {e}")
            return None

        self.connect_info = info
        self.display.set_html(Regions.CONNECTED_AP_LABEL, "Connected to: ")
        self.display.set_text(Regions.CONNECTED_AP, info.ap)
        self.display.set_html(Regions.IP_ADDRESS_LABEL, "IP Address: ")
        self.display.set_text(Regions.IP_ADDRESS, info.ip)
        self.display.set_html(Regions.NETMASK_LABEL, "Netmask: ")
        self.display.set_text(Regions.NETMASK, info.netmask)
        self.display.set_html(Regions.GATEWAY_LABEL, "Gateway: ")
        self.display.set_text(Regions.GATEWAY, info.gateway)
        self.display.show(Regions.DISCONNECT_BUTTON)
        return info

    # --- Disconnect ---

    def disconnect(self) -> None:
        """
        Ask the device to leave its access point, then reload.

        The reload happens RELOAD_AFTER_DISCONNECT_MS later whatever the
        request's outcome: the device drops this client's connection as part
        of disconnecting.
        """
        self.polling.stop_repeating(PollPurpose.WIFI_STATUS)
        self.session = WifiConnectSession()
        self.logger.info("Disconnecting from access point")

        async def request_disconnect() -> None:
            try:
                await self.client.disconnect_wifi()
            except TransportError as e:
                self.logger.debug(f"Disconnect request failed, reloading anyway: {e}")

        async def reload_page() -> None:
            self._reload()

        self._track_task_handle(
            self.scheduler.schedule_now(request_disconnect, priority=20, name="WiFi Disconnect Request")
        )
        self._track_task_handle(
            self.scheduler.schedule_once(
                reload_page, delay=self.RELOAD_AFTER_DISCONNECT_MS / 1000, priority=10, name="Reload After Disconnect"
            )
        )

    # --- Scan ---

    async def scan_networks(self) -> list[AccessPoint]:
        """List access points visible to the device; empty on failure."""
        try:
            networks = await self.client.scan_networks()
        except TransportError as e:
            self.logger.warning(f"Network scan failed: {e}")
            return []

        networks.sort(key=lambda ap: ap.rssi, reverse=True)
        rows = "".join(f"<li>{ap.ssid} ({ap.rssi} dBm, {ap.auth})</li>" for ap in networks)
        self.display.set_html(Regions.WIFI_SCAN_RESULTS, f"<ul>{rows}</ul>")
        return networks

    def shutdown(self) -> None:
        self.polling.stop_repeating(PollPurpose.WIFI_STATUS)
        super().shutdown()
