"""
Unit tests for WifiConnectManager.

Tests verify:
- Credential validation (every empty field reported, no request sent)
- Status polling: 2 failed, 3 connected, anything else keeps polling
- Poll failures are ignored until the poll budget runs out
- Connection info rendering
- Disconnect reloads two seconds later whatever the outcome
- Replies for a replaced attempt are dropped
"""

import time
from unittest.mock import patch

from core.errors import ValidationError
from core.scheduler import Scheduler
from managers.polling_manager import PollingManager, PollPurpose
from managers.wifi_connect_manager import (
    CONNECT_FAILED_HTML,
    CONNECT_SUCCESS_HTML,
    CONNECT_TIMEOUT_HTML,
    CONNECTING_MESSAGE,
    PASSWORD_EMPTY_MESSAGE,
    SSID_EMPTY_MESSAGE,
    WifiConnectManager,
    WifiConnectStatus,
)
from services.device_client import DeviceClient
from services.display import Regions
from tests.unit import TestCase
from tests.unit.mocks import FakeClock, FakeSession, RecordingDisplay, run_async, run_realtime, run_until

CONNECT_INFO = {"ap": "home", "ip": "192.168.1.50", "netmask": "255.255.255.0", "gw": "192.168.1.1"}


class WifiTestCase(TestCase):
    """Shared fake device, clock and display."""

    max_polls = 25

    def setUp(self) -> None:
        self.clock = FakeClock()
        self.scheduler = Scheduler(clock=self.clock)
        self.session = FakeSession(self.clock)
        self.session.set_json("/wifiConnect.json", {"status": "ok"})
        self.session.set_json("/wifiConnectStatus", {"wifi_connect_status": 1})
        self.session.set_json("/wifiConnectInfo.json", CONNECT_INFO)
        self.session.set_json("/wifiDisconnect.json", {"status": "ok"})
        self.client = DeviceClient("http://device.local", session=self.session, clock_ms=lambda: 1700000000000)
        self.display = RecordingDisplay(self.clock)
        self.polling = PollingManager(self.client, self.display, scheduler=self.scheduler)
        self.wifi = WifiConnectManager(self.client, self.display, self.polling, max_polls=self.max_polls)

    def tearDown(self) -> None:
        self.wifi.shutdown()
        self.polling.stop()


class TestCredentialValidation(WifiTestCase):
    """Empty fields are rejected before any request."""

    def test_both_empty(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self.wifi.connect("", "")

        self.assertEqual(ctx.exception.reason, ValidationError.EMPTY_CREDENTIALS)
        self.assertEqual(ctx.exception.messages, [SSID_EMPTY_MESSAGE, PASSWORD_EMPTY_MESSAGE])
        self.assertEqual(
            self.display.regions[Regions.CREDENTIAL_ERRORS],
            "<h4 class='rd'>SSID cannot be empty!</h4><h4 class='rd'>Password cannot be empty!</h4>",
        )
        run_until(self.scheduler, self.clock, 10.0)
        self.assertEqual(self.session.requests, [])
        self.assertIs(self.wifi.status, WifiConnectStatus.IDLE)

    def test_password_empty(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self.wifi.connect("home", "")

        self.assertEqual(ctx.exception.messages, [PASSWORD_EMPTY_MESSAGE])
        self.assertEqual(self.session.requests, [])

    def test_valid_credentials_clear_errors(self) -> None:
        with self.assertRaises(ValidationError):
            self.wifi.connect("", "secret123")

        self.wifi.connect("home", "secret123")

        self.assertEqual(self.display.regions[Regions.CREDENTIAL_ERRORS], "")
        self.assertIs(self.wifi.status, WifiConnectStatus.SUBMITTING)

    def test_validate_credentials_static(self) -> None:
        self.assertEqual(WifiConnectManager.validate_credentials("a", "b"), [])
        self.assertEqual(WifiConnectManager.validate_credentials("", "b"), [SSID_EMPTY_MESSAGE])


class TestConnectFlow(WifiTestCase):
    """Submission and status polling."""

    def test_submission_request(self) -> None:
        self.wifi.connect("home", "secret123")
        run_until(self.scheduler, self.clock, 0.0)

        submit = self.session.requests_to("/wifiConnect.json")
        self.assertEqual(len(submit), 1)
        self.assertEqual(submit[0].headers["my-connect-ssid"], "home")
        self.assertEqual(submit[0].headers["my-connect-pwd"], "secret123")
        self.assertEqual(submit[0].data, "timestamp=1700000000000")

    def test_polls_every_2800ms_starting_after_one_interval(self) -> None:
        self.wifi.connect("home", "secret123")
        run_until(self.scheduler, self.clock, 9.0)

        times = [round(r.time, 6) for r in self.session.requests_to("/wifiConnectStatus")]
        self.assertEqual(times, [2.8, 5.6, 8.4])

    def test_first_successful_poll_enters_connecting(self) -> None:
        self.wifi.connect("home", "secret123")
        run_until(self.scheduler, self.clock, 2.8)

        self.assertIs(self.wifi.status, WifiConnectStatus.CONNECTING)
        self.assertEqual(self.display.regions[Regions.WIFI_CONNECT_STATUS], CONNECTING_MESSAGE)

    def test_connected(self) -> None:
        """Status 3: Connected, polling stops, connection info fetched once."""
        self.session.set_json("/wifiConnectStatus", {"wifi_connect_status": 3})

        self.wifi.connect("home", "secret123")
        run_until(self.scheduler, self.clock, 3.0)

        self.assertIs(self.wifi.status, WifiConnectStatus.CONNECTED)
        self.assertEqual(self.display.regions[Regions.WIFI_CONNECT_STATUS], CONNECT_SUCCESS_HTML)
        self.assertEqual(self.session.count("/wifiConnectInfo.json"), 1)
        self.assertFalse(self.polling.is_active(PollPurpose.WIFI_STATUS))

        run_until(self.scheduler, self.clock, 30.0)
        self.assertEqual(self.session.count("/wifiConnectStatus"), 1)
        self.assertEqual(self.session.count("/wifiConnectInfo.json"), 1)

    def test_connected_shows_connection_info(self) -> None:
        self.session.set_json("/wifiConnectStatus", {"wifi_connect_status": 3})

        self.wifi.connect("home", "secret123")
        run_until(self.scheduler, self.clock, 3.0)

        regions = self.display.regions
        self.assertEqual(regions[Regions.CONNECTED_AP_LABEL], "Connected to: ")
        self.assertEqual(regions[Regions.CONNECTED_AP], "home")
        self.assertEqual(regions[Regions.IP_ADDRESS_LABEL], "IP Address: ")
        self.assertEqual(regions[Regions.IP_ADDRESS], "192.168.1.50")
        self.assertEqual(regions[Regions.NETMASK], "255.255.255.0")
        self.assertEqual(regions[Regions.GATEWAY_LABEL], "Gateway: ")
        self.assertEqual(regions[Regions.GATEWAY], "192.168.1.1")
        self.assertIn(Regions.DISCONNECT_BUTTON, self.display.visible)

    def test_failed(self) -> None:
        """Status 2: Failed and polling stops."""
        self.session.queue_json("/wifiConnectStatus", {"wifi_connect_status": 2})
        # Drop the set_json default so the failure answers every poll
        self.session._outcomes["/wifiConnectStatus"].pop(0)

        self.wifi.connect("home", "wrong")
        run_until(self.scheduler, self.clock, 20.0)

        self.assertIs(self.wifi.status, WifiConnectStatus.FAILED)
        self.assertEqual(self.display.regions[Regions.WIFI_CONNECT_STATUS], CONNECT_FAILED_HTML)
        self.assertEqual(self.session.count("/wifiConnectStatus"), 1)
        self.assertEqual(self.session.count("/wifiConnectInfo.json"), 0)

    def test_keeps_polling_until_result(self) -> None:
        self.session.queue_json("/wifiConnectStatus", {"wifi_connect_status": 1})
        self.session.queue_json("/wifiConnectStatus", {"wifi_connect_status": 3})

        self.wifi.connect("home", "secret123")
        run_until(self.scheduler, self.clock, 20.0)

        # set_json default, the queued 1, then the terminal 3
        self.assertEqual(self.session.count("/wifiConnectStatus"), 3)
        self.assertIs(self.wifi.status, WifiConnectStatus.CONNECTED)

    def test_submission_failure_ignored(self) -> None:
        """Only the status polls decide the outcome."""
        self.session.set_error("/wifiConnect.json", OSError("reset"))
        self.session.set_json("/wifiConnectStatus", {"wifi_connect_status": 3})

        self.wifi.connect("home", "secret123")
        run_until(self.scheduler, self.clock, 3.0)

        self.assertIs(self.wifi.status, WifiConnectStatus.CONNECTED)

    def test_poll_failures_ignored(self) -> None:
        """Failed polls leave the state alone; a later poll still concludes."""
        self.session.set_error("/wifiConnectStatus", OSError("refused"))
        self.session.queue_error("/wifiConnectStatus", OSError("refused"))
        self.session.queue_json("/wifiConnectStatus", {"wifi_connect_status": 3})

        self.wifi.connect("home", "secret123")
        run_until(self.scheduler, self.clock, 6.0)
        self.assertIs(self.wifi.status, WifiConnectStatus.SUBMITTING)
        self.assertNotIn(Regions.WIFI_CONNECT_STATUS, self.display.regions)

        run_until(self.scheduler, self.clock, 9.0)
        self.assertIs(self.wifi.status, WifiConnectStatus.CONNECTED)

    def test_new_submission_replaces_poll_timer(self) -> None:
        self.wifi.connect("home", "secret123")
        run_until(self.scheduler, self.clock, 1.0)
        self.wifi.connect("office", "secret456")
        run_until(self.scheduler, self.clock, 9.0)

        self.assertEqual(len(self.scheduler.active_tasks("Poll wifi_status")), 1)
        times = [round(r.time, 6) for r in self.session.requests_to("/wifiConnectStatus")]
        self.assertEqual(times, [3.8, 6.6])
        self.assertEqual(self.wifi.session.ssid, "office")

    def test_reply_for_replaced_attempt_is_dropped(self) -> None:
        """A Connected reply that lands after a resubmission leaves the new attempt polling."""
        self.wifi.connect("home", "secret123")

        async def reply_after_resubmit() -> int:
            self.wifi.connect("office", "secret456")
            return 3

        with patch.object(self.client, "get_wifi_connect_status", reply_after_resubmit):
            run_until(self.scheduler, self.clock, 2.8)

        self.assertEqual(self.wifi.session.ssid, "office")
        self.assertIs(self.wifi.status, WifiConnectStatus.SUBMITTING)
        self.assertTrue(self.polling.is_active(PollPurpose.WIFI_STATUS))
        self.assertNotIn(CONNECT_SUCCESS_HTML, self.display.values(Regions.WIFI_CONNECT_STATUS))
        self.assertEqual(self.session.count("/wifiConnectInfo.json"), 0)

        run_until(self.scheduler, self.clock, 5.6)
        self.assertIs(self.wifi.status, WifiConnectStatus.CONNECTING)


class TestPollBudget(WifiTestCase):
    """Polling gives up after max_polls."""

    max_polls = 3

    def test_gives_up_after_budget(self) -> None:
        self.wifi.connect("home", "secret123")
        run_until(self.scheduler, self.clock, 60.0)

        self.assertEqual(self.session.count("/wifiConnectStatus"), 3)
        self.assertIs(self.wifi.status, WifiConnectStatus.FAILED)
        self.assertEqual(self.display.regions[Regions.WIFI_CONNECT_STATUS], CONNECT_TIMEOUT_HTML)
        self.assertFalse(self.polling.is_active(PollPurpose.WIFI_STATUS))

    def test_failed_polls_count_against_budget(self) -> None:
        self.session.set_error("/wifiConnectStatus", OSError("refused"))

        self.wifi.connect("home", "secret123")
        run_until(self.scheduler, self.clock, 60.0)

        self.assertEqual(self.session.count("/wifiConnectStatus"), 3)
        self.assertIs(self.wifi.status, WifiConnectStatus.FAILED)


class TestUnboundedPolling(WifiTestCase):
    """max_polls=0 disables the budget."""

    max_polls = 0

    def test_polls_until_stopped(self) -> None:
        self.wifi.connect("home", "secret123")
        run_until(self.scheduler, self.clock, 100.0)

        self.assertEqual(self.session.count("/wifiConnectStatus"), 35)
        self.assertIs(self.wifi.status, WifiConnectStatus.CONNECTING)


class TestDisconnect(WifiTestCase):
    """Disconnect request and the delayed reload."""

    def test_reload_two_seconds_after_success(self) -> None:
        self.wifi.disconnect()

        run_until(self.scheduler, self.clock, 1.999)
        self.assertEqual(self.display.reload_times, [])
        self.assertEqual(self.session.requests_to("/wifiDisconnect.json")[0].method, "DELETE")

        run_until(self.scheduler, self.clock, 5.0)
        self.assertEqual(self.display.reload_times, [2.0])

    def test_reload_two_seconds_after_failure(self) -> None:
        self.session.set_error("/wifiDisconnect.json", OSError("connection reset"))

        self.wifi.disconnect()
        run_until(self.scheduler, self.clock, 5.0)

        self.assertEqual(self.display.reload_times, [2.0])

    def test_disconnect_stops_status_polling(self) -> None:
        self.wifi.connect("home", "secret123")
        run_until(self.scheduler, self.clock, 1.0)

        self.wifi.disconnect()
        run_until(self.scheduler, self.clock, 10.0)

        self.assertEqual(self.session.count("/wifiConnectStatus"), 0)
        self.assertIs(self.wifi.status, WifiConnectStatus.IDLE)

    def test_hanging_request_still_reloads_at_two_seconds(self) -> None:
        """A disconnect exchange that hangs past the reload does not hold it back (real clock)."""
        scheduler = Scheduler()
        session = FakeSession(time.monotonic)
        session.set_error("/wifiDisconnect.json", OSError("connection reset"))
        session.set_delay("/wifiDisconnect.json", 2.6)
        client = DeviceClient("http://device.local", session=session)
        display = RecordingDisplay(time.monotonic)
        wifi = WifiConnectManager(client, display, PollingManager(client, display, scheduler=scheduler), max_polls=25)

        start = time.monotonic()
        wifi.disconnect()
        run_realtime(scheduler, 2.3)

        self.assertEqual(len(display.reload_times), 1)
        self.assertAlmostEqual(display.reload_times[0] - start, 2.0, delta=0.2)


class TestRefreshAndScan(WifiTestCase):
    """Connection info refresh and network scan."""

    def test_refresh_connect_info_failure(self) -> None:
        self.session.set_error("/wifiConnectInfo.json", OSError("refused"))

        self.assertIsNone(run_async(self.wifi.refresh_connect_info()))
        self.assertNotIn(Regions.DISCONNECT_BUTTON, self.display.visible)

    def test_scan_sorted_by_signal(self) -> None:
        self.session.set_json(
            "/wifiScan.json",
            [
                {"ssid": "far", "rssi": -80, "auth": "WPA2"},
                {"ssid": "near", "rssi": -35, "auth": "WPA2"},
                {"ssid": "cafe", "rssi": -60, "auth": "OPEN"},
            ],
        )

        networks = run_async(self.wifi.scan_networks())

        self.assertEqual([ap.ssid for ap in networks], ["near", "cafe", "far"])
        self.assertTrue(self.display.regions[Regions.WIFI_SCAN_RESULTS].startswith("<ul><li>near"))

    def test_scan_failure_returns_empty(self) -> None:
        self.assertEqual(run_async(self.wifi.scan_networks()), [])
