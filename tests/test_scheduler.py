import unittest
from unittest.mock import patch

import hdmi_overlay
from fakes import (
    FakeRequests,
    FakeResponse,
    InlineRunner,
    advance,
    make_config,
    make_dispatcher,
)
from hdmi_overlay import CmsClient, ContentScheduler, LayoutStatus


class RecordingRenderer:
    def __init__(self) -> None:
        self.loads = []

    def load(self, content_id: str) -> None:
        self.loads.append(content_id)


class ContentSchedulerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.dispatcher, self.clock = make_dispatcher()
        self.fake = FakeRequests()
        self.patcher = patch.object(hdmi_overlay, "requests", self.fake)
        self.patcher.start()
        self.addCleanup(self.patcher.stop)
        self.renderer = RecordingRenderer()
        self.statuses = []

    def make_scheduler(self, config=None) -> ContentScheduler:
        config = config or make_config()
        scheduler = ContentScheduler(
            config,
            CmsClient(config),
            InlineRunner(self.dispatcher),
            self.dispatcher,
            self.renderer,
        )
        scheduler.on_status_changed = self.statuses.append
        return scheduler

    def registered_config(self):
        config = make_config()
        config.set_state(display_id="42", is_registered=True)
        return config

    def test_registration_retries_until_accepted(self) -> None:
        self.fake.add("POST", "/register", FakeResponse(500), FakeResponse(200, {"displayId": 42}))
        self.fake.add("POST", "/status", FakeResponse(200))
        self.fake.add("GET", "/schedule/", FakeResponse(200, {}))
        config = make_config()
        scheduler = self.make_scheduler(config)
        errors = []
        registered = []
        scheduler.on_display_error = errors.append
        scheduler.on_display_registered = registered.append

        scheduler.start()
        with self.assertLogs(level="ERROR"):
            self.dispatcher.run_pending()

        self.assertFalse(scheduler.registered)
        self.assertEqual(len(errors), 1)
        self.assertEqual(scheduler.layout.status, LayoutStatus.ERROR)
        self.assertEqual(self.fake.calls_to("/status"), [])

        advance(self.dispatcher, self.clock, 29)
        self.assertEqual(len(self.fake.calls_to("/register")), 1)
        advance(self.dispatcher, self.clock, 1)

        self.assertEqual(registered, ["42"])
        self.assertEqual(config.get_state("display_id"), "42")
        self.assertTrue(config.get_state("is_registered"))
        self.assertEqual(scheduler.layout.status, LayoutStatus.RUNNING)
        self.assertEqual(self.statuses, [LayoutStatus.ERROR, LayoutStatus.RUNNING])
        payload = self.fake.calls_to("/register")[1]["json"]
        self.assertEqual(payload["serverKey"], "server-key")
        self.assertEqual(payload["hardwareKey"], "hw-1")
        self.assertEqual(len(self.fake.calls_to("/status")), 1)
        self.assertEqual(len(self.fake.calls_to("/schedule/42")), 1)

    def test_schedule_change_loads_layout_once(self) -> None:
        self.fake.add("POST", "/status", FakeResponse(200))
        self.fake.add("GET", "/schedule/42", FakeResponse(200, {"layoutId": 12}))
        config = self.registered_config()
        scheduler = self.make_scheduler(config)
        changed = []
        scheduler.on_layout_changed = changed.append

        scheduler.start()
        self.dispatcher.run_pending()
        advance(self.dispatcher, self.clock, 300)

        self.assertEqual(self.fake.calls_to("/register"), [])
        self.assertEqual(len(self.fake.calls_to("/schedule/42")), 2)
        self.assertEqual(self.renderer.loads, ["12"])
        self.assertEqual(changed, ["12"])
        self.assertEqual(scheduler.layout.current_content_id, "12")
        self.assertEqual(config.get_state("current_layout_id"), "12")

    def test_heartbeat_payload_and_interval(self) -> None:
        self.fake.add("POST", "/status", FakeResponse(500))
        self.fake.add("GET", "/schedule/42", FakeResponse(200, {}))
        config = self.registered_config()
        config.set_state(current_layout_id="9")
        scheduler = self.make_scheduler(config)

        scheduler.start()
        with self.assertLogs(level="WARNING"):
            self.dispatcher.run_pending()
        advance(self.dispatcher, self.clock, 59)
        self.assertEqual(len(self.fake.calls_to("/status")), 1)
        with self.assertLogs(level="WARNING"):
            advance(self.dispatcher, self.clock, 1)

        calls = self.fake.calls_to("/status")
        self.assertEqual(len(calls), 2)
        self.assertEqual(calls[0]["headers"], {"X-Display-Key": "hw-1"})
        self.assertEqual(
            calls[0]["json"],
            {
                "displayId": "42",
                "hardwareKey": "hw-1",
                "currentLayoutId": "9",
                "status": 1,
                "clientVersion": hdmi_overlay.__version__,
                "clientCode": 1,
            },
        )

    def test_force_update_and_stop(self) -> None:
        self.fake.add("POST", "/status", FakeResponse(200))
        self.fake.add("GET", "/schedule/42", FakeResponse(200, {"layoutId": "5"}), FakeResponse(200, {"layoutId": "6"}))
        scheduler = self.make_scheduler(self.registered_config())

        scheduler.start()
        self.dispatcher.run_pending()
        scheduler.force_update()
        self.dispatcher.run_pending()
        self.assertEqual(self.renderer.loads, ["5", "6"])

        scheduler.stop()
        advance(self.dispatcher, self.clock, 600)

        self.assertEqual(scheduler.layout.status, LayoutStatus.PENDING)
        self.assertEqual(len(self.fake.calls_to("/schedule/42")), 2)
        self.assertEqual(len(self.fake.calls_to("/status")), 1)


if __name__ == "__main__":
    unittest.main()
