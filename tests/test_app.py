import unittest
from dataclasses import replace
from unittest.mock import patch

import hdmi_overlay
from fakes import (
    FakeCaptureBackend,
    FakeRequests,
    FakeResponse,
    InlineRunner,
    advance,
    hdmi_device,
    make_config,
    make_dispatcher,
    token_response,
)
from hdmi_overlay import (
    CaptureState,
    HeadlessWindowHost,
    LayoutStatus,
    OverlayApp,
    StartupFlags,
)


class OverlayAppTests(unittest.TestCase):
    def setUp(self) -> None:
        self.dispatcher, self.clock = make_dispatcher()
        self.fake = FakeRequests()
        self.fake.add("POST", "/register", FakeResponse(200, {"displayId": "42"}))
        self.fake.add("POST", "/status", FakeResponse(200))
        self.fake.add("GET", "/schedule/42", FakeResponse(200, {"layoutId": "9"}))
        self.fake.add("POST", "/oauth/token", token_response())
        self.patcher = patch.object(hdmi_overlay, "requests", self.fake)
        self.patcher.start()
        self.addCleanup(self.patcher.stop)
        self.backend = FakeCaptureBackend(devices=[hdmi_device()])

    def make_app(self, state=None, **overrides) -> OverlayApp:
        config = make_config(**overrides)
        if state:
            config.set_state(**state)
        self.host = HeadlessWindowHost(config)
        return OverlayApp(
            config,
            StartupFlags.from_config(config),
            self.host,
            self.backend,
            coordinator=self.dispatcher,
            capture_worker=self.dispatcher,
            runner=InlineRunner(self.dispatcher),
            probe=lambda: True,
        )

    def test_full_startup_streams_and_shows_scheduled_layout(self) -> None:
        app = self.make_app()

        app.start_components()
        self.dispatcher.run_pending()
        advance(self.dispatcher, self.clock, 1.0)

        window = self.host.windows[0]
        self.assertEqual(app.capture.state, CaptureState.STREAMING)
        target, _size = self.backend.sessions[0].started[0]
        self.assertIs(target, window.video_target)
        self.assertEqual(app.renderer.displayed_content_id, "9")
        self.assertIn("/layout/render/9?preview=1&token=tok", app.renderer.surfaces.active.url)

        status = app.status.snapshot()
        self.assertEqual(status["capture_state"], "streaming")
        self.assertEqual(status["capture_device"], "/dev/video2")
        self.assertEqual(status["display_id"], "42")
        self.assertEqual(status["layout_id"], "9")
        self.assertEqual(status["last_layout_loaded"], "9")
        self.assertTrue(status["window_visible"])
        self.assertTrue(status["connected"])

    def test_resumes_last_layout_before_schedule(self) -> None:
        app = self.make_app(state={"current_layout_id": "7", "display_id": "42", "is_registered": True})

        app.start_components()
        self.dispatcher.run_pending()
        advance(self.dispatcher, self.clock, 1.0)
        advance(self.dispatcher, self.clock, 1.0)

        self.assertEqual(self.fake.calls_to("/register"), [])
        self.assertEqual(self.host.windows[0].content_surfaces[1].loads, 2)
        self.assertEqual(app.renderer.displayed_content_id, "9")
        self.assertEqual(app.status.snapshot()["last_layout_loaded"], "9")

    def test_screen_off_hides_and_screen_on_restores(self) -> None:
        app = self.make_app(hide_on_screen_off=True)
        app.start_components()
        self.dispatcher.run_pending()
        advance(self.dispatcher, self.clock, 1.0)

        app.screen_off()
        self.dispatcher.run_pending()

        self.assertFalse(app.window_manager.visible)
        self.assertTrue(self.host.windows[0].closed)
        self.assertEqual(app.capture.state, CaptureState.IDLE)

        app.screen_on()
        self.dispatcher.run_pending()
        self.assertFalse(app.window_manager.visible)
        advance(self.dispatcher, self.clock, 1.0)

        self.assertTrue(app.window_manager.visible)
        self.assertEqual(app.capture.state, CaptureState.STREAMING)
        target, _size = self.backend.sessions[-1].started[0]
        self.assertIs(target, self.host.windows[1].video_target)

    def test_screen_off_cancels_pending_show(self) -> None:
        app = self.make_app(hide_on_screen_off=True)
        app.start_components()
        self.dispatcher.run_pending()
        advance(self.dispatcher, self.clock, 1.0)

        app.screen_off()
        app.screen_on()
        app.screen_off()
        self.dispatcher.run_pending()
        advance(self.dispatcher, self.clock, 2.0)

        self.assertFalse(app.window_manager.visible)
        self.assertEqual(len(self.host.windows), 1)
        self.assertEqual(app.capture.state, CaptureState.IDLE)
        self.assertFalse(app.status.snapshot()["window_visible"])

    def test_screen_off_ignored_without_flag(self) -> None:
        app = self.make_app()
        app.start_components()
        self.dispatcher.run_pending()

        app.screen_off()
        self.dispatcher.run_pending()

        self.assertTrue(app.window_manager.visible)

    def test_capture_only_without_content_or_window(self) -> None:
        config = make_config(xibo_enabled=False)
        flags = replace(StartupFlags.from_config(config), overlay_auto_start=False)
        app = OverlayApp(
            config,
            flags,
            HeadlessWindowHost(config),
            self.backend,
            coordinator=self.dispatcher,
            capture_worker=self.dispatcher,
            runner=InlineRunner(self.dispatcher),
        )

        app.start_components()
        self.dispatcher.run_pending()

        self.assertIsNone(app.renderer)
        self.assertIsNone(app.window_manager)
        self.assertEqual(app.capture.state, CaptureState.STREAMING)
        target, _size = self.backend.sessions[0].started[0]
        self.assertTrue(target.headless)
        self.assertEqual(self.fake.calls, [])

    def test_stop_tears_everything_down(self) -> None:
        app = self.make_app()
        app.start_components()
        self.dispatcher.run_pending()

        app.stop()

        self.assertEqual(app.capture.state, CaptureState.STOPPED)
        self.assertEqual(self.backend.sessions[0].closes, 1)
        self.assertFalse(app.window_manager.visible)
        self.assertEqual(app.scheduler.layout.status, LayoutStatus.PENDING)
        self.assertFalse(app.status.snapshot()["window_visible"])


if __name__ == "__main__":
    unittest.main()
