import threading
import unittest

from fakes import (
    FakeCaptureBackend,
    FakeSession,
    advance,
    hdmi_device,
    make_config,
    make_dispatcher,
    webcam_device,
)
from hdmi_overlay import (
    DEVICE_ERROR_DEVICE,
    CaptureDeviceController,
    CaptureState,
    DeviceEvent,
    RenderTarget,
    Size,
    SurfaceBroker,
    choose_optimal_size,
)


class ChooseOptimalSizeTests(unittest.TestCase):
    def test_exact_match_wins(self) -> None:
        choices = [(640, 480), (1920, 1080), (1280, 720)]

        self.assertEqual(choose_optimal_size(choices, (1920, 1080)), (1920, 1080))

    def test_smallest_with_matching_aspect_ratio(self) -> None:
        choices = [(640, 480), (1920, 1080), (1280, 720)]

        self.assertEqual(choose_optimal_size(choices, (1600, 900)), (1280, 720))

    def test_largest_when_no_aspect_ratio_matches(self) -> None:
        choices = [(640, 480), (800, 600), (1024, 768)]

        self.assertEqual(choose_optimal_size(choices, (1920, 1080)), (1024, 768))

    def test_empty_choices_keep_requested_size(self) -> None:
        with self.assertLogs(level="ERROR"):
            size = choose_optimal_size([], (1920, 1080))

        self.assertEqual(size, Size(1920, 1080))


class CaptureControllerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.dispatcher, self.clock = make_dispatcher()
        self.broker = SurfaceBroker()
        self.events = []

    def make_controller(self, backend, lock=None, **overrides) -> CaptureDeviceController:
        controller = CaptureDeviceController(
            make_config(**overrides),
            backend,
            self.broker,
            self.dispatcher,
            self.dispatcher,
            device_lock=lock,
        )
        controller.on_capture_started = lambda: self.events.append("started")
        controller.on_capture_stopped = lambda: self.events.append("stopped")
        controller.on_capture_error = lambda message, fatal: self.events.append(("error", fatal))
        return controller

    def test_prefers_external_source_and_negotiates_size(self) -> None:
        backend = FakeCaptureBackend(devices=[webcam_device(), hdmi_device()])
        controller = self.make_controller(backend, hdmi_width=1600, hdmi_height=900)

        controller.start()
        self.dispatcher.run_pending()

        self.assertEqual(backend.opened, ["/dev/video2"])
        self.assertEqual(controller.state, CaptureState.STREAMING)
        self.assertEqual(controller.negotiated_size, Size(1280, 720))
        target, size = backend.sessions[0].started[0]
        self.assertTrue(target.headless)
        self.assertEqual(size, Size(1280, 720))
        self.assertEqual(self.events, ["started"])

    def test_falls_back_to_configured_device(self) -> None:
        backend = FakeCaptureBackend(devices=[webcam_device("/dev/video0"), webcam_device("/dev/video4")])
        controller = self.make_controller(backend, hdmi_camera_id="/dev/video4")

        controller.start()
        self.dispatcher.run_pending()

        self.assertEqual(backend.opened, ["/dev/video4"])
        self.assertEqual(controller.state, CaptureState.STREAMING)

    def test_no_device_is_fatal(self) -> None:
        backend = FakeCaptureBackend(devices=[])
        controller = self.make_controller(backend, hdmi_camera_id="")

        controller.start()
        with self.assertLogs(level="ERROR"):
            self.dispatcher.run_pending()

        self.assertEqual(controller.state, CaptureState.STOPPED)
        self.assertEqual(backend.opened, [])
        self.assertEqual(self.events, [("error", True), "stopped"])

    def test_retries_are_bounded(self) -> None:
        lock = threading.Lock()
        backend = FakeCaptureBackend(devices=[hdmi_device()], error_code=DEVICE_ERROR_DEVICE)
        controller = self.make_controller(backend, lock=lock)

        controller.start()
        self.dispatcher.run_pending()
        for _ in range(5):
            advance(self.dispatcher, self.clock, 3.0)

        self.assertEqual(len(backend.opened), 4)
        self.assertEqual(controller.state, CaptureState.STOPPED)
        self.assertEqual(
            self.events,
            [("error", False), ("error", False), ("error", False), ("error", True), "stopped"],
        )
        self.assertIn("giving up", controller.last_error)
        self.assertTrue(lock.acquire(blocking=False))
        lock.release()

    def test_streaming_resets_retry_counter(self) -> None:
        backend = FakeCaptureBackend(devices=[hdmi_device()], error_code=DEVICE_ERROR_DEVICE)
        controller = self.make_controller(backend)

        controller.start()
        self.dispatcher.run_pending()
        advance(self.dispatcher, self.clock, 3.0)
        self.assertEqual(controller.retry_count, 2)

        backend.error_code = None
        advance(self.dispatcher, self.clock, 3.0)

        self.assertEqual(controller.state, CaptureState.STREAMING)
        self.assertEqual(controller.retry_count, 0)

    def test_disconnect_closes_session_and_reopens(self) -> None:
        backend = FakeCaptureBackend(devices=[hdmi_device()])
        controller = self.make_controller(backend)
        controller.start()
        self.dispatcher.run_pending()

        backend.notify(DeviceEvent.DISCONNECTED)
        self.dispatcher.run_pending()

        self.assertEqual(controller.state, CaptureState.DISCONNECTED)
        self.assertEqual(backend.sessions[0].closes, 1)

        advance(self.dispatcher, self.clock, 3.0)

        self.assertEqual(controller.state, CaptureState.STREAMING)
        self.assertEqual(len(backend.opened), 2)

    def test_busy_device_is_retried(self) -> None:
        lock = threading.Lock()
        lock.acquire()
        backend = FakeCaptureBackend(devices=[hdmi_device()])
        controller = self.make_controller(backend, lock=lock, capture_lock_timeout_sec=0.01)

        controller.start()
        self.dispatcher.run_pending()

        self.assertEqual(controller.state, CaptureState.ERROR)
        self.assertEqual(controller.retry_count, 1)
        self.assertEqual(backend.opened, [])
        self.assertIn("lock", controller.last_error)

        lock.release()
        advance(self.dispatcher, self.clock, 3.0)

        self.assertEqual(controller.state, CaptureState.STREAMING)

    def test_close_is_idempotent(self) -> None:
        lock = threading.Lock()
        backend = FakeCaptureBackend(devices=[hdmi_device()])
        controller = self.make_controller(backend, lock=lock)
        controller.start()
        self.dispatcher.run_pending()

        controller.close()
        controller.close()
        self.dispatcher.run_pending()

        session = backend.sessions[0]
        self.assertEqual((session.stops, session.closes), (1, 1))
        self.assertEqual(self.events, ["started", "stopped"])
        self.assertTrue(lock.acquire(blocking=False))
        lock.release()

    def test_late_open_after_close_is_discarded(self) -> None:
        backend = FakeCaptureBackend(devices=[hdmi_device()])
        controller = self.make_controller(backend)
        controller.start()
        self.dispatcher.run_pending()
        notify = backend.notify
        controller.close()

        stale = FakeSession()
        notify(DeviceEvent.OPENED, session=stale)
        self.dispatcher.run_pending()

        self.assertEqual(controller.state, CaptureState.STOPPED)
        self.assertEqual(stale.closes, 1)
        self.assertEqual(stale.started, [])

    def test_start_resets_state_on_capture_worker(self) -> None:
        self.broker.attach_provider()
        worker, _clock = make_dispatcher()
        controller = CaptureDeviceController(
            make_config(),
            FakeCaptureBackend(devices=[hdmi_device()]),
            self.broker,
            worker,
            self.dispatcher,
        )
        controller.state = CaptureState.ERROR
        controller.retry_count = 3
        controller.last_error = "Camera device error"

        controller.start()

        self.assertEqual(controller.state, CaptureState.ERROR)
        self.assertEqual(controller.retry_count, 3)

        worker.run_pending()

        self.assertEqual(controller.state, CaptureState.IDLE)
        self.assertEqual(controller.retry_count, 0)
        self.assertIsNone(controller.last_error)

    def test_target_loss_closes_and_rebinds(self) -> None:
        self.broker.attach_provider()
        backend = FakeCaptureBackend(devices=[hdmi_device()])
        controller = self.make_controller(backend)
        controller.start()
        self.dispatcher.run_pending()
        self.assertEqual(backend.opened, [])

        self.broker.provide_target(RenderTarget("window-1", window_id=11))
        self.dispatcher.run_pending()
        self.assertEqual(controller.state, CaptureState.STREAMING)

        self.broker.revoke_target()
        self.dispatcher.run_pending()
        self.assertEqual(controller.state, CaptureState.IDLE)
        self.assertEqual(backend.sessions[0].closes, 1)

        self.broker.provide_target(RenderTarget("window-2", window_id=12))
        self.dispatcher.run_pending()

        self.assertEqual(controller.state, CaptureState.STREAMING)
        target, _size = backend.sessions[1].started[0]
        self.assertEqual(target.target_id, "window-2")


if __name__ == "__main__":
    unittest.main()
