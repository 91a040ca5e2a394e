#!/usr/bin/env python3
import argparse
import enum
import functools
import hashlib
import heapq
import itertools
import json
import logging
import os
import re
import signal
import socket
import subprocess
import sys
import threading
import time
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from logging.handlers import RotatingFileHandler
from typing import Callable, Deque, Dict, List, NamedTuple, Optional, Sequence, Tuple
from urllib.parse import quote, urlparse

try:
    import requests
except Exception:  # pragma: no cover - handled at runtime
    requests = None


__version__ = "1.0.0"

CLIENT_TYPE = "linux"
CLIENT_CODE = 1

DEFAULT_CONFIG = {
    "start_on_boot": True,
    "debug_logging": False,
    "hdmi_auto_start": True,
    "hdmi_camera_id": "/dev/video0",
    "hdmi_width": 1920,
    "hdmi_height": 1080,
    "capture_retry_attempts": 3,
    "capture_retry_delay_sec": 3.0,
    "capture_lock_timeout_sec": 2.5,
    "v4l2_ctl_path": "v4l2-ctl",
    "mpv_path": "mpv",
    "hwdec": "auto",
    "low_resource_mode": False,
    "rotation_deg": 0,
    "overlay_auto_start": True,
    "use_fullscreen_overlay": True,
    "overlay_offset_x": 0,
    "overlay_offset_y": 0,
    "overlay_width": 0,
    "overlay_height": 0,
    "overlay_opacity": None,
    "display_width": 1920,
    "display_height": 1080,
    "keep_screen_on": True,
    "hide_on_screen_off": False,
    "xibo_enabled": True,
    "xibo_cms_url": "",
    "xibo_client_id": "",
    "xibo_client_secret": "",
    "xibo_username": "",
    "xibo_password": "",
    "xibo_server_key": "",
    "xibo_hardware_key": "",
    "display_name": "HDMI Overlay Display",
    "cms_allow_self_signed": False,
    "request_timeout_sec": 30,
    "token_safety_margin_sec": 60,
    "registration_retry_sec": 30,
    "status_interval_sec": 60,
    "schedule_interval_sec": 300,
    "content_ready_timeout_sec": 30,
    "content_retry_attempts": 3,
    "content_retry_delay_sec": 5,
    "crossfade_duration_sec": 1.0,
    "crossfade_step_sec": 0.05,
    "fallback_message": "Content temporarily unavailable",
    "connectivity_interval_sec": 30,
    "state_dir": "./state",
    "log_file": "",
    "log_max_bytes": 5_000_000,
    "log_backup_count": 3,
    "status_file": "",
    "status_file_interval_sec": 5,
}

STATE_FILENAME = "overlay_state.json"

MAX_RETRY_ATTEMPTS = 3
RETRY_DELAY_SEC = 3.0
DEVICE_LOCK_TIMEOUT_SEC = 2.5
ASPECT_RATIO_TOLERANCE = 0.1
TOKEN_SAFETY_MARGIN_SEC = 60
WINDOW_RECOVERY_DELAY_SEC = 5.0
WINDOW_RECOVERY_ATTEMPTS = 3
SCREEN_ON_SHOW_DELAY_SEC = 1.0

DEVICE_ERROR_IN_USE = 1
DEVICE_ERROR_MAX_IN_USE = 2
DEVICE_ERROR_DISABLED = 3
DEVICE_ERROR_DEVICE = 4
DEVICE_ERROR_SERVICE = 5

DEVICE_ERROR_MESSAGES = {
    DEVICE_ERROR_IN_USE: "Capture device is already in use",
    DEVICE_ERROR_MAX_IN_USE: "Maximum number of capture devices are already open",
    DEVICE_ERROR_DISABLED: "Capture device is disabled",
    DEVICE_ERROR_DEVICE: "Capture device error",
    DEVICE_ERROR_SERVICE: "Capture service error",
}


def device_error_message(code: Optional[int]) -> str:
    return DEVICE_ERROR_MESSAGES.get(code, f"Unknown capture error: {code}")


class OverlayError(Exception):
    pass


class DeviceBusy(OverlayError):
    pass


class NoDeviceAvailable(OverlayError):
    pass


class DeviceError(OverlayError):
    def __init__(self, code: int, message: str = "") -> None:
        self.code = code
        super().__init__(message or device_error_message(code))


class SurfaceUnavailable(OverlayError):
    pass


class AuthFailureKind(str, enum.Enum):
    NETWORK = "network"
    CERTIFICATE_TRUST = "certificate_trust"
    REJECTED = "rejected"


class AuthFailed(OverlayError):
    def __init__(self, kind: AuthFailureKind, reason: str) -> None:
        self.kind = kind
        self.reason = reason
        super().__init__(reason)


class RegistrationFailed(OverlayError):
    pass


class ContentLoadFailed(OverlayError):
    def __init__(self, content_id: str, reason: str) -> None:
        self.content_id = content_id
        self.reason = reason
        super().__init__(f"Failed to load layout {content_id}: {reason}")


class InvalidContentId(OverlayError, ValueError):
    pass


def load_config(path: str) -> Dict:
    abs_path = os.path.abspath(path)
    if not os.path.exists(abs_path):
        raise FileNotFoundError(f"Config not found: {path}")
    with open(abs_path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    cfg = dict(DEFAULT_CONFIG)
    cfg.update(data)
    config_dir = os.path.dirname(abs_path)
    for key in ("state_dir", "log_file", "status_file"):
        value = cfg.get(key)
        if isinstance(value, str) and value:
            cfg[key] = resolve_path_from_base(config_dir, value)
    return cfg


def resolve_path_from_base(base_dir: str, value: str) -> str:
    if not value:
        return value
    if os.path.isabs(value):
        return os.path.normpath(value)
    return os.path.normpath(os.path.join(base_dir, value))


def load_json_file(path: str) -> Optional[Dict]:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except FileNotFoundError:
        return None
    except Exception as exc:
        logging.warning("Failed to read state file %s: %s", path, exc)
        return None


def write_json_file(path: str, data: Dict, ensure_ascii: bool = True) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=2, ensure_ascii=ensure_ascii)
    os.replace(tmp_path, path)


def write_config(path: str, cfg: Dict) -> None:
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as fh:
        json.dump(cfg, fh, indent=2, ensure_ascii=False)
    os.replace(tmp_path, path)


def setup_logging(cfg: Dict) -> None:
    level = logging.DEBUG if cfg.get("debug_logging") else logging.INFO
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    log_file = cfg.get("log_file")
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_file,
                maxBytes=int(cfg.get("log_max_bytes") or 0),
                backupCount=int(cfg.get("log_backup_count") or 0),
            )
        )
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=handlers,
    )


def iso_now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def iso_from_ts(timestamp: float) -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(timestamp))


def sha1_hex(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8"), usedforsecurity=False).hexdigest()


def mask_token(url: str) -> str:
    return re.sub(r"token=[^&]*", "token=XXXXX", url)


@dataclass(frozen=True)
class TokenRecord:
    access_token: str
    refresh_token: Optional[str]
    expiry: float

    def is_valid(self, now: Optional[float] = None, margin: float = TOKEN_SAFETY_MARGIN_SEC) -> bool:
        if not self.access_token:
            return False
        if now is None:
            now = time.time()
        return now < self.expiry - max(margin, TOKEN_SAFETY_MARGIN_SEC)

    def to_dict(self) -> Dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expiry": self.expiry,
        }

    @classmethod
    def from_dict(cls, data: object) -> Optional["TokenRecord"]:
        if not isinstance(data, dict) or not data.get("access_token"):
            return None
        try:
            expiry = float(data.get("expiry") or 0)
        except (TypeError, ValueError):
            expiry = 0.0
        refresh = data.get("refresh_token")
        return cls(str(data["access_token"]), str(refresh) if refresh else None, expiry)


class ConfigProvider:
    def __init__(self, cfg: Dict, config_path: Optional[str] = None) -> None:
        self._lock = threading.Lock()
        self._cfg = dict(cfg)
        self._config_path = config_path
        state_dir = self._cfg.get("state_dir")
        self._state_path = os.path.join(state_dir, STATE_FILENAME) if state_dir else None
        self._state: Dict = {}
        if self._state_path:
            self._state = load_json_file(self._state_path) or {}

    def snapshot(self) -> Dict:
        with self._lock:
            return dict(self._cfg)

    def get(self, key: str, default: object = None) -> object:
        with self._lock:
            value = self._cfg.get(key)
        return default if value is None else value

    def get_str(self, key: str, default: str = "") -> str:
        value = self.get(key)
        if value is None:
            return default
        return str(value).strip()

    def get_int(self, key: str, default: int = 0) -> int:
        value = self.get(key, default)
        try:
            return int(value)
        except (TypeError, ValueError):
            logging.warning("Invalid integer for %s: %r", key, value)
            return default

    def get_float(self, key: str, default: float = 0.0) -> float:
        value = self.get(key, default)
        try:
            return float(value)
        except (TypeError, ValueError):
            logging.warning("Invalid number for %s: %r", key, value)
            return default

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get(key, default)
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)

    def set(self, key: str, value: object) -> None:
        with self._lock:
            self._cfg[key] = value
            if self._config_path:
                write_config(self._config_path, self._cfg)

    def get_state(self, key: str, default: object = None) -> object:
        with self._lock:
            value = self._state.get(key)
        return default if value is None else value

    def set_state(self, **values: object) -> None:
        with self._lock:
            self._state.update(values)
            if self._state_path:
                write_json_file(self._state_path, self._state)

    def load_token(self) -> Optional[TokenRecord]:
        return TokenRecord.from_dict(self.get_state("token"))

    def save_token(self, record: Optional[TokenRecord]) -> None:
        self.set_state(token=record.to_dict() if record is not None else None)

    def hardware_key(self) -> str:
        configured = self.get_str("xibo_hardware_key")
        if configured:
            return configured
        cached = self.get_state("hardware_key")
        if isinstance(cached, str) and cached:
            return cached
        generated = sha1_hex(f"{socket.gethostname()}-{uuid.getnode():012x}")
        self.set_state(hardware_key=generated)
        return generated


@dataclass(frozen=True)
class StartupFlags:
    start_on_boot: bool
    xibo_enabled: bool
    overlay_auto_start: bool
    hdmi_auto_start: bool
    use_fullscreen_overlay: bool
    keep_screen_on: bool
    hide_on_screen_off: bool

    @classmethod
    def from_config(cls, config: ConfigProvider) -> "StartupFlags":
        return cls(
            start_on_boot=config.get_bool("start_on_boot", True),
            xibo_enabled=config.get_bool("xibo_enabled", True),
            overlay_auto_start=config.get_bool("overlay_auto_start", True),
            hdmi_auto_start=config.get_bool("hdmi_auto_start", True),
            use_fullscreen_overlay=config.get_bool("use_fullscreen_overlay", True),
            keep_screen_on=config.get_bool("keep_screen_on", True),
            hide_on_screen_off=config.get_bool("hide_on_screen_off", False),
        )


class TimerHandle:
    __slots__ = ("due", "seq", "callback", "args", "cancelled")

    def __init__(self, due: float, seq: int, callback: Callable, args: tuple) -> None:
        self.due = due
        self.seq = seq
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def __lt__(self, other: "TimerHandle") -> bool:
        return (self.due, self.seq) < (other.due, other.seq)


class Dispatcher:
    """Single-consumer execution context.

    Callbacks posted from any thread run one at a time, in order, on the
    dispatcher's own thread. Timers are kept in a heap against ``clock`` and
    run once due. ``run_pending`` drains everything that is ready without a
    thread, which is how tests drive it with a manual clock.
    """

    def __init__(self, name: str, clock: Callable[[], float] = time.monotonic) -> None:
        self.name = name
        self._clock = clock
        self._cond = threading.Condition()
        self._ready: Deque[Tuple[Callable, tuple]] = deque()
        self._timers: List[TimerHandle] = []
        self._seq = itertools.count()
        self._thread: Optional[threading.Thread] = None
        self._stopping = False

    def now(self) -> float:
        return self._clock()

    def post(self, callback: Callable, *args: object) -> None:
        with self._cond:
            if self._stopping:
                return
            self._ready.append((callback, args))
            self._cond.notify()

    def call_later(self, delay: float, callback: Callable, *args: object) -> TimerHandle:
        handle = TimerHandle(self._clock() + max(float(delay), 0.0), next(self._seq), callback, args)
        with self._cond:
            if self._stopping:
                handle.cancel()
                return handle
            heapq.heappush(self._timers, handle)
            self._cond.notify()
        return handle

    def call_and_wait(self, callback: Callable, *args: object, timeout: float = 5.0) -> None:
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            callback(*args)
            return
        done = threading.Event()

        def _run() -> None:
            try:
                callback(*args)
            finally:
                done.set()

        self.post(_run)
        if not done.wait(timeout):
            logging.warning("%s: timed out waiting for %s", self.name, getattr(callback, "__name__", callback))

    def _next_timeout(self) -> Optional[float]:
        while self._timers and self._timers[0].cancelled:
            heapq.heappop(self._timers)
        if not self._timers:
            return None
        return max(self._timers[0].due - self._clock(), 0.0)

    def _next_item(self) -> Optional[Tuple[Callable, tuple]]:
        if self._ready:
            return self._ready.popleft()
        timeout = self._next_timeout()
        if timeout is not None and timeout <= 0:
            handle = heapq.heappop(self._timers)
            return handle.callback, handle.args
        return None

    def run_pending(self) -> int:
        ran = 0
        while True:
            with self._cond:
                if self._stopping:
                    return ran
                item = self._next_item()
            if item is None:
                return ran
            callback, args = item
            try:
                callback(*args)
            except Exception:
                logging.exception("%s: callback %s failed", self.name, getattr(callback, "__name__", callback))
            ran += 1

    def _has_work(self) -> bool:
        if self._ready:
            return True
        timeout = self._next_timeout()
        return timeout is not None and timeout <= 0

    def _run(self) -> None:
        while True:
            with self._cond:
                while not self._stopping and not self._has_work():
                    self._cond.wait(timeout=self._next_timeout())
                if self._stopping:
                    return
            self.run_pending()

    def start(self) -> None:
        if self._thread is not None:
            return
        with self._cond:
            self._stopping = False
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        with self._cond:
            self._stopping = True
            self._ready.clear()
            for handle in self._timers:
                handle.cancel()
            self._timers.clear()
            self._cond.notify_all()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)


class NetworkRunner:
    """Runs blocking network calls off the coordination context.

    The result, or the exception raised, is delivered as
    ``on_done(result, error)`` through ``dispatcher``.
    """

    def __init__(self, dispatcher: Dispatcher, max_workers: int = 4) -> None:
        self._dispatcher = dispatcher
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="net")
        self._closed = False

    def run(self, fn: Callable[[], object], on_done: Callable[[object, Optional[Exception]], None]) -> None:
        if self._closed:
            return

        def _task() -> None:
            try:
                result = fn()
            except Exception as exc:
                self._dispatcher.post(on_done, None, exc)
                return
            self._dispatcher.post(on_done, result, None)

        self._executor.submit(_task)

    def shutdown(self) -> None:
        self._closed = True
        self._executor.shutdown(wait=False, cancel_futures=True)


class Size(NamedTuple):
    width: int
    height: int

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height if self.height else 0.0

    def __str__(self) -> str:
        return f"{self.width}x{self.height}"


def choose_optimal_size(choices: Sequence[Tuple[int, int]], requested: Tuple[int, int]) -> Size:
    requested = Size(*requested)
    sizes = [Size(*choice) for choice in choices]
    if not sizes:
        logging.error("No capture sizes available; keeping requested %s", requested)
        return requested
    for size in sizes:
        if size == requested:
            return size
    target_ratio = requested.aspect_ratio
    candidates = [size for size in sizes if abs(size.aspect_ratio - target_ratio) < ASPECT_RATIO_TOLERANCE]
    if candidates:
        return min(candidates, key=lambda size: size.area)
    return max(sizes, key=lambda size: size.area)


@dataclass(frozen=True)
class CaptureDeviceInfo:
    device_id: str
    name: str = ""
    sizes: Tuple[Size, ...] = ()
    external: bool = False


@dataclass(frozen=True)
class RenderTarget:
    target_id: str
    window_id: Optional[int] = None
    size: Optional[Size] = None
    headless: bool = False


class CaptureState(str, enum.Enum):
    IDLE = "idle"
    OPENING = "opening"
    CONFIGURING = "configuring"
    STREAMING = "streaming"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    STOPPED = "stopped"


class DeviceEvent(str, enum.Enum):
    OPENED = "opened"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class DeviceSession:
    def start_stream(self, target: RenderTarget, size: Size) -> None:
        raise NotImplementedError

    def stop_stream(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class CaptureBackend:
    """Host access to capture devices.

    ``open_device`` reports back through ``notify(event, session=None,
    code=None)``, from any thread: ``DeviceEvent.OPENED`` with a
    :class:`DeviceSession`, ``DeviceEvent.ERROR`` with an error code, or
    later ``DeviceEvent.DISCONNECTED`` when the source goes away.
    """

    def enumerate_devices(self) -> List[CaptureDeviceInfo]:
        raise NotImplementedError

    def open_device(self, device_id: str, notify: Callable[..., None]) -> None:
        raise NotImplementedError


EXTERNAL_SOURCE_HINTS = ("hdmi", "lt6911", "capture", "cam link", "ms2109", "usb video")


def is_external_source(name: str) -> bool:
    lowered = name.lower()
    if "(usb-" in lowered:
        return True
    return any(hint in lowered for hint in EXTERNAL_SOURCE_HINTS)


def parse_v4l2_devices(text: str) -> List[Tuple[str, str]]:
    devices: List[Tuple[str, str]] = []
    name = ""
    for line in text.splitlines():
        if not line.strip():
            continue
        if not line[0].isspace():
            name = line.strip().rstrip(":")
            continue
        node = line.strip()
        if node.startswith("/dev/video"):
            devices.append((name, node))
    return devices


_V4L2_SIZE_RE = re.compile(r"Size:\s+\w+\s+(\d+)x(\d+)")


def parse_v4l2_sizes(text: str) -> List[Size]:
    sizes: List[Size] = []
    for match in _V4L2_SIZE_RE.finditer(text):
        size = Size(int(match.group(1)), int(match.group(2)))
        if size not in sizes:
            sizes.append(size)
    return sizes


def build_capture_args(cfg: Dict, device_id: str, size: Size, target: RenderTarget) -> List[str]:
    args = [
        cfg.get("mpv_path") or "mpv",
        f"av://v4l2:{device_id}",
        "--no-terminal",
        "--no-osc",
        "--osd-level=0",
        "--no-input-default-bindings",
        "--input-vo-keyboard=no",
        "--profile=low-latency",
        "--untimed",
        "--cache=no",
        f"--demuxer-lavf-o=video_size={size.width}x{size.height}",
    ]
    if target.window_id is not None:
        args.append(f"--wid={target.window_id}")
    else:
        args += ["--fs", "--force-window=yes"]
    if cfg.get("low_resource_mode"):
        args += [
            "--vd-lavc-threads=1",
            "--scale=bilinear",
            "--dscale=bilinear",
            "--cscale=bilinear",
            "--interpolation=no",
            "--framedrop=decoder+vo",
        ]
    if cfg.get("rotation_deg"):
        args.append(f"--video-rotate={int(cfg['rotation_deg'])}")
    if cfg.get("hwdec"):
        args.append(f"--hwdec={cfg['hwdec']}")
    return args


class MpvCaptureSession(DeviceSession):
    def __init__(self, cfg: Dict, device_id: str, notify: Callable[..., None]) -> None:
        self._cfg = cfg
        self._device_id = device_id
        self._notify = notify
        self._proc: Optional[subprocess.Popen] = None
        self._lock = threading.RLock()

    def start_stream(self, target: RenderTarget, size: Size) -> None:
        with self._lock:
            if self._proc is not None and self._proc.poll() is None:
                return
            args = build_capture_args(self._cfg, self._device_id, size, target)
            popen_kwargs = {
                "stdout": subprocess.DEVNULL,
                "stderr": subprocess.DEVNULL,
            }
            if os.name == "nt":
                popen_kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
            else:
                popen_kwargs["start_new_session"] = True
            try:
                proc = subprocess.Popen(args, **popen_kwargs)
            except OSError as exc:
                raise DeviceError(DEVICE_ERROR_SERVICE, f"Failed to start capture stream: {exc}") from exc
            self._proc = proc
        threading.Thread(target=self._watch, args=(proc,), daemon=True).start()

    def _watch(self, proc: subprocess.Popen) -> None:
        code = proc.wait()
        with self._lock:
            expected = proc is not self._proc
        if not expected:
            logging.warning("Capture stream for %s exited with code %s", self._device_id, code)
            self._notify(DeviceEvent.DISCONNECTED)

    def stop_stream(self) -> None:
        with self._lock:
            proc, self._proc = self._proc, None
        if proc is None or proc.poll() is not None:
            return
        try:
            if os.name != "nt" and proc.pid:
                os.killpg(proc.pid, signal.SIGTERM)
            else:
                proc.terminate()
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            if os.name != "nt" and proc.pid:
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()

    def close(self) -> None:
        self.stop_stream()


class V4L2CaptureBackend(CaptureBackend):
    def __init__(self, config: ConfigProvider) -> None:
        self._config = config

    def _run_ctl(self, args: List[str]) -> str:
        ctl = self._config.get_str("v4l2_ctl_path", "v4l2-ctl") or "v4l2-ctl"
        result = subprocess.run(
            [ctl, *args],
            capture_output=True,
            text=True,
            timeout=5,
            check=False,
        )
        if result.returncode != 0:
            raise DeviceError(DEVICE_ERROR_SERVICE, f"{ctl} {' '.join(args)} failed: {result.stderr.strip()}")
        return result.stdout

    def enumerate_devices(self) -> List[CaptureDeviceInfo]:
        try:
            listing = self._run_ctl(["--list-devices"])
        except (OSError, subprocess.SubprocessError, DeviceError) as exc:
            logging.warning("Failed to enumerate capture devices: %s", exc)
            return []
        devices: List[CaptureDeviceInfo] = []
        seen_names: set = set()
        for name, node in parse_v4l2_devices(listing):
            if name in seen_names:
                continue
            try:
                sizes = parse_v4l2_sizes(self._run_ctl(["-d", node, "--list-formats-ext"]))
            except (OSError, subprocess.SubprocessError, DeviceError) as exc:
                logging.warning("Failed to list formats for %s: %s", node, exc)
                continue
            if not sizes:
                continue
            seen_names.add(name)
            devices.append(CaptureDeviceInfo(node, name, tuple(sizes), is_external_source(name)))
        return devices

    def open_device(self, device_id: str, notify: Callable[..., None]) -> None:
        if not os.path.exists(device_id):
            notify(DeviceEvent.ERROR, code=DEVICE_ERROR_DEVICE)
            return
        if not os.access(device_id, os.R_OK | os.W_OK):
            notify(DeviceEvent.ERROR, code=DEVICE_ERROR_DISABLED)
            return
        notify(DeviceEvent.OPENED, session=MpvCaptureSession(self._config.snapshot(), device_id, notify))


class TargetRequest:
    PENDING = "pending"
    GRANTED = "granted"
    REVOKED = "revoked"
    CANCELLED = "cancelled"

    def __init__(
        self,
        broker: "SurfaceBroker",
        on_available: Callable[[RenderTarget], None],
        on_lost: Optional[Callable[[], None]],
    ) -> None:
        self._broker = broker
        self.on_available = on_available
        self.on_lost = on_lost
        self.state = self.PENDING
        self.target: Optional[RenderTarget] = None

    @property
    def available(self) -> bool:
        return self.state == self.GRANTED

    def cancel(self) -> None:
        self._broker._cancel(self)


class SurfaceBroker:
    """Hands the video render target from the window manager to capture.

    Requests are fulfilled immediately when a target exists and deferred
    otherwise. With no window manager attached a headless target is made
    so capture can run without a window.
    """

    def __init__(self) -> None:
        self._target: Optional[RenderTarget] = None
        self._requests: List[TargetRequest] = []
        self._provider_attached = False
        self._headless_seq = itertools.count(1)

    @property
    def has_provider(self) -> bool:
        return self._provider_attached

    @property
    def target(self) -> Optional[RenderTarget]:
        return self._target

    def attach_provider(self) -> None:
        self._provider_attached = True

    def detach_provider(self) -> None:
        self.revoke_target()
        self._provider_attached = False

    def request_target(
        self,
        on_available: Callable[[RenderTarget], None],
        on_lost: Optional[Callable[[], None]] = None,
    ) -> TargetRequest:
        request = TargetRequest(self, on_available, on_lost)
        self._requests.append(request)
        if self._target is None and not self._provider_attached:
            logging.info("No window manager attached; creating headless render target")
            self._target = RenderTarget(target_id=f"headless-{next(self._headless_seq)}", headless=True)
        if self._target is not None:
            self._grant(request, self._target)
        return request

    def provide_target(self, target: RenderTarget) -> None:
        self._target = target
        for request in list(self._requests):
            if request.state == TargetRequest.PENDING:
                self._grant(request, target)

    def revoke_target(self) -> None:
        if self._target is None:
            return
        logging.info("Render target %s revoked", self._target.target_id)
        self._target = None
        for request in list(self._requests):
            if request.state != TargetRequest.GRANTED:
                continue
            request.state = TargetRequest.REVOKED
            request.target = None
            self._requests.remove(request)
            if request.on_lost is not None:
                request.on_lost()

    def _grant(self, request: TargetRequest, target: RenderTarget) -> None:
        request.state = TargetRequest.GRANTED
        request.target = target
        request.on_available(target)

    def _cancel(self, request: TargetRequest) -> None:
        if request in self._requests:
            self._requests.remove(request)
        request.state = TargetRequest.CANCELLED
        request.target = None


class CaptureDeviceController:
    """Owns the capture device and its open/stream/retry state machine.

    Device operations and device events run on ``worker``; status callbacks
    are posted to ``coordinator``. The device lock is held from a successful
    acquire in ``open`` until the session is torn down.
    """

    def __init__(
        self,
        config: ConfigProvider,
        backend: CaptureBackend,
        broker: SurfaceBroker,
        worker: Dispatcher,
        coordinator: Dispatcher,
        device_lock: Optional[threading.Lock] = None,
    ) -> None:
        self._config = config
        self._backend = backend
        self._broker = broker
        self._worker = worker
        self._coord = coordinator
        self._device_lock = device_lock or threading.Lock()
        self.max_retry_attempts = config.get_int("capture_retry_attempts", MAX_RETRY_ATTEMPTS)
        self.retry_delay = config.get_float("capture_retry_delay_sec", RETRY_DELAY_SEC)
        self.lock_timeout = config.get_float("capture_lock_timeout_sec", DEVICE_LOCK_TIMEOUT_SEC)
        self.requested_size = Size(config.get_int("hdmi_width", 1920), config.get_int("hdmi_height", 1080))
        self.negotiated_size: Optional[Size] = None
        self.device: Optional[CaptureDeviceInfo] = None
        self.state = CaptureState.IDLE
        self.retry_count = 0
        self.last_error: Optional[str] = None
        self.on_capture_started: Optional[Callable[[], None]] = None
        self.on_capture_stopped: Optional[Callable[[], None]] = None
        self.on_capture_error: Optional[Callable[[str, bool], None]] = None
        self._device_selector: Optional[str] = None
        self._target: Optional[RenderTarget] = None
        self._target_request: Optional[TargetRequest] = None
        self._session: Optional[DeviceSession] = None
        self._lock_held = False
        self._retry_timer: Optional[TimerHandle] = None
        self._attempt = 0
        self._active = False

    def start(self) -> None:
        if self._active:
            return
        self._active = True
        self._worker.post(self._reset)
        self._request_target()

    def _reset(self) -> None:
        self.retry_count = 0
        self.last_error = None
        self._set_state(CaptureState.IDLE)

    def stop(self) -> None:
        self._coord.call_and_wait(self._cancel_target_request)
        self._worker.call_and_wait(self.close)

    def _request_target(self) -> None:
        if not self._active:
            return
        self._target_request = self._broker.request_target(self._on_target_available, self._on_target_lost)

    def _cancel_target_request(self) -> None:
        request, self._target_request = self._target_request, None
        if request is not None:
            request.cancel()

    def _on_target_available(self, target: RenderTarget) -> None:
        self._worker.post(self._bind_target, target)

    def _bind_target(self, target: RenderTarget) -> None:
        if not self._active:
            return
        self._target = target
        self.open()

    def _on_target_lost(self) -> None:
        self._target_request = None
        self._worker.post(self._handle_target_lost)

    def _handle_target_lost(self) -> None:
        self._target = None
        if not self._active:
            return
        logging.warning("Render target lost; closing capture session until a new target is available")
        self._cancel_retry()
        self._teardown_session()
        self._set_state(CaptureState.IDLE)
        self._emit(self.on_capture_stopped)
        self._coord.post(self._request_target)

    def select_device(self, selector: Optional[str] = None) -> CaptureDeviceInfo:
        try:
            devices = self._backend.enumerate_devices()
        except Exception as exc:
            logging.warning("Failed to enumerate capture devices: %s", exc)
            devices = []
        for device in devices:
            if device.external:
                logging.info("Found external capture source %s (%s)", device.device_id, device.name)
                return device
        configured = selector or self._config.get_str("hdmi_camera_id")
        if configured:
            for device in devices:
                if device.device_id == configured:
                    return device
            return CaptureDeviceInfo(device_id=configured)
        raise NoDeviceAvailable("No capture device available for HDMI input")

    def open(self, device_selector: Optional[str] = None, requested_size: Optional[Tuple[int, int]] = None) -> None:
        if device_selector is not None:
            self._device_selector = device_selector
        if requested_size is not None:
            self.requested_size = Size(*requested_size)
        self._retry_timer = None
        self._set_state(CaptureState.OPENING)
        try:
            device = self.select_device(self._device_selector)
        except NoDeviceAvailable as exc:
            self._fail_fatal(str(exc))
            return
        if not self._acquire_lock():
            busy = DeviceBusy(f"Timed out waiting to lock capture device {device.device_id}")
            self._handle_failure(CaptureState.ERROR, str(busy))
            return
        self.device = device
        self.negotiated_size = choose_optimal_size(device.sizes, self.requested_size)
        logging.info(
            "Opening capture device %s: requested %s, negotiated %s",
            device.device_id,
            self.requested_size,
            self.negotiated_size,
        )
        self._attempt += 1
        notify = functools.partial(self._post_device_event, self._attempt)
        try:
            self._backend.open_device(device.device_id, notify)
        except DeviceError as exc:
            self._handle_failure(CaptureState.ERROR, str(exc))
        except Exception as exc:
            self._handle_failure(CaptureState.ERROR, f"Cannot access the capture device: {exc}")

    def close(self) -> None:
        if self.state == CaptureState.STOPPED and self._session is None and not self._lock_held:
            return
        self._active = False
        self._cancel_retry()
        try:
            self._teardown_session()
        finally:
            self._set_state(CaptureState.STOPPED)
            logging.info("Capture stopped")
            self._emit(self.on_capture_stopped)

    def _acquire_lock(self) -> bool:
        if self._lock_held:
            return True
        if not self._device_lock.acquire(timeout=self.lock_timeout):
            return False
        self._lock_held = True
        return True

    def _post_device_event(
        self,
        attempt: int,
        event: DeviceEvent,
        session: Optional[DeviceSession] = None,
        code: Optional[int] = None,
    ) -> None:
        self._worker.post(self._on_device_event, attempt, event, session, code)

    def _on_device_event(
        self,
        attempt: int,
        event: DeviceEvent,
        session: Optional[DeviceSession],
        code: Optional[int],
    ) -> None:
        if attempt != self._attempt or not self._active:
            if session is not None and session is not self._session:
                try:
                    session.close()
                except Exception as exc:
                    logging.warning("Failed to close stale capture session: %s", exc)
            return
        if event == DeviceEvent.OPENED:
            self._session = session
            self._configure_and_stream()
        elif event == DeviceEvent.DISCONNECTED:
            self._handle_failure(CaptureState.DISCONNECTED, "Capture device disconnected")
        elif event == DeviceEvent.ERROR:
            self._handle_failure(CaptureState.ERROR, str(DeviceError(code or 0, device_error_message(code))))

    def _configure_and_stream(self) -> None:
        self._set_state(CaptureState.CONFIGURING)
        if self._target is None:
            self._handle_failure(CaptureState.ERROR, str(SurfaceUnavailable("Render target is not available")))
            return
        try:
            self._session.start_stream(self._target, self.negotiated_size or self.requested_size)
        except Exception as exc:
            self._handle_failure(CaptureState.ERROR, f"Failed to configure capture session: {exc}")
            return
        self.retry_count = 0
        self.last_error = None
        self._set_state(CaptureState.STREAMING)
        logging.info("Capture streaming from %s at %s", self.device.device_id if self.device else "?", self.negotiated_size)
        self._emit(self.on_capture_started)

    def _handle_failure(self, state: CaptureState, message: str) -> None:
        self.last_error = message
        self._teardown_session()
        if not self._active:
            return
        if self.retry_count >= self.max_retry_attempts:
            self._fail_fatal(f"{message}; giving up after {self.max_retry_attempts} retries")
            return
        self.retry_count += 1
        self._set_state(state)
        logging.warning(
            "%s; retrying in %.1fs (attempt %d/%d)",
            message,
            self.retry_delay,
            self.retry_count,
            self.max_retry_attempts,
        )
        self._emit(self.on_capture_error, message, False)
        self._retry_timer = self._worker.call_later(self.retry_delay, self._retry_open)

    def _retry_open(self) -> None:
        self._retry_timer = None
        if self._active and self._target is not None:
            self.open()

    def _fail_fatal(self, message: str) -> None:
        logging.error("Capture failed: %s", message)
        self.last_error = message
        self._emit(self.on_capture_error, message, True)
        self._coord.post(self._cancel_target_request)
        self.close()

    def _cancel_retry(self) -> None:
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None

    def _teardown_session(self) -> None:
        session, self._session = self._session, None
        self._attempt += 1
        try:
            if session is not None:
                try:
                    session.stop_stream()
                except Exception as exc:
                    logging.warning("Failed to stop capture stream: %s", exc)
                try:
                    session.close()
                except Exception as exc:
                    logging.warning("Failed to close capture device: %s", exc)
        finally:
            if self._lock_held:
                self._lock_held = False
                self._device_lock.release()

    def _set_state(self, state: CaptureState) -> None:
        if state != self.state:
            logging.debug("Capture state %s -> %s", self.state.value, state.value)
        self.state = state

    def _emit(self, callback: Optional[Callable], *args: object) -> None:
        if callback is not None:
            self._coord.post(callback, *args)


GRAVITY_TOP_LEFT = "top_left"
GRAVITY_TOP_RIGHT = "top_right"

WINDOW_FLAGS = ("not_focusable", "not_touch_modal", "always_on_top")


@dataclass(frozen=True)
class WindowGeometry:
    x: int
    y: int
    width: int
    height: int
    gravity: str = GRAVITY_TOP_LEFT
    opacity: float = 1.0


def compute_window_geometry(cfg: Dict, display_size: Tuple[int, int]) -> Tuple[WindowGeometry, Tuple[str, ...]]:
    display = Size(*display_size)
    content_enabled = bool(cfg.get("xibo_enabled", True))
    x = int(cfg.get("overlay_offset_x") or 0)
    y = int(cfg.get("overlay_offset_y") or 0)
    opacity = cfg.get("overlay_opacity")
    if opacity is None:
        opacity = 1.0 if content_enabled else 0.7
    opacity = min(max(float(opacity), 0.0), 1.0)
    if cfg.get("use_fullscreen_overlay", True):
        geometry = WindowGeometry(x, y, display.width, display.height, GRAVITY_TOP_LEFT, opacity)
    else:
        width = int(cfg.get("overlay_width") or 0)
        height = int(cfg.get("overlay_height") or 0)
        if width <= 0 or height <= 0:
            width = display.width // 3
            height = display.height // 4
        geometry = WindowGeometry(x, y, width, height, GRAVITY_TOP_RIGHT, opacity)
    flags = WINDOW_FLAGS + (("hardware_accelerated",) if content_enabled else ())
    return geometry, flags


class ContentSurface:
    """A drawable that renders remote content.

    ``load`` must eventually call ``on_ready()`` once the content signals it
    is ready, or ``on_error(reason)``; either may be called from any thread.
    """

    name = "surface"

    def load(self, url: str, on_ready: Callable[[], None], on_error: Callable[[str], None]) -> None:
        raise NotImplementedError

    def set_opacity(self, opacity: float) -> None:
        raise NotImplementedError

    def blank(self) -> None:
        raise NotImplementedError

    def show_message(self, text: str) -> None:
        raise NotImplementedError


class HostWindow:
    video_target: RenderTarget
    content_surfaces: Tuple[ContentSurface, ContentSurface]

    def update(self, geometry: WindowGeometry) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class WindowHost:
    def display_size(self) -> Size:
        raise NotImplementedError

    def create_window(self, geometry: WindowGeometry, flags: Tuple[str, ...]) -> HostWindow:
        raise NotImplementedError

    def set_keep_screen_on(self, enabled: bool) -> None:
        raise NotImplementedError


class HeadlessContentSurface(ContentSurface):
    def __init__(self, name: str, auto_ready: bool = True) -> None:
        self.name = name
        self.auto_ready = auto_ready
        self.url: Optional[str] = None
        self.message: Optional[str] = None
        self.opacity = 0.0
        self.loads = 0
        self._on_ready: Optional[Callable[[], None]] = None
        self._on_error: Optional[Callable[[str], None]] = None

    def load(self, url: str, on_ready: Callable[[], None], on_error: Callable[[str], None]) -> None:
        self.url = url
        self.message = None
        self.loads += 1
        self._on_ready = on_ready
        self._on_error = on_error
        logging.debug("Surface %s loading %s", self.name, mask_token(url))
        if self.auto_ready:
            self.signal_ready()

    def signal_ready(self) -> None:
        callback, self._on_ready = self._on_ready, None
        if callback is not None:
            callback()

    def signal_error(self, reason: str) -> None:
        callback, self._on_error = self._on_error, None
        if callback is not None:
            callback(reason)

    def set_opacity(self, opacity: float) -> None:
        self.opacity = opacity

    def blank(self) -> None:
        self.url = None
        self.message = None
        self._on_ready = None
        self._on_error = None

    def show_message(self, text: str) -> None:
        self.url = None
        self.message = text
        logging.info("Surface %s showing message: %s", self.name, text)


class HeadlessWindow(HostWindow):
    def __init__(self, index: int, geometry: WindowGeometry, flags: Tuple[str, ...]) -> None:
        self.geometry = geometry
        self.flags = flags
        self.closed = False
        self.video_target = RenderTarget(
            target_id=f"window-{index}",
            size=Size(geometry.width, geometry.height),
            headless=True,
        )
        self.content_surfaces = (
            HeadlessContentSurface(f"window-{index}-a"),
            HeadlessContentSurface(f"window-{index}-b"),
        )

    def update(self, geometry: WindowGeometry) -> None:
        self.geometry = geometry

    def close(self) -> None:
        self.closed = True


class HeadlessWindowHost(WindowHost):
    """Diagnostic host: windows exist only in memory."""

    def __init__(self, config: ConfigProvider) -> None:
        self._config = config
        self._seq = itertools.count(1)
        self.windows: List[HeadlessWindow] = []
        self.keep_screen_on = False

    def display_size(self) -> Size:
        return Size(self._config.get_int("display_width", 1920), self._config.get_int("display_height", 1080))

    def create_window(self, geometry: WindowGeometry, flags: Tuple[str, ...]) -> HostWindow:
        window = HeadlessWindow(next(self._seq), geometry, flags)
        self.windows.append(window)
        return window

    def set_keep_screen_on(self, enabled: bool) -> None:
        self.keep_screen_on = enabled


class OverlayWindowManager:
    def __init__(self, config: ConfigProvider, host: WindowHost, broker: SurfaceBroker) -> None:
        self._config = config
        self._host = host
        self._broker = broker
        self.window: Optional[HostWindow] = None
        self.geometry: Optional[WindowGeometry] = None
        self.visible = False
        self.on_window_shown: Optional[Callable[[HostWindow], None]] = None
        self._screen_held = False
        broker.attach_provider()

    def show(self) -> None:
        if self.visible:
            return
        cfg = self._config.snapshot()
        geometry, flags = compute_window_geometry(cfg, self._host.display_size())
        try:
            window = self._host.create_window(geometry, flags)
        except Exception as exc:
            raise SurfaceUnavailable(f"Cannot create overlay window: {exc}") from exc
        self.window = window
        self.geometry = geometry
        self.visible = True
        if cfg.get("keep_screen_on"):
            self._host.set_keep_screen_on(True)
            self._screen_held = True
        logging.info(
            "Overlay shown: %dx%d at (%d, %d) %s, opacity=%.2f",
            geometry.width,
            geometry.height,
            geometry.x,
            geometry.y,
            geometry.gravity,
            geometry.opacity,
        )
        self._broker.provide_target(window.video_target)
        if self.on_window_shown is not None:
            self.on_window_shown(window)

    def hide(self) -> None:
        if not self.visible:
            return
        window, self.window = self.window, None
        self.visible = False
        self._broker.revoke_target()
        try:
            window.close()
        except Exception as exc:
            logging.error("Error hiding overlay: %s", exc)
        if self._screen_held:
            self._screen_held = False
            self._host.set_keep_screen_on(False)
        logging.info("Overlay hidden")

    def update_position(self, x: int, y: int) -> None:
        if not self.visible or self.window is None or self.geometry is None:
            logging.debug("Overlay not visible; ignoring position update")
            return
        self.geometry = replace(self.geometry, x=int(x), y=int(y))
        try:
            self.window.update(self.geometry)
        except Exception as exc:
            logging.error("Error updating overlay position: %s", exc)
            return
        self._config.set("overlay_offset_x", int(x))
        self._config.set("overlay_offset_y", int(y))
        logging.info("Overlay position updated to x=%d, y=%d", x, y)

    def on_display_geometry_changed(self) -> None:
        if not self.visible:
            return
        logging.info("Display geometry changed; recreating overlay window")
        self.hide()
        self.show()


def normalize_cms_url(url: str) -> str:
    url = (url or "").strip()
    if not url:
        return ""
    if not url.startswith(("http://", "https://")):
        url = f"https://{url}"
        logging.warning("CMS URL protocol not specified, defaulting to HTTPS: %s", url)
    return url.rstrip("/")


def describe_auth_error(resp: object) -> str:
    message = f"Auth failed with code: {resp.status_code}"
    body = getattr(resp, "text", "") or ""
    try:
        payload = resp.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and any(key in payload for key in ("error", "message", "error_description")):
        detail = str(payload.get("error") or "")
        description = str(payload.get("error_description") or payload.get("message") or "")
        return f"{message} - {detail}: {description}"
    if body and len(body) < 100:
        return f"{message} - {body}"
    return message


class CmsClient:
    def __init__(self, config: ConfigProvider, clock: Callable[[], float] = time.time) -> None:
        self.base_url = normalize_cms_url(config.get_str("xibo_cms_url"))
        timeout = config.get_float("request_timeout_sec", 30)
        self.timeout = (timeout, timeout)
        self.verify = not config.get_bool("cms_allow_self_signed", False)
        if not self.verify:
            logging.warning("Certificate verification disabled for %s. NOT FOR PRODUCTION USE!", self.base_url)
        self._clock = clock

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _require_requests(self) -> None:
        if requests is None:
            raise RuntimeError("requests is required. Install with: pip install requests")

    def register(self, payload: Dict) -> str:
        self._require_requests()
        try:
            resp = requests.post(self._url("/register"), json=payload, timeout=self.timeout, verify=self.verify)
            resp.raise_for_status()
            data = resp.json()
        except (requests.exceptions.RequestException, ValueError) as exc:
            raise RegistrationFailed(str(exc)) from exc
        display_id = data.get("displayId") if isinstance(data, dict) else None
        if not display_id:
            raise RegistrationFailed("Registration response missing displayId")
        return str(display_id)

    def send_status(self, payload: Dict, hardware_key: str) -> None:
        self._require_requests()
        resp = requests.post(
            self._url("/status"),
            json=payload,
            headers={"X-Display-Key": hardware_key},
            timeout=self.timeout,
            verify=self.verify,
        )
        resp.raise_for_status()

    def fetch_schedule(self, display_id: str, hardware_key: str) -> Optional[str]:
        self._require_requests()
        resp = requests.get(
            self._url(f"/schedule/{quote(str(display_id), safe='')}"),
            headers={"X-Display-Key": hardware_key},
            timeout=self.timeout,
            verify=self.verify,
        )
        resp.raise_for_status()
        data = resp.json()
        layout_id = data.get("layoutId") if isinstance(data, dict) else None
        if layout_id is None:
            return None
        return str(layout_id).strip() or None

    def request_token(self, form: Dict[str, str]) -> TokenRecord:
        self._require_requests()
        try:
            resp = requests.post(self._url("/oauth/token"), data=form, timeout=self.timeout, verify=self.verify)
        except requests.exceptions.SSLError as exc:
            raise AuthFailed(
                AuthFailureKind.CERTIFICATE_TRUST,
                "SSL certificate error. The server's SSL certificate is not trusted.",
            ) from exc
        except requests.exceptions.RequestException as exc:
            if "CERTIFICATE_VERIFY_FAILED" in str(exc):
                raise AuthFailed(
                    AuthFailureKind.CERTIFICATE_TRUST,
                    "SSL certificate error. The server's SSL certificate is not trusted.",
                ) from exc
            raise AuthFailed(AuthFailureKind.NETWORK, f"Network error: {exc}") from exc
        if resp.status_code >= 400:
            raise AuthFailed(AuthFailureKind.REJECTED, describe_auth_error(resp))
        try:
            data = resp.json()
            access_token = str(data["access_token"])
            refresh_token = data.get("refresh_token")
            expires_in = float(data["expires_in"])
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise AuthFailed(AuthFailureKind.REJECTED, f"Failed to parse response: {exc}") from exc
        return TokenRecord(access_token, str(refresh_token) if refresh_token else None, self._clock() + expires_in)

    def layout_url(self, content_id: str, access_token: str) -> str:
        return (
            f"{self._url('/layout/render/')}{quote(str(content_id), safe='')}"
            f"?preview=1&token={quote(access_token, safe='')}"
        )


class AuthState(str, enum.Enum):
    NO_TOKEN = "no_token"
    AUTHENTICATING = "authenticating"
    VALID = "valid"
    REFRESHING = "refreshing"


class RemoteAuthSession:
    """Bearer token lifecycle against the CMS.

    ``ensure_valid(callback)`` calls ``callback(record, None)`` with a usable
    token or ``callback(None, AuthFailed)``. At most one exchange is in
    flight; callers arriving meanwhile are queued behind it. Must be used
    from the coordination context.
    """

    def __init__(
        self,
        config: ConfigProvider,
        client: CmsClient,
        runner: NetworkRunner,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._client = client
        self._runner = runner
        self._clock = clock
        self.margin = max(config.get_float("token_safety_margin_sec", TOKEN_SAFETY_MARGIN_SEC), TOKEN_SAFETY_MARGIN_SEC)
        self._token = config.load_token()
        self._waiters: List[Callable[[Optional[TokenRecord], Optional[AuthFailed]], None]] = []
        self.state = AuthState.VALID if self.has_valid_token() else AuthState.NO_TOKEN
        self.last_error: Optional[str] = None
        self.exchanges = 0

    @property
    def token(self) -> Optional[TokenRecord]:
        return self._token

    def has_valid_token(self) -> bool:
        return self._token is not None and self._token.is_valid(self._clock(), self.margin)

    def ensure_valid(self, callback: Callable[[Optional[TokenRecord], Optional[AuthFailed]], None]) -> None:
        if self.has_valid_token():
            callback(self._token, None)
            return
        self._waiters.append(callback)
        if self.state in (AuthState.AUTHENTICATING, AuthState.REFRESHING):
            return
        if self._token is not None and self._token.refresh_token:
            self._refresh(self._token.refresh_token)
        else:
            self._authenticate()

    def _authenticate(self) -> None:
        self.state = AuthState.AUTHENTICATING
        form = {
            "grant_type": "password",
            "client_id": self._config.get_str("xibo_client_id"),
            "client_secret": self._config.get_str("xibo_client_secret"),
            "username": self._config.get_str("xibo_username"),
            "password": self._config.get_str("xibo_password"),
        }
        logging.info("Authenticating with %s", self._client.base_url)
        self.exchanges += 1
        self._runner.run(lambda: self._client.request_token(form), self._on_authenticated)

    def _refresh(self, refresh_token: str) -> None:
        self.state = AuthState.REFRESHING
        form = {
            "grant_type": "refresh_token",
            "client_id": self._config.get_str("xibo_client_id"),
            "client_secret": self._config.get_str("xibo_client_secret"),
            "refresh_token": refresh_token,
        }
        logging.debug("Refreshing CMS token")
        self.exchanges += 1
        self._runner.run(lambda: self._client.request_token(form), self._on_refreshed)

    def _on_refreshed(self, record: Optional[TokenRecord], error: Optional[Exception]) -> None:
        if error is not None:
            logging.warning("Token refresh failed (%s); falling back to full authentication", error)
            self._token = None
            self._authenticate()
            return
        self._store(record)

    def _on_authenticated(self, record: Optional[TokenRecord], error: Optional[Exception]) -> None:
        if error is not None:
            if not isinstance(error, AuthFailed):
                error = AuthFailed(AuthFailureKind.NETWORK, str(error))
            logging.error("Authentication failed (%s): %s", error.kind.value, error.reason)
            self.state = AuthState.NO_TOKEN
            self.last_error = str(error)
            waiters, self._waiters = self._waiters, []
            for waiter in waiters:
                waiter(None, error)
            return
        self._store(record)

    def _store(self, record: TokenRecord) -> None:
        self._token = record
        self.state = AuthState.VALID
        self.last_error = None
        self._config.save_token(record)
        logging.info("CMS token valid until %s", iso_from_ts(record.expiry))
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            waiter(record, None)


class LayoutStatus(enum.IntEnum):
    RUNNING = 1
    PENDING = 2
    ERROR = 3


@dataclass
class LayoutState:
    current_content_id: Optional[str] = None
    status: LayoutStatus = LayoutStatus.RUNNING


def validate_content_id(content_id: object) -> str:
    if content_id is None:
        raise InvalidContentId("Content id must not be empty")
    value = str(content_id).strip()
    if not value:
        raise InvalidContentId("Content id must not be empty")
    return value


class RenderSurfacePair:
    def __init__(self, active: ContentSurface, standby: ContentSurface) -> None:
        self.active = active
        self.standby = standby

    def swap(self) -> None:
        self.active, self.standby = self.standby, self.active


class ContentRenderer:
    """Loads remote layouts into two alternating surfaces.

    A layout is loaded into the standby surface, and once it signals ready
    the standby fades in over the active one. Labels swap only after the
    fade completes. Failures are retried a bounded number of times per
    layout before a local fallback message is shown.
    """

    def __init__(
        self,
        config: ConfigProvider,
        auth: RemoteAuthSession,
        client: CmsClient,
        dispatcher: Dispatcher,
    ) -> None:
        self._auth = auth
        self._client = client
        self._dispatcher = dispatcher
        self.transition_duration = config.get_float("crossfade_duration_sec", 1.0)
        self.transition_step = max(config.get_float("crossfade_step_sec", 0.05), 0.01)
        self.ready_timeout = config.get_float("content_ready_timeout_sec", 30)
        self.max_attempts = max(config.get_int("content_retry_attempts", 3), 1)
        self.retry_delay = config.get_float("content_retry_delay_sec", 5)
        self.fallback_message = config.get_str("fallback_message") or DEFAULT_CONFIG["fallback_message"]
        self.surfaces: Optional[RenderSurfacePair] = None
        self.current_content_id: Optional[str] = None
        self.displayed_content_id: Optional[str] = None
        self.failures = 0
        self.transitioning = False
        self.last_error: Optional[str] = None
        self.on_layout_loaded: Optional[Callable[[str], None]] = None
        self.on_layout_load_failed: Optional[Callable[[ContentLoadFailed], None]] = None
        self.on_fatal: Optional[Callable[[str], None]] = None
        self._generation = 0
        self._ready_timer: Optional[TimerHandle] = None
        self._retry_timer: Optional[TimerHandle] = None
        self._fade_timer: Optional[TimerHandle] = None
        self._fade_started = 0.0
        self._queued: List[TimerHandle] = []
        self._stopped = False

    def start(self) -> None:
        self._stopped = False

    def stop(self) -> None:
        self._stopped = True
        self._abandon()
        for handle in self._queued:
            handle.cancel()
        self._queued = []

    def attach_surfaces(self, first: ContentSurface, second: ContentSurface) -> None:
        self._abandon()
        first.set_opacity(1.0)
        second.set_opacity(0.0)
        self.surfaces = RenderSurfacePair(first, second)
        self.displayed_content_id = None
        if self.current_content_id and not self._stopped:
            logging.info("Content surfaces attached; reloading layout %s", self.current_content_id)
            self._begin(self.current_content_id)

    def load(self, content_id: object) -> None:
        content_id = validate_content_id(content_id)
        if self._stopped:
            logging.debug("Renderer stopped; ignoring load of %s", content_id)
            return
        if self.transitioning:
            logging.info("Transition in progress; deferring layout %s", content_id)
            handle = self._dispatcher.call_later(self.transition_duration, self._run_queued, content_id)
            self._queued.append(handle)
            return
        if content_id != self.current_content_id:
            self.failures = 0
        self.current_content_id = content_id
        self._begin(content_id)

    def _run_queued(self, content_id: str) -> None:
        now = self._dispatcher.now()
        self._queued = [handle for handle in self._queued if handle.due > now and not handle.cancelled]
        self.load(content_id)

    def _begin(self, content_id: str) -> None:
        self._cancel_attempt_timers()
        self._generation += 1
        if self.surfaces is None:
            logging.info("No content surfaces yet; layout %s will load once the overlay is shown", content_id)
            return
        generation = self._generation
        self._auth.ensure_valid(functools.partial(self._on_token, generation, content_id))

    def _marshal(self, callback: Callable, *args: object) -> Callable:
        def _post(*extra: object) -> None:
            self._dispatcher.post(callback, *args, *extra)

        return _post

    def _on_token(
        self,
        generation: int,
        content_id: str,
        record: Optional[TokenRecord],
        error: Optional[AuthFailed],
    ) -> None:
        if generation != self._generation or self._stopped:
            return
        if error is not None or record is None:
            self._attempt_failed(content_id, f"Authentication failed: {error}")
            return
        url = self._client.layout_url(content_id, record.access_token)
        logging.info("Loading layout %s from %s", content_id, mask_token(url))
        standby = self.surfaces.standby
        self._ready_timer = self._dispatcher.call_later(
            self.ready_timeout, self._on_ready_timeout, generation, content_id
        )
        try:
            standby.set_opacity(0.0)
            standby.load(
                url,
                self._marshal(self._on_content_ready, generation, content_id),
                self._marshal(self._on_content_error, generation, content_id),
            )
        except Exception as exc:
            self._attempt_failed(content_id, f"Load error: {exc}")

    def _on_content_ready(self, generation: int, content_id: str) -> None:
        if generation != self._generation or self._stopped:
            return
        if self._ready_timer is not None:
            self._ready_timer.cancel()
            self._ready_timer = None
        self.transitioning = True
        self._fade_started = self._dispatcher.now()
        self._fade_step(generation, content_id)

    def _on_content_error(self, generation: int, content_id: str, reason: str) -> None:
        if generation != self._generation or self._stopped:
            return
        self._attempt_failed(content_id, f"Load error: {reason}")

    def _on_ready_timeout(self, generation: int, content_id: str) -> None:
        self._ready_timer = None
        if generation != self._generation or self._stopped:
            return
        self._attempt_failed(content_id, "Timed out waiting for content-ready signal")

    def _fade_step(self, generation: int, content_id: str) -> None:
        self._fade_timer = None
        if generation != self._generation:
            return
        elapsed = self._dispatcher.now() - self._fade_started
        if self.transition_duration <= 0:
            progress = 1.0
        else:
            progress = min(elapsed / self.transition_duration, 1.0)
        self.surfaces.standby.set_opacity(progress)
        self.surfaces.active.set_opacity(1.0 - progress)
        if progress >= 1.0:
            self._finish_transition(content_id)
            return
        self._fade_timer = self._dispatcher.call_later(self.transition_step, self._fade_step, generation, content_id)

    def _finish_transition(self, content_id: str) -> None:
        self.surfaces.swap()
        try:
            self.surfaces.standby.blank()
        except Exception as exc:
            logging.warning("Failed to blank standby surface: %s", exc)
        self.transitioning = False
        self.failures = 0
        self.last_error = None
        self.displayed_content_id = content_id
        logging.info("Layout %s loaded", content_id)
        if self.on_layout_loaded is not None:
            self.on_layout_loaded(content_id)

    def _attempt_failed(self, content_id: str, reason: str) -> None:
        self._cancel_attempt_timers()
        self._generation += 1
        self.failures += 1
        self.last_error = reason
        if self.transitioning:
            self.transitioning = False
            if self.surfaces is not None:
                self.surfaces.active.set_opacity(1.0)
                self.surfaces.standby.set_opacity(0.0)
        if self.surfaces is not None:
            try:
                self.surfaces.standby.blank()
            except Exception as exc:
                logging.warning("Failed to blank standby surface: %s", exc)
        if self.failures < self.max_attempts:
            logging.warning(
                "Layout %s failed (%s); retry %d/%d in %.0fs",
                content_id,
                reason,
                self.failures,
                self.max_attempts - 1,
                self.retry_delay,
            )
            self._retry_timer = self._dispatcher.call_later(self.retry_delay, self._retry, content_id)
            return
        logging.error("Max retries reached for layout %s: %s", content_id, reason)
        self.failures = 0
        error = ContentLoadFailed(content_id, reason)
        if self.on_layout_load_failed is not None:
            self.on_layout_load_failed(error)
        self._show_fallback()

    def _retry(self, content_id: str) -> None:
        self._retry_timer = None
        if self._stopped or content_id != self.current_content_id:
            return
        self._begin(content_id)

    def _show_fallback(self) -> None:
        if self.surfaces is None:
            self._fatal("No surface available for fallback content")
            return
        try:
            self.surfaces.active.show_message(self.fallback_message)
            self.surfaces.active.set_opacity(1.0)
            self.surfaces.standby.set_opacity(0.0)
        except Exception as exc:
            self._fatal(f"Fallback content could not be shown: {exc}")
            return
        self.displayed_content_id = None
        logging.warning("Showing fallback content")

    def _fatal(self, message: str) -> None:
        logging.error("Content rendering failed: %s", message)
        self.last_error = message
        if self.on_fatal is not None:
            self.on_fatal(message)

    def _cancel_attempt_timers(self) -> None:
        for name in ("_ready_timer", "_retry_timer", "_fade_timer"):
            handle = getattr(self, name)
            if handle is not None:
                handle.cancel()
                setattr(self, name, None)

    def _abandon(self) -> None:
        self._cancel_attempt_timers()
        self._generation += 1
        self.transitioning = False


class ContentScheduler:
    """Display registration, status heartbeat and schedule polling."""

    def __init__(
        self,
        config: ConfigProvider,
        client: CmsClient,
        runner: NetworkRunner,
        dispatcher: Dispatcher,
        renderer: ContentRenderer,
    ) -> None:
        self._config = config
        self._client = client
        self._runner = runner
        self._dispatcher = dispatcher
        self._renderer = renderer
        self.hardware_key = config.hardware_key()
        self.display_id: Optional[str] = config.get_state("display_id")
        self.registered = bool(config.get_state("is_registered")) and bool(self.display_id)
        self.layout = LayoutState(current_content_id=config.get_state("current_layout_id"))
        self.registration_retry = config.get_float("registration_retry_sec", 30)
        self.status_interval = config.get_float("status_interval_sec", 60)
        self.schedule_interval = config.get_float("schedule_interval_sec", 300)
        self.last_error: Optional[str] = None
        self.on_display_registered: Optional[Callable[[str], None]] = None
        self.on_display_error: Optional[Callable[[str], None]] = None
        self.on_layout_changed: Optional[Callable[[str], None]] = None
        self.on_status_changed: Optional[Callable[[LayoutStatus], None]] = None
        self._timers: Dict[str, TimerHandle] = {}
        self._running = False

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        if self.registered:
            self._start_loops()
        else:
            self._register()

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self.set_status(LayoutStatus.PENDING)
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def force_update(self) -> None:
        if self._running and self.registered:
            self._poll_schedule()

    def set_status(self, status: LayoutStatus) -> None:
        if self.layout.status == status:
            return
        self.layout.status = status
        if self.on_status_changed is not None:
            self.on_status_changed(status)

    def _register(self) -> None:
        self._timers.pop("register", None)
        payload = {
            "serverKey": self._config.get_str("xibo_server_key"),
            "hardwareKey": self.hardware_key,
            "displayName": self._config.get_str("display_name"),
            "clientType": CLIENT_TYPE,
            "clientVersion": __version__,
            "clientCode": CLIENT_CODE,
        }
        logging.info("Registering display %s", self.hardware_key)
        self._runner.run(lambda: self._client.register(payload), self._on_registered)

    def _on_registered(self, display_id: Optional[str], error: Optional[Exception]) -> None:
        if not self._running:
            return
        if error is not None:
            message = f"Registration failed: {error}"
            logging.error("%s; retrying in %.0fs", message, self.registration_retry)
            self.last_error = message
            self.set_status(LayoutStatus.ERROR)
            if self.on_display_error is not None:
                self.on_display_error(message)
            self._timers["register"] = self._dispatcher.call_later(self.registration_retry, self._register)
            return
        self.display_id = display_id
        self.registered = True
        self.last_error = None
        self._config.set_state(display_id=display_id, is_registered=True)
        self.set_status(LayoutStatus.RUNNING)
        logging.info("Display registered with id %s", display_id)
        if self.on_display_registered is not None:
            self.on_display_registered(display_id)
        self._start_loops()

    def _start_loops(self) -> None:
        self._send_status()
        self._check_schedule()

    def _send_status(self) -> None:
        self._timers["status"] = self._dispatcher.call_later(self.status_interval, self._send_status)
        payload = {
            "displayId": self.display_id,
            "hardwareKey": self.hardware_key,
            "currentLayoutId": self.layout.current_content_id or "",
            "status": int(self.layout.status),
            "clientVersion": __version__,
            "clientCode": CLIENT_CODE,
        }
        self._runner.run(lambda: self._client.send_status(payload, self.hardware_key), self._on_status_sent)

    def _on_status_sent(self, _result: object, error: Optional[Exception]) -> None:
        if error is not None:
            logging.warning("Failed to update status: %s", error)

    def _check_schedule(self) -> None:
        self._timers["schedule"] = self._dispatcher.call_later(self.schedule_interval, self._check_schedule)
        self._poll_schedule()

    def _poll_schedule(self) -> None:
        display_id = self.display_id
        self._runner.run(lambda: self._client.fetch_schedule(display_id, self.hardware_key), self._on_schedule)

    def _on_schedule(self, layout_id: Optional[str], error: Optional[Exception]) -> None:
        if not self._running:
            return
        if error is not None:
            logging.warning("Failed to check schedule: %s", error)
            return
        if not layout_id or layout_id == self.layout.current_content_id:
            return
        logging.info("Scheduled layout changed: %s -> %s", self.layout.current_content_id, layout_id)
        self.layout.current_content_id = layout_id
        self._config.set_state(current_layout_id=layout_id)
        if self.on_layout_changed is not None:
            self.on_layout_changed(layout_id)
        self._renderer.load(layout_id)


def cms_reachable(cfg: Dict, timeout_sec: float = 2.0) -> bool:
    cms_url = normalize_cms_url(str(cfg.get("xibo_cms_url") or ""))
    if not cms_url:
        return False
    parsed = urlparse(cms_url)
    host = parsed.hostname
    if not host:
        return False
    if parsed.port:
        port = int(parsed.port)
    elif parsed.scheme == "https":
        port = 443
    else:
        port = 80
    try:
        with socket.create_connection((host, port), timeout=timeout_sec):
            return True
    except OSError:
        return False


class ConnectivityMonitor:
    def __init__(
        self,
        config: ConfigProvider,
        runner: NetworkRunner,
        dispatcher: Dispatcher,
        renderer: ContentRenderer,
        probe: Optional[Callable[[], bool]] = None,
    ) -> None:
        self._runner = runner
        self._dispatcher = dispatcher
        self._renderer = renderer
        self._probe = probe or (lambda: cms_reachable(config.snapshot()))
        self.interval = config.get_float("connectivity_interval_sec", 30)
        self.connected: Optional[bool] = None
        self.on_connection_state_changed: Optional[Callable[[bool], None]] = None
        self._timer: Optional[TimerHandle] = None
        self._running = False

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._check()

    def stop(self) -> None:
        self._running = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _check(self) -> None:
        self._timer = self._dispatcher.call_later(self.interval, self._check)
        self._runner.run(self._probe, self._on_probe)

    def _on_probe(self, reachable: object, error: Optional[Exception]) -> None:
        if not self._running:
            return
        if error is not None:
            logging.warning("Reachability probe failed: %s", error)
            reachable = False
        self.record(bool(reachable))

    def record(self, connected: bool) -> None:
        previous = self.connected
        if previous == connected:
            return
        self.connected = connected
        logging.info("Connection state changed: %s", "online" if connected else "offline")
        if self.on_connection_state_changed is not None:
            self.on_connection_state_changed(connected)
        if previous is False and connected:
            content_id = self._renderer.current_content_id
            if content_id:
                logging.info("Connection restored; reloading layout %s", content_id)
                self._renderer.load(content_id)


class StatusState:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: Dict[str, Optional[object]] = {
            "started_at": iso_now(),
            "capture_state": CaptureState.IDLE.value,
            "capture_device": None,
            "capture_size": None,
            "last_capture_error": None,
            "window_visible": False,
            "display_id": None,
            "last_registration_error": None,
            "layout_id": None,
            "layout_status": LayoutStatus.RUNNING.name.lower(),
            "last_layout_loaded": None,
            "last_layout_error": None,
            "connected": None,
            "last_connection_change": None,
        }
        self.start_time = time.time()

    def update(self, **kwargs: object) -> None:
        with self._lock:
            self._data.update(kwargs)

    def snapshot(self) -> Dict[str, Optional[object]]:
        with self._lock:
            return dict(self._data)


def status_writer(config: ConfigProvider, status: StatusState, stop_event: threading.Event) -> None:
    status_path = config.get_str("status_file")
    if not status_path:
        return
    interval = config.get_int("status_file_interval_sec", 5)
    if interval <= 0:
        return
    status_dir = os.path.dirname(status_path)
    if status_dir:
        os.makedirs(status_dir, exist_ok=True)
    while not stop_event.is_set():
        snapshot = status.snapshot()
        snapshot["uptime_sec"] = int(time.time() - status.start_time)
        try:
            write_json_file(status_path, snapshot)
        except Exception as exc:
            logging.warning("Status write failed: %s", exc)
        for _ in range(int(interval * 5)):
            if stop_event.is_set():
                break
            time.sleep(0.2)


class OverlayApp:
    """Startup coordinator wiring capture, overlay window and CMS content."""

    def __init__(
        self,
        config: ConfigProvider,
        flags: StartupFlags,
        window_host: WindowHost,
        capture_backend: CaptureBackend,
        coordinator: Optional[Dispatcher] = None,
        capture_worker: Optional[Dispatcher] = None,
        runner: Optional[NetworkRunner] = None,
        probe: Optional[Callable[[], bool]] = None,
    ) -> None:
        self.config = config
        self.flags = flags
        self.coordinator = coordinator or Dispatcher("coordination")
        self.capture_worker = capture_worker or Dispatcher("capture")
        self.runner = runner or NetworkRunner(self.coordinator)
        self.status = StatusState()
        self.broker = SurfaceBroker()
        self.window_manager: Optional[OverlayWindowManager] = None
        if flags.overlay_auto_start:
            self.window_manager = OverlayWindowManager(config, window_host, self.broker)
            self.window_manager.on_window_shown = self._on_window_shown
        self.capture = CaptureDeviceController(config, capture_backend, self.broker, self.capture_worker, self.coordinator)
        self.capture.on_capture_started = self._on_capture_started
        self.capture.on_capture_stopped = self._on_capture_stopped
        self.capture.on_capture_error = self._on_capture_error
        self.client: Optional[CmsClient] = None
        self.auth: Optional[RemoteAuthSession] = None
        self.renderer: Optional[ContentRenderer] = None
        self.scheduler: Optional[ContentScheduler] = None
        self.connectivity: Optional[ConnectivityMonitor] = None
        if flags.xibo_enabled:
            self.client = CmsClient(config)
            self.auth = RemoteAuthSession(config, self.client, self.runner)
            self.renderer = ContentRenderer(config, self.auth, self.client, self.coordinator)
            self.renderer.on_layout_loaded = self._on_layout_loaded
            self.renderer.on_layout_load_failed = self._on_layout_load_failed
            self.renderer.on_fatal = self._on_content_fatal
            self.scheduler = ContentScheduler(config, self.client, self.runner, self.coordinator, self.renderer)
            self.scheduler.on_display_registered = self._on_display_registered
            self.scheduler.on_display_error = self._on_display_error
            self.scheduler.on_layout_changed = self._on_layout_changed
            self.scheduler.on_status_changed = self._on_status_changed
            self.connectivity = ConnectivityMonitor(config, self.runner, self.coordinator, self.renderer, probe)
            self.connectivity.on_connection_state_changed = self._on_connection_state_changed
        self._window_attempts = 0
        self._window_timer: Optional[TimerHandle] = None

    def start(self) -> None:
        self.coordinator.start()
        self.capture_worker.start()
        self.coordinator.post(self.start_components)

    def start_components(self) -> None:
        if self.window_manager is not None:
            self._show_window()
        if self.renderer is not None and self.scheduler is not None:
            self.renderer.start()
            last_layout = self.scheduler.layout.current_content_id
            if last_layout:
                logging.info("Resuming last layout %s", last_layout)
                self.renderer.load(last_layout)
            self.scheduler.start()
            self.connectivity.start()
        if self.flags.hdmi_auto_start:
            self.capture.start()

    def stop(self) -> None:
        logging.info("Stopping overlay")
        self.coordinator.call_and_wait(self.stop_components)
        self.capture.stop()
        self.runner.shutdown()
        self.capture_worker.stop()
        self.coordinator.stop()

    def stop_components(self) -> None:
        if self._window_timer is not None:
            self._window_timer.cancel()
            self._window_timer = None
        if self.scheduler is not None:
            self.scheduler.stop()
        if self.connectivity is not None:
            self.connectivity.stop()
        if self.renderer is not None:
            self.renderer.stop()
        if self.window_manager is not None:
            self.window_manager.hide()
        self.status.update(window_visible=False)

    def display_geometry_changed(self) -> None:
        if self.window_manager is not None:
            self.coordinator.post(self.window_manager.on_display_geometry_changed)

    def screen_off(self) -> None:
        self.coordinator.post(self._handle_screen_off)

    def screen_on(self) -> None:
        self.coordinator.post(self._handle_screen_on)

    def _handle_screen_off(self) -> None:
        logging.info("Screen turned off")
        if self.flags.hide_on_screen_off and self.window_manager is not None:
            if self._window_timer is not None:
                self._window_timer.cancel()
                self._window_timer = None
            self._window_attempts = 0
            self.window_manager.hide()
            self.status.update(window_visible=False)

    def _handle_screen_on(self) -> None:
        logging.info("Screen turned on")
        if self.flags.hide_on_screen_off and self.window_manager is not None and not self.window_manager.visible:
            self._window_timer = self.coordinator.call_later(SCREEN_ON_SHOW_DELAY_SEC, self._show_window)

    def _show_window(self) -> None:
        self._window_timer = None
        try:
            self.window_manager.show()
        except SurfaceUnavailable as exc:
            if self._window_attempts >= WINDOW_RECOVERY_ATTEMPTS:
                logging.error("%s; giving up, capture continues without overlay", exc)
                return
            self._window_attempts += 1
            logging.warning(
                "%s; recovery attempt %d in %.0fs",
                exc,
                self._window_attempts,
                WINDOW_RECOVERY_DELAY_SEC,
            )
            self._window_timer = self.coordinator.call_later(WINDOW_RECOVERY_DELAY_SEC, self._show_window)
            return
        self._window_attempts = 0

    def _on_window_shown(self, window: HostWindow) -> None:
        self.status.update(window_visible=True)
        if self.renderer is not None:
            self.renderer.attach_surfaces(*window.content_surfaces)

    def _on_capture_started(self) -> None:
        device = self.capture.device
        self.status.update(
            capture_state=CaptureState.STREAMING.value,
            capture_device=device.device_id if device else None,
            capture_size=str(self.capture.negotiated_size) if self.capture.negotiated_size else None,
            last_capture_error=None,
        )

    def _on_capture_stopped(self) -> None:
        self.status.update(capture_state=self.capture.state.value)

    def _on_capture_error(self, message: str, fatal: bool) -> None:
        self.status.update(capture_state=self.capture.state.value, last_capture_error=message)
        if fatal:
            logging.error("Capture stopped after unrecoverable error: %s", message)

    def _on_layout_changed(self, layout_id: str) -> None:
        self.status.update(layout_id=layout_id)

    def _on_layout_loaded(self, layout_id: str) -> None:
        self.status.update(last_layout_loaded=layout_id, last_layout_error=None)
        if self.scheduler is not None:
            self.scheduler.set_status(LayoutStatus.RUNNING)

    def _on_layout_load_failed(self, error: ContentLoadFailed) -> None:
        self.status.update(last_layout_error=str(error))
        if self.scheduler is not None:
            self.scheduler.set_status(LayoutStatus.ERROR)

    def _on_content_fatal(self, message: str) -> None:
        self.status.update(last_layout_error=message)
        if self.renderer is not None:
            self.renderer.stop()

    def _on_status_changed(self, status: LayoutStatus) -> None:
        self.status.update(layout_status=status.name.lower())

    def _on_display_registered(self, display_id: str) -> None:
        self.status.update(display_id=display_id, last_registration_error=None)

    def _on_display_error(self, message: str) -> None:
        self.status.update(last_registration_error=message)

    def _on_connection_state_changed(self, connected: bool) -> None:
        self.status.update(connected=connected, last_connection_change=iso_now())


def main() -> int:
    parser = argparse.ArgumentParser(description="HDMI capture with CMS content overlay")
    parser.add_argument("--config", default="config.json", help="Path to config.json")
    parser.add_argument("--boot", action="store_true", help="Started at boot; honour start_on_boot")
    parser.add_argument("--headless", action="store_true", help="Run capture without an overlay window")
    args = parser.parse_args()
    config_path = os.path.abspath(args.config)

    cfg = load_config(config_path)
    setup_logging(cfg)
    config = ConfigProvider(cfg, config_path)
    flags = StartupFlags.from_config(config)
    if args.headless:
        flags = replace(flags, overlay_auto_start=False)

    if args.boot and not flags.start_on_boot:
        logging.info("Auto-start is disabled in configuration")
        return 0
    if flags.xibo_enabled and not config.get_str("xibo_cms_url"):
        logging.warning("xibo_cms_url missing; running without CMS content.")
        flags = replace(flags, xibo_enabled=False)
    if flags.xibo_enabled and requests is None:
        logging.warning("requests dependency unavailable; CMS content disabled.")
        flags = replace(flags, xibo_enabled=False)
    if not flags.hdmi_auto_start and not flags.xibo_enabled:
        logging.error("Nothing to do: capture and CMS content are both disabled.")
        return 2

    app = OverlayApp(config, flags, HeadlessWindowHost(config), V4L2CaptureBackend(config))
    stop_event = threading.Event()

    def _handle(sig, _frame):
        logging.info("Signal %s received, stopping...", sig)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)
    if hasattr(signal, "SIGUSR1"):
        signal.signal(signal.SIGUSR1, lambda _sig, _frame: app.display_geometry_changed())

    writer = threading.Thread(target=status_writer, args=(config, app.status, stop_event), daemon=True)
    writer.start()
    app.start()
    try:
        while not stop_event.is_set():
            time.sleep(0.2)
    finally:
        stop_event.set()
        app.stop()
        writer.join(timeout=5)

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
