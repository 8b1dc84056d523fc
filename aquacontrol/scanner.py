"""
Camera scan sessions

A scan session owns the camera for as long as the scanner is open on
the kiosk. It loads the capture library once, acquires a camera by
trying the declared acquisition strategies in order (rear camera
first, then the front/default camera), feeds every decoded QR payload
to the identity resolver and releases the device on every exit path.

States::

    Idle -> Starting -> Active -> Stopped
               |
               +-> Error

Error and Stopped are terminal: scanning again needs a new session.
"""

import importlib
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Sequence

from .exceptions import (
    CameraAcquisitionException,
    CameraError,
    ScanSessionBusyException,
    ScanSessionStateException,
)
from .models import FacingMode, Member, ScanStatus, Unresolved
from .services import IdentityResolver


logger = logging.getLogger(__name__)

DEFAULT_STRATEGIES = (FacingMode.ENVIRONMENT, FacingMode.USER)

LIBRARY_ERROR_MESSAGE = (
    "The camera library did not load correctly. Close the scanner and try again."
)
PERMISSION_ERROR_MESSAGE = (
    "No camera could be started. Check that a camera is connected and that "
    "this device allows the application to use it, then reopen the scanner."
)

DecodeSuccess = Callable[[str], None]
DecodeFailure = Callable[[Optional[Exception]], None]


@dataclass(frozen=True)
class FrameConfig:
    """How the decode loop samples the camera"""
    fps: int = 10
    box_size: int = 250


def scan_region(frame, box_size: int):
    """
    Centered square of ``box_size`` pixels where the card is expected

    Frames smaller than the box, or a falsy ``box_size``, are decoded whole.
    """
    shape = getattr(frame, 'shape', None)
    if not box_size or shape is None:
        return frame
    height, width = shape[:2]
    if height <= box_size or width <= box_size:
        return frame
    top = (height - box_size) // 2
    left = (width - box_size) // 2
    return frame[top:top + box_size, left:left + box_size]


class CaptureLibrary:
    """
    One-time load gate for the capture library

    The library is imported on first use only, so installations that
    scan with a USB reader never pay for OpenCV. The load state is
    independent of any camera state and is remembered after the first
    attempt.
    """

    def __init__(self, module_name: str = "cv2",
                 importer: Callable = importlib.import_module):
        self.module_name = module_name
        self.importer = importer
        self.module = None
        self.error: Optional[str] = None
        self._attempted = False
        self._lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self.module is not None

    def load(self) -> bool:
        with self._lock:
            if not self._attempted:
                self._attempted = True
                try:
                    self.module = self.importer(self.module_name)
                except ImportError as e:
                    self.error = str(e)
                    logger.error("Capture library %s failed to load: %s", self.module_name, e)
            return self.loaded


class CameraBackend(ABC):
    """Contract of the camera capture collaborator"""

    @abstractmethod
    def start(self, facing_mode: FacingMode, frame_config: FrameConfig,
              on_decode_success: DecodeSuccess, on_decode_failure: DecodeFailure) -> None:
        """
        Acquire the named camera and start delivering decode callbacks

        Raises:
            Exception: Any failure to acquire the device
        """
        pass

    @abstractmethod
    def stop(self) -> None:
        """Stop decoding and release the device; safe to call repeatedly"""
        pass


class OpenCVCamera(CameraBackend):
    """
    Camera backend on top of OpenCV

    Facing modes map to device indexes. A daemon worker thread reads
    frames at the configured rate and decodes them with
    ``cv2.QRCodeDetector``.
    """

    def __init__(self, library: CaptureLibrary,
                 device_indexes: Optional[Dict[FacingMode, int]] = None):
        self.library = library
        self.device_indexes = device_indexes or {
            FacingMode.ENVIRONMENT: 1,
            FacingMode.USER: 0,
        }
        self.capture = None
        self.worker: Optional[threading.Thread] = None
        self.stop_event = threading.Event()
        self.capture_lock = threading.Lock()

    def start(self, facing_mode: FacingMode, frame_config: FrameConfig,
              on_decode_success: DecodeSuccess, on_decode_failure: DecodeFailure) -> None:
        if not self.library.load():
            raise CameraError(facing_mode.value, f"capture library missing: {self.library.error}")
        cv2 = self.library.module
        index = self.device_indexes.get(facing_mode)
        if index is None:
            raise CameraError(facing_mode.value, "no device configured")

        capture = cv2.VideoCapture(index)
        if not capture.isOpened():
            capture.release()
            raise CameraError(f"{facing_mode.value} (index {index})", "device could not be opened")
        ok, _ = capture.read()
        if not ok:
            capture.release()
            raise CameraError(f"{facing_mode.value} (index {index})", "device returned no frames")

        with self.capture_lock:
            self.capture = capture
        self.stop_event.clear()
        self.worker = threading.Thread(
            target=self._loop,
            args=(cv2.QRCodeDetector(), frame_config, on_decode_success, on_decode_failure),
            name=f"aquacontrol-scan-{facing_mode.value}",
            daemon=True,
        )
        self.worker.start()
        logger.info("Camera %s started on index %s at %s fps",
                    facing_mode.value, index, frame_config.fps)

    def stop(self) -> None:
        self.stop_event.set()
        worker = self.worker
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout=3.0)
        self.worker = None

        with self.capture_lock:
            if self.capture is not None:
                self.capture.release()
                self.capture = None
                logger.info("Camera released")

    def _loop(self, detector, frame_config: FrameConfig,
              on_decode_success: DecodeSuccess, on_decode_failure: DecodeFailure) -> None:
        interval = 1.0 / max(frame_config.fps, 1)
        while not self.stop_event.is_set():
            with self.capture_lock:
                if self.capture is None:
                    break
                ok, frame = self.capture.read()
            if ok and frame is not None:
                data, _, _ = detector.detectAndDecode(scan_region(frame, frame_config.box_size))
                if data:
                    on_decode_success(data)
                else:
                    on_decode_failure(None)
            else:
                on_decode_failure(CameraError("frame", "read failed"))
            self.stop_event.wait(interval)


class ScanSession:
    """
    One camera-acquisition-to-release lifecycle

    ``on_match`` receives each resolved member; returning a truthy
    value ends the session. ``on_unresolved`` receives scanned ids that
    match no member while the session keeps scanning. The session never
    writes to the ledger itself.
    """

    def __init__(self, camera: CameraBackend, resolver: IdentityResolver,
                 on_match: Callable[[Member], bool],
                 on_unresolved: Optional[Callable[[Unresolved], None]] = None,
                 library: Optional[CaptureLibrary] = None,
                 strategies: Sequence[FacingMode] = DEFAULT_STRATEGIES,
                 frame_config: FrameConfig = FrameConfig()):
        self.camera = camera
        self.resolver = resolver
        self.on_match = on_match
        self.on_unresolved = on_unresolved
        self.library = library
        self.strategies = tuple(strategies)
        self.frame_config = frame_config

        self.status = ScanStatus.IDLE
        self.camera_facing_mode: Optional[FacingMode] = None
        self.last_error: Optional[str] = None
        self.error: Optional[CameraAcquisitionException] = None
        self._stop_requested = False
        self._lock = threading.RLock()

    def __enter__(self) -> 'ScanSession':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    @property
    def is_open(self) -> bool:
        return self.status in (ScanStatus.IDLE, ScanStatus.STARTING, ScanStatus.ACTIVE)

    def start(self) -> ScanStatus:
        """
        Acquire a camera and begin decoding

        Strategies are tried in order; a fallback is silent to the user.
        Only when every strategy fails does the session enter Error.

        Returns:
            The status reached (Active, Error, or Stopped if the session
            was closed while starting)

        Raises:
            ScanSessionStateException: If the session was already started
        """
        with self._lock:
            if self.status != ScanStatus.IDLE:
                raise ScanSessionStateException(self.status.value)
            self.status = ScanStatus.STARTING

        if self.library is not None and not self.library.load():
            return self._fail(LIBRARY_ERROR_MESSAGE, CameraAcquisitionException(
                [("library", self.library.error or "not loaded")]
            ))

        attempts = []
        for facing_mode in self.strategies:
            if self._stop_requested:
                break
            try:
                self.camera.start(facing_mode, self.frame_config,
                                  self._on_decode_success, self._on_decode_failure)
            except Exception as e:
                logger.warning("Camera %s failed to start: %s", facing_mode.value, e)
                attempts.append((facing_mode.value, str(e)))
                continue
            return self._activate(facing_mode, attempts)

        if self._stop_requested:
            with self._lock:
                self.status = ScanStatus.STOPPED
            return self.status
        return self._fail(PERMISSION_ERROR_MESSAGE, CameraAcquisitionException(attempts))

    def stop(self) -> None:
        """
        End the session and release the camera

        Works from any state and any thread, including the decode
        callback itself. Stopping a session that is still starting makes
        the start release the camera as soon as it is acquired.
        """
        with self._lock:
            if self.status == ScanStatus.STARTING:
                self._stop_requested = True
                return
            if self.status in (ScanStatus.STOPPED, ScanStatus.ERROR):
                return
            was_active = self.status == ScanStatus.ACTIVE
            self.status = ScanStatus.STOPPED
        if was_active:
            self.camera.stop()
            logger.info("Scan session stopped")

    def to_dict(self) -> Dict:
        return {
            'status': self.status.value,
            'camera_facing_mode': self.camera_facing_mode.value if self.camera_facing_mode else None,
            'last_error': self.last_error,
        }

    def _activate(self, facing_mode: FacingMode, attempts) -> ScanStatus:
        with self._lock:
            self.camera_facing_mode = facing_mode
            if self._stop_requested:
                self.status = ScanStatus.STOPPED
            else:
                self.status = ScanStatus.ACTIVE
        if self.status == ScanStatus.STOPPED:
            self.camera.stop()
            logger.info("Scan session closed while starting; camera released")
            return self.status
        if attempts:
            logger.warning("Fell back to %s camera after %d failed attempt(s)",
                           facing_mode.value, len(attempts))
        return self.status

    def _fail(self, message: str, error: CameraAcquisitionException) -> ScanStatus:
        with self._lock:
            self.status = ScanStatus.ERROR
            self.last_error = message
            self.error = error
        logger.error("Scan session failed: %s", error)
        return self.status

    def _on_decode_success(self, decoded_text: str) -> None:
        if self.status != ScanStatus.ACTIVE:
            return
        result = self.resolver.resolve(decoded_text)
        if isinstance(result, Unresolved):
            if self.on_unresolved is not None:
                self.on_unresolved(result)
            return
        try:
            finished = self.on_match(result)
        except Exception:
            logger.exception("Scan match handler failed for %s", result.member_id)
            return
        if finished:
            self.stop()

    def _on_decode_failure(self, error: Optional[Exception]) -> None:
        # Most frames carry no code.
        pass


class ScanSessionManager:
    """
    Single owner of the camera across scan sessions

    Opening a session while another one is starting or active is
    refused, so two sessions never compete for the device.
    """

    def __init__(self, camera: CameraBackend, resolver: IdentityResolver,
                 library: Optional[CaptureLibrary] = None,
                 strategies: Sequence[FacingMode] = DEFAULT_STRATEGIES,
                 frame_config: FrameConfig = FrameConfig()):
        self.camera = camera
        self.resolver = resolver
        self.library = library
        self.strategies = tuple(strategies)
        self.frame_config = frame_config
        self._session: Optional[ScanSession] = None
        self._lock = threading.Lock()

    @property
    def current(self) -> Optional[ScanSession]:
        return self._session

    def open(self, on_match: Callable[[Member], bool],
             on_unresolved: Optional[Callable[[Unresolved], None]] = None) -> ScanSession:
        """
        Open and start a new scan session

        Raises:
            ScanSessionBusyException: If a session already holds the camera
        """
        with self._lock:
            if self._session is not None and self._session.is_open:
                raise ScanSessionBusyException()
            session = ScanSession(
                self.camera, self.resolver, on_match, on_unresolved,
                library=self.library,
                strategies=self.strategies,
                frame_config=self.frame_config,
            )
            self._session = session
        session.start()
        return session

    def close(self) -> None:
        session = self._session
        if session is not None:
            session.stop()
