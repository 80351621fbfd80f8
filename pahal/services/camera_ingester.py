"""Camera ingestion: grabs single frames for the smart camera.

Two sources:
- DeviceFrameGrabber: a local camera device opened through OpenCV.
- SnapshotFrameGrabber: an IP camera exposing a JPEG snapshot URL.

Both return JPEG-encoded bytes, or None when no frame could be read.
"""

import logging
import threading
from io import BytesIO
from typing import Optional

import cv2
import numpy as np
import requests
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)


def encode_frame(frame: np.ndarray, max_width: int = 1280, quality: int = 85) -> Optional[bytes]:
    """Downscale a BGR frame to at most max_width and encode it as JPEG."""
    if frame is None or frame.size == 0:
        return None

    height, width = frame.shape[:2]
    if width > max_width:
        scale = max_width / width
        frame = cv2.resize(frame, (max_width, int(height * scale)), interpolation=cv2.INTER_AREA)

    ok, buffer = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    if not ok:
        return None
    return buffer.tobytes()


class DeviceFrameGrabber:
    """Exclusive owner of a local camera device handle.

    The device is opened lazily on first use. ``release()`` is idempotent
    and safe to call on a grabber that was never opened.
    """

    def __init__(self, device_index: int = 0, max_width: int = 1280, quality: int = 85):
        self.device_index = device_index
        self.max_width = max_width
        self.quality = quality
        self._capture = None
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._capture is not None

    def open(self):
        with self._lock:
            self._open_locked()

    def _open_locked(self):
        if self._capture is not None:
            return
        capture = cv2.VideoCapture(self.device_index)
        if not capture.isOpened():
            capture.release()
            raise RuntimeError(f"Camera device {self.device_index} could not be opened")
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.max_width)
        self._capture = capture
        logger.info(f"Opened camera device {self.device_index}")

    def grab(self) -> Optional[bytes]:
        with self._lock:
            try:
                self._open_locked()
            except RuntimeError as e:
                logger.warning(str(e))
                return None

            ok, frame = self._capture.read()
            if not ok:
                logger.warning(f"Failed to read frame from camera device {self.device_index}")
                return None

        return encode_frame(frame, self.max_width, self.quality)

    def release(self):
        with self._lock:
            if self._capture is None:
                return
            self._capture.release()
            self._capture = None
            logger.info(f"Released camera device {self.device_index}")


class SnapshotFrameGrabber:
    """Downloads the latest snapshot from an IP camera."""

    def __init__(self, url: str, timeout: float = 15, max_width: int = 1280, quality: int = 85,
                 session=None):
        self.url = url
        self.timeout = timeout
        self.max_width = max_width
        self.quality = quality
        self.session = session or requests.Session()

    @property
    def is_open(self) -> bool:
        return True

    def open(self):
        pass

    def grab(self) -> Optional[bytes]:
        try:
            response = self.session.get(self.url, timeout=self.timeout)
            response.raise_for_status()

            img = Image.open(BytesIO(response.content)).convert("RGB")
            frame = np.array(img)
            # Convert RGB to BGR for OpenCV
            frame = cv2.cvtColor(frame, cv2.COLOR_RGB2BGR)
            return encode_frame(frame, self.max_width, self.quality)
        except requests.RequestException as e:
            logger.warning(f"Failed to fetch snapshot from {self.url}: {e}")
            return None
        except (UnidentifiedImageError, OSError) as e:
            logger.warning(f"Snapshot from {self.url} is not a readable image: {e}")
            return None

    def release(self):
        pass


def build_frame_grabber(config=None):
    """Snapshot URL when configured, otherwise the local camera device."""
    if config is None:
        from pahal.config import Config
        config = Config

    if config.CAMERA_SNAPSHOT_URL:
        return SnapshotFrameGrabber(
            config.CAMERA_SNAPSHOT_URL,
            max_width=config.MAX_FRAME_WIDTH,
            quality=config.JPEG_QUALITY,
        )
    return DeviceFrameGrabber(
        config.CAMERA_DEVICE_INDEX,
        max_width=config.MAX_FRAME_WIDTH,
        quality=config.JPEG_QUALITY,
    )
