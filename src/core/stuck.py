"""
stuck.py

Perceptual hashing + rolling-window stuck detection.

- perceptual_hash: 64-bit average hash (8x8 grayscale, bit i set iff pixel i > mean)
- classify_visual_diff: hamming distance -> human label used by OBSERVE
- StuckDetector: three windows (screenshot hashes, UI-tree summaries, text responses)
"""

from __future__ import annotations

import io
import logging
import re
from collections import deque
from typing import Deque, Optional, Tuple

import numpy as np
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger("vigilant.stuck")

HASH_SIZE = 8
DEFAULT_STUCK_THRESHOLD = 3
DEFAULT_HASH_TOLERANCE = 10

_WHITESPACE = re.compile(r"\s+")


def perceptual_hash(data: bytes) -> Optional[int]:
    """Average hash of encoded image bytes. None when the bytes do not decode."""
    if not data:
        return None
    try:
        with Image.open(io.BytesIO(data)) as img:
            small = img.convert("L").resize((HASH_SIZE, HASH_SIZE), Image.BILINEAR)
            pixels = np.asarray(small, dtype=np.uint64).flatten()
    except (UnidentifiedImageError, OSError) as e:
        logger.debug("Could not hash screenshot: %s", e)
        return None

    mean = int(pixels.sum()) // pixels.size
    value = 0
    for i, px in enumerate(pixels):
        if int(px) > mean:
            value |= 1 << i
    return value


def hamming_distance(a: int, b: int) -> int:
    return bin(a ^ b).count("1")


def classify_visual_diff(distance: int) -> Tuple[str, bool]:
    """Returns (description, identical). Distances up to 5 count as visually identical."""
    if distance == 0:
        return "No visual change detected", True
    if distance <= 5:
        return f"Minor visual change (distance: {distance})", True
    if distance <= 15:
        return f"Moderate visual change (distance: {distance})", False
    if distance <= 30:
        return f"Significant visual change (distance: {distance})", False
    return f"Major visual change (distance: {distance})", False


def normalize_text(text: str) -> str:
    return _WHITESPACE.sub(" ", text.lower()).strip()


class StuckDetector:
    def __init__(self, threshold: int = DEFAULT_STUCK_THRESHOLD, tolerance: int = DEFAULT_HASH_TOLERANCE) -> None:
        self.threshold = threshold
        self.tolerance = tolerance
        self._hashes: Deque[int] = deque(maxlen=threshold)
        self._ax: Deque[str] = deque(maxlen=threshold)
        self._texts: Deque[str] = deque(maxlen=threshold)

    # --- tracking

    def track_hash(self, data: bytes) -> None:
        # Undecodable frames are not tracked; hash 0 is a real (uniform) frame.
        frame_hash = perceptual_hash(data)
        if frame_hash is not None:
            self._hashes.append(frame_hash)

    def track_ax(self, summary: str) -> None:
        self._ax.append(summary)

    def track_text(self, text: str) -> None:
        trimmed = text.strip()
        if trimmed:
            self._texts.append(trimmed)

    def clear_tracking(self) -> None:
        self._hashes.clear()
        self._ax.clear()
        self._texts.clear()

    # --- detection

    def detect_stuck(self) -> Optional[str]:
        if self.is_screenshot_stuck():
            return f"Last {self.threshold} screenshots are perceptually identical"
        if self.is_text_stuck():
            return f"Last {self.threshold} text responses are repeating"
        return None

    def is_screenshot_stuck(self) -> bool:
        if len(self._hashes) < self.threshold:
            return False
        first = self._hashes[0]
        distances = [hamming_distance(first, h) for h in list(self._hashes)[1:]]
        if any(d > self.tolerance for d in distances):
            return False

        # A static screen whose accessibility tree keeps changing is still progressing.
        if len(self._ax) >= self.threshold and len(set(self._ax)) > 1:
            logger.info("Screenshots similar but UI tree changed; not stuck")
            return False

        logger.info("Screenshot stuck detected (distances=%s, tolerance=%d)", distances, self.tolerance)
        return True

    def is_text_stuck(self) -> bool:
        if len(self._texts) < self.threshold:
            return False
        normalized = {normalize_text(t) for t in self._texts}
        return len(normalized) == 1
