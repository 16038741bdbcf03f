"""
Pending images.

An image message is downloaded and parked here until the same subject sends
text; the next text consumes it. Only images younger than five minutes are
attached. Process-local by nature: the files live in the images directory.

Images that expire or are replaced by a newer one are deleted from disk. A
consumed image belongs to the turn that took it.
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional

from .subject import make_subject_id

logger = logging.getLogger(__name__)

PENDING_IMAGE_TTL_S = 5 * 60


@dataclass(frozen=True)
class PendingImage:
    file_path: str
    timestamp: float


def _discard_file(image: PendingImage) -> None:
    try:
        Path(image.file_path).unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to delete pending image {image.file_path}: {e}")


class PendingImageStore:

    def __init__(self, ttl_s: float = PENDING_IMAGE_TTL_S, clock: Callable[[], float] = time.time):
        self.ttl_s = ttl_s
        self._clock = clock
        self._images: Dict[str, PendingImage] = {}

    def __len__(self) -> int:
        return len(self._images)

    def _is_stale(self, image: PendingImage, now: float) -> bool:
        return now - image.timestamp > self.ttl_s

    def prune(self) -> int:
        """Drop expired images and their files. Returns how many were dropped."""
        now = self._clock()
        stale = [key for key, image in self._images.items() if self._is_stale(image, now)]
        for key in stale:
            _discard_file(self._images.pop(key))
        return len(stale)

    def remember(self, account_id: str, open_id: str, file_path: str) -> PendingImage:
        self.prune()
        key = make_subject_id(account_id, open_id)
        image = PendingImage(file_path=file_path, timestamp=self._clock())
        previous = self._images.get(key)
        self._images[key] = image
        if previous is not None and previous.file_path != file_path:
            _discard_file(previous)
        return image

    def take(self, account_id: str, open_id: str) -> Optional[PendingImage]:
        """Remove the subject's pending image; return it only if still fresh."""
        image = self._images.pop(make_subject_id(account_id, open_id), None)
        if image is None:
            return None
        if self._is_stale(image, self._clock()):
            logger.debug(f"Dropping stale pending image {image.file_path}")
            _discard_file(image)
            return None
        return image
