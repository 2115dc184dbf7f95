# facecascade/imaging.py — frame -> input blob, face crops
from __future__ import annotations
import cv2
import numpy as np

from .types import Rect


def write_blob(img: np.ndarray, blob: np.ndarray, slot: int = 0):
    """Resize an HWC image into blob[slot] (NCHW), casting to the blob dtype."""
    _, c, h, w = blob.shape
    if img.ndim == 2:
        img = img[:, :, None]
    if img.shape[0] != h or img.shape[1] != w:
        img = cv2.resize(img, (w, h), interpolation=cv2.INTER_LINEAR)
        if img.ndim == 2:
            img = img[:, :, None]
    if img.shape[2] != c:
        raise ValueError(f"image has {img.shape[2]} channels, network expects {c}")
    blob[slot] = img.transpose(2, 0, 1).astype(blob.dtype, copy=False)


def clip_rect(rect: Rect, frame_w: int, frame_h: int) -> Rect:
    """Intersect with the frame; never returns an empty rect."""
    x, y, w, h = rect
    x1 = min(max(x, 0), frame_w - 1); y1 = min(max(y, 0), frame_h - 1)
    x2 = min(max(x + w, x1 + 1), frame_w); y2 = min(max(y + h, y1 + 1), frame_h)
    return (x1, y1, x2 - x1, y2 - y1)


def crop(frame: np.ndarray, rect: Rect) -> np.ndarray:
    fh, fw = frame.shape[:2]
    x, y, w, h = clip_rect(rect, fw, fh)
    return frame[y:y+h, x:x+w]
