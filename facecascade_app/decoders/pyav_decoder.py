# -*- coding: utf-8 -*-
from __future__ import annotations
import time, threading, logging
from typing import Dict, Iterator, Optional

import numpy as np
import av

from facecascade.telemetry import Telemetry

log = logging.getLogger(__name__)


def iter_frames(path: str, limit: int = 0) -> Iterator[np.ndarray]:
    """Decode a video file into BGR uint8 frames."""
    container = av.open(path)
    try:
        stream = container.streams.video[0]
        stream.thread_type = "AUTO"
        for n, frame in enumerate(container.decode(stream)):
            if limit and n >= limit:
                break
            yield frame.to_ndarray(format="bgr24")
    finally:
        container.close()


class DecoderThread(threading.Thread):
    """Pushes (fid, frame) into frame_q, then None at end of stream."""

    def __init__(self, path: str, frame_q, stats: Dict, telemetry: Optional[Telemetry] = None, limit: int = 0):
        super().__init__(daemon=True)
        self.path = path
        self.frame_q = frame_q
        self.stats = stats
        self.telemetry = telemetry
        self.limit = limit
        self.stop_flag = False

    def run(self):
        fid = 0; t0 = time.time()
        try:
            for img in iter_frames(self.path, self.limit):
                if self.stop_flag: break
                self.frame_q.put((fid, img))
                fid += 1
                if self.telemetry: self.telemetry.inc("decoded")
        except (av.error.FFmpegError, OSError) as e:
            log.error("[Decoder] %s: %s", self.path, e)
            self.stats["error"] = str(e)
        finally:
            dt = time.time() - t0
            self.stats["frames"] = fid
            self.stats["dec_fps"] = fid / dt if dt > 0 else 0.0
            self.frame_q.put(None)
            log.info("[Decoder] end (%d frames)", fid)
