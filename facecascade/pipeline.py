# facecascade/pipeline.py — detector -> face crops -> secondary stages, one frame at a time
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

import numpy as np

from .backend import InferenceBackend
from .errors import ContractViolation
from .imaging import crop
from .loader import Load
from .stages import ModelStage
from .telemetry import LatencyTracker
from .types import FrameResult, PipelineConfig, SECONDARY_KINDS, StageKind

log = logging.getLogger(__name__)

T_TOTAL = "total"
T_DETECTION = "detection"
T_FACES = "face_analytics"


class FacePipeline:
    """
    Runs the face detector on a frame and every enabled secondary stage on
    the detected faces. Stages are owned here; the backend is not.

    Secondary results are aligned with detections by enqueue order: a stage
    that hit its batch capacity returns a shorter list (a prefix).
    """

    def __init__(self, detector: ModelStage, secondary: Sequence[ModelStage],
                 tracker: Optional[LatencyTracker] = None):
        if not detector.is_detector:
            raise ValueError(f"{detector.name} is not a face detection stage")
        self.detector = detector
        self.secondary: List[ModelStage] = list(secondary)
        self.tracker = tracker or LatencyTracker()

    @property
    def stages(self) -> List[ModelStage]:
        return [self.detector] + self.secondary

    def stage(self, kind: StageKind) -> ModelStage:
        for st in self.stages:
            if st.kind is kind:
                return st
        raise KeyError(kind)

    def enabled_secondary(self) -> List[ModelStage]:
        return [st for st in self.secondary if st.is_enabled()]

    def process(self, frame: np.ndarray) -> FrameResult:
        """
        A ContractViolation from a secondary decode costs only that stage's
        results: the other stages are still decoded, then the first error is
        raised with the partial FrameResult on ``e.result``. No request is
        left in flight and every timer is closed.
        """
        tr = self.tracker
        res = FrameResult()
        live = self.enabled_secondary()
        tr.start(T_TOTAL)
        try:
            # 1) detector on the full frame
            det = self.detector
            if det.is_enabled():
                with tr.span(T_DETECTION):
                    det.enqueue(frame)
                    det.submit()
                    det.wait()
                    res.detections = det.decode_all()
            if live:
                with tr.span(T_FACES):
                    self._run_secondary(frame, live, res)
        finally:
            tr.finish(T_TOTAL)

        if res.errors:
            err = next(iter(res.errors.values()))
            err.result = res
            raise err
        return res

    def _run_secondary(self, frame: np.ndarray, live: List[ModelStage], res: FrameResult):
        tr = self.tracker
        # 2) crops into every enabled stage, detector order
        for d in res.detections:
            face = crop(frame, d.box)
            for st in live:
                st.enqueue(face)

        # 3) submit all, then wait on the async ones
        pending = []
        for st in live:
            if not st.enqueued:
                continue
            tr.start(st.name)
            st.submit()
            if st.is_async:
                pending.append(st)
            else:
                tr.finish(st.name)
        for st in pending:
            st.wait()
            tr.finish(st.name)

        # 4) decode, prefix-aligned with detections
        for st in live:
            try:
                res.attributes[st.kind] = st.decode_all() if res.detections else []
            except ContractViolation as e:
                log.debug("[Pipeline] %s decode failed: %s", st.name, e)
                res.errors[st.kind] = e

    def get_latency_report(self) -> Dict[str, Dict[str, float]]:
        return self.tracker.report()


def build_stages(config: PipelineConfig):
    det = ModelStage(config.stage(StageKind.FACE_DETECTION), detector=config.detector)
    secondary = [ModelStage(config.stage(k), emotion_labels=config.emotion_labels) for k in SECONDARY_KINDS]
    return det, secondary


def build_pipeline(config: PipelineConfig, backend: InferenceBackend,
                   tracker: Optional[LatencyTracker] = None) -> FacePipeline:
    """Create every stage and bind it; a ContractViolation here aborts construction."""
    det, secondary = build_stages(config)
    for st in [det] + secondary:
        Load(st).into(backend, enable_dynamic_batch=config.enable_dynamic_batch)
    if not det.is_enabled():
        log.warning("[Pipeline] face detection is disabled; frames will yield no faces")
    return FacePipeline(det, secondary, tracker)
