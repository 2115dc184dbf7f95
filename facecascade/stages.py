# facecascade/stages.py — one bound network per StageKind: contract, batching, decoding
from __future__ import annotations

import math
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .backend import InferenceBackend, TensorInfo, KEY_DYN_BATCH_ENABLED, YES
from .errors import ContractViolation, IndexOutOfRange
from .imaging import write_blob
from .types import (
    AgeGender, DEFAULT_EMOTIONS, Detection, DetectorParams, Emotions,
    HeadPose, Landmarks, Rect, StageConfig, StageKind,
)

log = logging.getLogger(__name__)

LANDMARKS_OUTPUT = "align_fc3"
LANDMARKS_VALUES = 70


# --------------------------------------------------
# Output contracts
# --------------------------------------------------
@dataclass(frozen=True)
class OutputSpec:
    role: str
    name: Optional[str] = None       # required tensor name
    rank: Optional[int] = None
    channels: Optional[int] = None   # dims[1]
    last: Optional[int] = None       # dims[-1]
    dtype: Optional[type] = None

    def matches(self, info: TensorInfo) -> bool:
        if self.name is not None and info.name != self.name: return False
        if self.rank is not None and info.rank != self.rank: return False
        if self.channels is not None and (info.rank < 2 or info.shape[1] != self.channels): return False
        if self.last is not None and (info.rank < 1 or info.shape[-1] != self.last): return False
        if self.dtype is not None and not np.issubdtype(info.dtype, self.dtype): return False
        return True

    def describe(self) -> str:
        parts = [f"'{self.name}'" if self.name else self.role]
        if self.rank is not None: parts.append(f"rank {self.rank}")
        if self.channels is not None: parts.append(f"{self.channels} channels")
        if self.last is not None: parts.append(f"last dim {self.last}")
        if self.dtype is not None: parts.append(self.dtype.__name__)
        return " ".join(parts)


@dataclass(frozen=True)
class Contract:
    outputs: Tuple[OutputSpec, ...]
    exact: bool = True               # no extra outputs allowed


SSD_CONTRACT = Contract((OutputSpec("detections", rank=4, last=7),))
BOXES_CONTRACT = Contract((OutputSpec("boxes", rank=2, last=5),
                           OutputSpec("labels", rank=1, dtype=np.integer)), exact=False)

CONTRACTS: Dict[StageKind, Contract] = {
    StageKind.AGE_GENDER:   Contract((OutputSpec("age", channels=1), OutputSpec("gender", channels=2))),
    StageKind.HEAD_POSE:    Contract((OutputSpec("roll", name="angle_r_fc"),
                                      OutputSpec("pitch", name="angle_p_fc"),
                                      OutputSpec("yaw", name="angle_y_fc")), exact=False),
    StageKind.EMOTIONS:     Contract((OutputSpec("prob"),)),
    StageKind.LANDMARKS:    Contract((OutputSpec("landmarks", name=LANDMARKS_OUTPUT, rank=2, last=LANDMARKS_VALUES),)),
    StageKind.ANTISPOOFING: Contract((OutputSpec("prob", channels=2),)),
}


def contract_for(kind: StageKind, outputs: Mapping[str, TensorInfo]) -> Contract:
    if kind is StageKind.FACE_DETECTION:
        # single DetectionOutput layer, or boxes [N,5] + labels [N]
        return SSD_CONTRACT if len(outputs) == 1 else BOXES_CONTRACT
    return CONTRACTS[kind]


def check_contract(kind: StageKind, inputs: Mapping[str, TensorInfo],
                   outputs: Mapping[str, TensorInfo]) -> Tuple[str, TensorInfo, Dict[str, str]]:
    """Validate model I/O against the kind's contract. Returns (input name, input info, role -> output name)."""
    name = kind.title
    if len(inputs) != 1:
        raise ContractViolation(f"{name} network should have only one input", stage=name)
    in_name, in_info = next(iter(inputs.items()))
    if in_info.rank != 4:
        raise ContractViolation(f"{name} network input should be NCHW, got shape {in_info.shape}", stage=name)

    contract = contract_for(kind, outputs)
    if contract.exact and len(outputs) != len(contract.outputs):
        raise ContractViolation(f"{name} network should have {len(contract.outputs)} output(s), "
                                f"but had {len(outputs)}", stage=name)
    roles: Dict[str, str] = {}
    used = set()
    for spec in contract.outputs:
        hit = next((o for o, info in outputs.items() if o not in used and spec.matches(info)), None)
        if hit is None:
            have = ", ".join(f"{o}{list(i.shape)}" for o, i in outputs.items())
            raise ContractViolation(f"{name} network has no output matching {spec.describe()} (outputs: {have})",
                                    stage=name)
        used.add(hit)
        roles[spec.role] = hit
    return in_name, in_info, roles


def enlarge_box(rect: Rect, enlarge: float, dx: float, dy: float) -> Rect:
    """Make the box square around its center and scale it. Not clipped to the frame."""
    x, y, w, h = rect
    cx = x + int(w / 2)
    cy = y + int(h / 2)
    size = int(enlarge * max(w, h))
    return (cx - int(math.floor(dx * size / 2)),
            cy - int(math.floor(dy * size / 2)),
            size, size)


# --------------------------------------------------
# Stage
# --------------------------------------------------
_UNBOUND, _BOUND, _DISABLED = "unbound", "bound", "disabled"


class ModelStage:
    """
    Unbound -> bound(idle) -> enqueued -> submitted -> idle.
    A stage without a model path, or whose bind failed, is disabled for good:
    every call is a no-op and never reaches the backend.
    """

    def __init__(self, config: StageConfig, detector: Optional[DetectorParams] = None,
                 emotion_labels: Sequence[str] = DEFAULT_EMOTIONS):
        self.config = config
        self.kind = config.kind
        self.name = config.kind.title
        self.is_detector = self.kind is StageKind.FACE_DETECTION
        # one frame in, one frame out
        self.max_batch = 1 if self.is_detector else max(1, int(config.max_batch))
        self.detector = detector or DetectorParams()
        self.emotion_labels = tuple(emotion_labels)

        self._state = _UNBOUND
        self._backend: Optional[InferenceBackend] = None
        self._net = None
        self._request = None
        self.input_name: Optional[str] = None
        self.outputs: Dict[str, str] = {}
        self.net_h = self.net_w = 0
        self.capacity = self.max_batch
        self.dyn_batch = False

        self.enqueued = 0
        self.batch_size = 0          # size of the last submitted batch
        self.dropped = 0
        self.frame_w = self.frame_h = 0
        self._dets: Optional[List[Detection]] = None

        if config.is_async:
            log.debug("Use async mode for %s", self.name)

    # ---- state ----
    @property
    def configured(self) -> bool:
        return self.config.configured

    def is_enabled(self) -> bool:
        return self._state == _BOUND

    @property
    def is_async(self) -> bool:
        return self.config.is_async

    def _active(self) -> bool:
        if self._state == _BOUND:
            return True
        if self._state == _UNBOUND and self.configured:
            raise RuntimeError(f"{self.name} is used before bind()")
        return False

    def bind(self, backend: InferenceBackend, plugin_config: Optional[Mapping[str, str]] = None) -> bool:
        if self._state != _UNBOUND:
            return self.is_enabled()
        if not self.configured:
            log.info("%s DISABLED", self.name)
            self._state = _DISABLED
            return False
        try:
            net = backend.load_model(self.config.model_path, self.config.device, plugin_config)
            backend.set_batch_size(net, self.max_batch)
            in_name, in_info, roles = check_contract(
                self.kind, backend.get_input_info(net), backend.get_output_info(net))
            request = backend.create_request(net)
        except Exception:
            self._state = _DISABLED
            raise

        self._backend, self._net, self._request = backend, net, request
        self.input_name, self.outputs = in_name, roles
        self.net_h, self.net_w = int(in_info.shape[2]), int(in_info.shape[3])
        self.capacity = min(self.max_batch, int(in_info.shape[0]))
        if self.capacity < self.max_batch:
            log.warning("%s: model batch dim is %d, capping max batch %d", self.name, self.capacity, self.max_batch)
        self.dyn_batch = bool(self.config.dynamic_batch and (plugin_config or {}).get(KEY_DYN_BATCH_ENABLED) == YES)
        self._state = _BOUND
        return True

    # ---- batching ----
    def enqueue(self, image: np.ndarray) -> bool:
        if not self._active():
            return False
        if self.is_detector:
            self.frame_h, self.frame_w = image.shape[:2]
            self.batch_size = 0
            self._dets = None
            write_blob(image, self._backend.get_tensor(self._request, self.input_name), 0)
            self.enqueued = 1
            return True
        if self.enqueued == self.capacity:
            log.warning("Number of detected faces more than maximum(%d) processed by %s network",
                        self.capacity, self.name)
            self.dropped += 1
            return False
        if self.enqueued == 0:
            # a new batch invalidates results of the previous one
            self.batch_size = 0
        write_blob(image, self._backend.get_tensor(self._request, self.input_name), self.enqueued)
        self.enqueued += 1
        return True

    def submit(self):
        if not self._active() or not self.enqueued:
            return
        n = self.enqueued
        if self.dyn_batch:
            self._backend.set_dynamic_batch_size(self._request, n)
        if self.is_async:
            self._backend.run_async(self._request)
        else:
            self._backend.run_sync(self._request)
        self.batch_size = n
        self.enqueued = 0
        self._dets = None

    def wait(self):
        if self._state != _BOUND or not self.is_async:
            return
        self._backend.await_completion(self._request)

    # ---- results ----
    def decode(self, index: int):
        if not 0 <= index < self.batch_size:
            raise IndexOutOfRange(f"{self.name}: index {index} outside last batch of {self.batch_size}")
        return _DECODERS[self.kind](self, index)

    def decode_all(self) -> list:
        if self.is_detector:
            return self.decode(0) if self.batch_size else []
        return [self.decode(i) for i in range(self.batch_size)]

    def _tensor(self, role: str) -> np.ndarray:
        return self._backend.get_tensor(self._request, self.outputs[role])

    @property
    def raw(self) -> bool:
        return self.config.raw_output


# --------------------------------------------------
# Decoders, keyed by StageKind
# --------------------------------------------------
def _detections(stage: ModelStage, _idx: int) -> List[Detection]:
    if stage._dets is not None:
        return list(stage._dets)
    p = stage.detector
    fw, fh = stage.frame_w, stage.frame_h
    ssd = "detections" in stage.outputs
    if ssd:
        rows = stage._tensor("detections").reshape(-1, 7)
        labels = None
    else:
        rows = stage._tensor("boxes").reshape(-1, 5)
        labels = stage._tensor("labels").reshape(-1)

    out: List[Detection] = []
    n = len(rows) if ssd else min(len(rows), len(labels))
    for i in range(n):
        r = rows[i].tolist()
        if ssd:
            if r[0] < 0:            # image_id < 0 terminates the list
                break
            label, conf = int(r[1]), float(r[2])
        else:
            label, conf = int(labels[i]), float(r[4])
        if conf <= p.threshold and not stage.raw:
            continue

        if ssd:
            x = int(r[3] * fw); y = int(r[4] * fh)
            w = int(r[5] * fw - x); h = int(r[6] * fh - y)
        else:
            x = int(r[0] / stage.net_w * fw); y = int(r[1] / stage.net_h * fh)
            w = int(r[2] / stage.net_w * fw - x); h = int(r[3] / stage.net_h * fh - y)
        box = enlarge_box((x, y, w, h), p.bb_enlarge, p.bb_dx, p.bb_dy)

        if stage.raw:
            log.debug("[%d,%d] element, prob = %.6g    (%d,%d)-(%d,%d)%s", i, label, conf,
                      box[0], box[1], box[2], box[3], " WILL BE RENDERED!" if conf > p.threshold else "")
        if conf > p.threshold:
            out.append(Detection(label=label, confidence=conf, box=box))
    stage._dets = out
    return list(out)


def _age_gender(stage: ModelStage, idx: int) -> AgeGender:
    age = stage._tensor("age").reshape(-1)
    gender = stage._tensor("gender").reshape(-1)
    r = AgeGender(age=float(age[idx]) * 100, male_prob=float(gender[2 * idx + 1]))
    if stage.raw:
        log.debug("[%d] element, male prob = %.4f, age = %.2f", idx, r.male_prob, r.age)
    return r


def _head_pose(stage: ModelStage, idx: int) -> HeadPose:
    r = HeadPose(yaw=float(stage._tensor("yaw").reshape(-1)[idx]),
                 pitch=float(stage._tensor("pitch").reshape(-1)[idx]),
                 roll=float(stage._tensor("roll").reshape(-1)[idx]))
    if stage.raw:
        log.debug("[%d] element, yaw = %.3f, pitch = %.3f, roll = %.3f", idx, r.yaw, r.pitch, r.roll)
    return r


def _emotions(stage: ModelStage, idx: int) -> Emotions:
    t = stage._tensor("prob")
    labels = stage.emotion_labels
    channels = t.shape[1] if t.ndim >= 2 else t.size
    if channels != len(labels):
        raise ContractViolation(f"Output size ({channels}) of the {stage.name} network is not equal "
                                f"to used emotions vector size ({len(labels)})", stage=stage.name)
    row = t.reshape(t.shape[0], -1)[idx]
    r = {lbl: float(v) for lbl, v in zip(labels, row)}
    if stage.raw:
        log.debug("[%d] element, predicted emotions (name = prob): %s", idx,
                  ", ".join(f"{k} = {v:.4f}" for k, v in r.items()))
    return r


def _landmarks(stage: ModelStage, idx: int) -> Landmarks:
    t = stage._tensor("landmarks")
    n_lm = t.shape[1]
    flat = t.reshape(-1)
    base = idx * n_lm
    pts = tuple((float(flat[base + 2 * k]), float(flat[base + 2 * k + 1])) for k in range(n_lm // 2))
    if stage.raw:
        log.debug("[%d] element, normed facial landmarks coordinates (x, y): %s", idx,
                  " ".join(f"({x:.4f}, {y:.4f})" for x, y in pts))
    return pts


def _antispoofing(stage: ModelStage, idx: int) -> float:
    # class 0 is "real"
    r = float(stage._tensor("prob").reshape(-1)[2 * idx]) * 100
    if stage.raw:
        log.debug("[%d] element, real face probability = %.2f", idx, r)
    return r


_DECODERS: Dict[StageKind, Callable[[ModelStage, int], object]] = {
    StageKind.FACE_DETECTION: _detections,
    StageKind.AGE_GENDER:     _age_gender,
    StageKind.HEAD_POSE:      _head_pose,
    StageKind.EMOTIONS:       _emotions,
    StageKind.LANDMARKS:      _landmarks,
    StageKind.ANTISPOOFING:   _antispoofing,
}
