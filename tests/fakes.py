# -*- coding: utf-8 -*-
from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

import numpy as np

from facecascade.backend import ExecutorBackend, ModelHandle, TensorInfo
from facecascade.types import DetectorParams, PipelineConfig, StageConfig, StageKind

FACE = (3, 32, 32)


@dataclass
class ModelSpec:
    inputs: Dict[str, Tuple[int, ...]]
    outputs: Dict[str, Tuple[Tuple[int, ...], type]]
    produce: Callable[[int], Dict[str, np.ndarray]]     # batch size -> outputs
    static_batch: bool = False


class FakeModel(ModelHandle):
    def __init__(self, path, device, config, spec: ModelSpec):
        super().__init__(path, device, config)
        self.spec = spec


class FakeBackend(ExecutorBackend):
    """In-memory models; outputs are canned per batch size."""

    def __init__(self, models: Dict[str, ModelSpec]):
        super().__init__(num_workers=1)
        self.models = models
        self.loaded = []
        self.batches = []

    def load_model(self, path, device="CPU", config=None):
        self.loaded.append((path, device, dict(config or {})))
        return FakeModel(path, device, config, self.models[path])

    def get_input_info(self, handle):
        out = {}
        for n, s in handle.spec.inputs.items():
            b = s[0] if handle.spec.static_batch else handle.batch_size
            out[n] = TensorInfo(n, (b,) + tuple(s[1:]), np.dtype(np.float32))
        return out

    def get_output_info(self, handle):
        return {n: TensorInfo(n, tuple(s), np.dtype(dt)) for n, (s, dt) in handle.spec.outputs.items()}

    def _forward(self, handle, feed):
        n = next(iter(feed.values())).shape[0]
        self.batches.append((handle.path, n))
        return handle.spec.produce(n)


# ---- canned models ----
def ssd_spec(rows, net=(256, 256)):
    arr = np.full((1, 1, max(len(rows) + 1, 4), 7), -1.0, np.float32)
    for i, r in enumerate(rows):
        arr[0, 0, i] = r
    return ModelSpec(inputs={"data": (1, 3) + tuple(net)},
                     outputs={"detection_out": ((1, 1, arr.shape[2], 7), np.float32)},
                     produce=lambda n: {"detection_out": arr.copy()})


def boxes_spec(boxes, labels, net=(256, 256)):
    b = np.asarray(boxes, np.float32).reshape(-1, 5)
    l = np.asarray(labels, np.int32)
    return ModelSpec(inputs={"image": (1, 3) + tuple(net)},
                     outputs={"boxes": ((len(b), 5), np.float32), "labels": ((len(l),), np.int32)},
                     produce=lambda n: {"boxes": b.copy(), "labels": l.copy()})


def age_gender_spec():
    def produce(n):
        age = np.array([[0.20 + 0.01 * i] for i in range(n)], np.float32)
        prob = np.array([[0.25, 0.75] if i % 2 == 0 else [0.75, 0.25] for i in range(n)], np.float32)
        return {"age_conv3": age.reshape(n, 1, 1, 1), "prob": prob.reshape(n, 2, 1, 1)}
    return ModelSpec(inputs={"data": (16,) + FACE},
                     outputs={"age_conv3": ((16, 1, 1, 1), np.float32), "prob": ((16, 2, 1, 1), np.float32)},
                     produce=produce)


def head_pose_spec():
    def produce(n):
        idx = np.arange(n, dtype=np.float32).reshape(n, 1)
        return {"angle_y_fc": idx * 10, "angle_p_fc": idx * -5, "angle_r_fc": idx + 0.5}
    return ModelSpec(inputs={"data": (16,) + FACE},
                     outputs={k: ((16, 1), np.float32) for k in ("angle_y_fc", "angle_p_fc", "angle_r_fc")},
                     produce=produce)


def emotions_spec(channels=5):
    def produce(n):
        return {"prob_emotion": np.tile(np.arange(channels, dtype=np.float32) / 8, (n, 1)).reshape(n, channels, 1, 1)}
    return ModelSpec(inputs={"data": (16,) + FACE},
                     outputs={"prob_emotion": ((16, channels, 1, 1), np.float32)},
                     produce=produce)


def landmarks_spec(name="align_fc3", width=70):
    def produce(n):
        return {name: (np.arange(n * width, dtype=np.float32) / 1024).reshape(n, width)}
    return ModelSpec(inputs={"data": (16,) + FACE},
                     outputs={name: ((16, width), np.float32)},
                     produce=produce)


def antispoof_spec():
    def produce(n):
        return {"logits": np.array([[0.5, 0.5] if i else [0.875, 0.125] for i in range(n)], np.float32)}
    return ModelSpec(inputs={"input": (16,) + FACE},
                     outputs={"logits": ((16, 2), np.float32)},
                     produce=produce)


# one 512x256 frame with two faces, 7-wide format
SSD_ROWS = [
    (0, 1, 0.75, 0.125, 0.25, 0.375, 0.5),
    (0, 1, 0.5, 0.5, 0.5, 0.625, 0.75),        # == threshold, dropped
    (0, 1, 0.875, 0.5, 0.25, 0.75, 0.75),
]


def make_config(paths=None, max_batch=16, is_async=False, dyn=False, threshold=0.5, raw=False):
    paths = paths if paths is not None else {
        StageKind.FACE_DETECTION: "fd.onnx", StageKind.AGE_GENDER: "ag.onnx",
        StageKind.HEAD_POSE: "hp.onnx", StageKind.EMOTIONS: "em.onnx",
        StageKind.LANDMARKS: "lm.onnx", StageKind.ANTISPOOFING: "as.onnx",
    }
    stages = {k: StageConfig(kind=k, model_path=p, max_batch=max_batch, is_async=is_async,
                             dynamic_batch=dyn, raw_output=raw) for k, p in paths.items()}
    return PipelineConfig(stages=stages,
                          detector=DetectorParams(threshold=threshold, bb_enlarge=1.0, bb_dx=1.0, bb_dy=1.0),
                          enable_dynamic_batch=dyn)
