# -*- coding: utf-8 -*-
"""
Environment knobs + backend selection.
Every value can be overridden from the command line in facecascade_app.main.
"""
from __future__ import annotations
import os

from facecascade.types import DetectorParams, PipelineConfig, StageConfig, StageKind, DEFAULT_EMOTIONS


def _flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() not in ("0", "", "false", "no")


# ---- device / batching ----
DEVICE      = os.getenv("DEVICE", "CPU")
MAX_BATCH   = int(os.getenv("MAX_BATCH", "16"))
DYN_BATCH   = _flag("DYN_BATCH")
ASYNC       = _flag("ASYNC")
BACKEND     = os.getenv("BACKEND", "onnx").lower()    # onnx | torch
NUM_WORKERS = int(os.getenv("NUM_WORKERS", "2"))

# ---- detector ----
CONF_THRES  = float(os.getenv("CONF_THRES", "0.5"))
BB_ENLARGE  = float(os.getenv("BB_ENLARGE", "1.2"))
BB_DX       = float(os.getenv("BB_DX", "1.0"))
BB_DY       = float(os.getenv("BB_DY", "1.0"))
RAW_OUTPUT  = _flag("RAW_OUTPUT")

EMOTIONS    = tuple(e for e in os.getenv("EMOTIONS", ",".join(DEFAULT_EMOTIONS)).split(",") if e)

# ---- telemetry ----
TELEM_CSV   = os.getenv("TELEM_CSV", "telemetry.csv")
TELEM_PERIOD = float(os.getenv("TELEM_PERIOD", "1.0"))

# empty path = stage disabled
MODEL_ENV = {
    StageKind.FACE_DETECTION: "M_FD",
    StageKind.AGE_GENDER:     "M_AG",
    StageKind.HEAD_POSE:      "M_HP",
    StageKind.EMOTIONS:       "M_EM",
    StageKind.LANDMARKS:      "M_LM",
    StageKind.ANTISPOOFING:   "M_AS",
}


def model_paths_from_env():
    return {k: os.getenv(v, "") for k, v in MODEL_ENV.items()}


def make_config(paths, device=DEVICE, max_batch=MAX_BATCH, dyn_batch=DYN_BATCH, is_async=ASYNC,
                threshold=CONF_THRES, bb=(BB_ENLARGE, BB_DX, BB_DY), raw=RAW_OUTPUT,
                emotions=EMOTIONS) -> PipelineConfig:
    stages = {
        kind: StageConfig(kind=kind, model_path=paths.get(kind, ""), device=device,
                          max_batch=max_batch, dynamic_batch=dyn_batch, is_async=is_async, raw_output=raw)
        for kind in MODEL_ENV
    }
    return PipelineConfig(
        stages=stages,
        detector=DetectorParams(threshold=threshold, bb_enlarge=bb[0], bb_dx=bb[1], bb_dy=bb[2]),
        emotion_labels=tuple(emotions),
        enable_dynamic_batch=dyn_batch,
    )


def config_from_env() -> PipelineConfig:
    return make_config(model_paths_from_env())


def pick_backend(name: str = BACKEND, num_workers: int = NUM_WORKERS):
    """onnx (default) or torch; imported lazily so only the chosen runtime is needed."""
    if name == "torch":
        from facecascade.torch_backend import TorchBackend
        return TorchBackend(num_workers=num_workers)
    if name != "onnx":
        raise ValueError(f"unknown backend '{name}' (expected onnx or torch)")
    from facecascade.onnx_backend import OnnxBackend
    return OnnxBackend(num_workers=num_workers)
