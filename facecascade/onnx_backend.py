# facecascade/onnx_backend.py — onnxruntime adapter
from __future__ import annotations
import logging
from typing import Dict, List, Mapping, Optional

import numpy as np
import onnxruntime as ort

from .backend import ExecutorBackend, ModelHandle, TensorInfo

log = logging.getLogger(__name__)

_ORT_DTYPES = {
    "tensor(float)":   np.float32,
    "tensor(float16)": np.float16,
    "tensor(double)":  np.float64,
    "tensor(uint8)":   np.uint8,
    "tensor(int8)":    np.int8,
    "tensor(int32)":   np.int32,
    "tensor(int64)":   np.int64,
}


def _providers_for(device: str):
    dev = device.upper()
    avail = ort.get_available_providers()
    if ("GPU" in dev or "CUDA" in dev) and "CUDAExecutionProvider" in avail:
        return ["CUDAExecutionProvider", "CPUExecutionProvider"]
    if "GPU" in dev or "CUDA" in dev:
        log.warning("[ORT] CUDAExecutionProvider unavailable, %s runs on CPU", device)
    return ["CPUExecutionProvider"]


class _OrtModel(ModelHandle):
    def __init__(self, path, device, config, session: "ort.InferenceSession"):
        super().__init__(path, device, config)
        self.session = session
        first = session.get_inputs()[0].shape[0] if session.get_inputs() else None
        # batch dim baked into the graph; None when symbolic
        self.native_batch = first if isinstance(first, int) and first > 0 else None


class OnnxBackend(ExecutorBackend):
    """
    Graphs exported with a fixed batch still accept set_batch_size(n):
    the request is sized to n and _forward runs the session in chunks of
    the graph's own batch, padding the last chunk.
    """

    def __init__(self, num_workers: int = 2, intra_op_threads: int = 0):
        super().__init__(num_workers)
        self._intra = int(intra_op_threads)

    def load_model(self, path: str, device: str = "CPU", config: Optional[Mapping[str, str]] = None) -> _OrtModel:
        so = ort.SessionOptions()
        if self._intra > 0:
            so.intra_op_num_threads = self._intra
        sess = ort.InferenceSession(str(path), sess_options=so, providers=_providers_for(device))
        log.debug("[ORT] loaded %s with %s", path, sess.get_providers())
        return _OrtModel(path, device, config, sess)

    def _describe(self, handle: _OrtModel, args, strict: bool) -> Dict[str, TensorInfo]:
        infos: Dict[str, TensorInfo] = {}
        for a in args:
            shape = []
            for i, d in enumerate(a.shape):
                static = isinstance(d, int) and d > 0
                if i == 0 and (not static or d == handle.native_batch):
                    shape.append(handle.batch_size)
                elif static:
                    shape.append(d)
                elif not strict:
                    # data-dependent output dim, e.g. number of proposals
                    shape.append(-1)
                else:
                    raise ValueError(f"{handle.path}: '{a.name}' has unresolved dim {i} ({d!r})")
            infos[a.name] = TensorInfo(a.name, tuple(shape), np.dtype(_ORT_DTYPES.get(a.type, np.float32)))
        return infos

    def get_input_info(self, handle: _OrtModel) -> Dict[str, TensorInfo]:
        return self._describe(handle, handle.session.get_inputs(), strict=True)

    def get_output_info(self, handle: _OrtModel) -> Dict[str, TensorInfo]:
        return self._describe(handle, handle.session.get_outputs(), strict=False)

    def _forward(self, handle: _OrtModel, feed: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
        names = [o.name for o in handle.session.get_outputs()]
        step = handle.native_batch
        if step is None:
            outs = handle.session.run(names, feed)
            return {n: np.asarray(o) for n, o in zip(names, outs)}

        total = next(iter(feed.values())).shape[0]
        parts: Dict[str, List[np.ndarray]] = {n: [] for n in names}
        for lo in range(0, total, step):
            chunk = {}
            for k, v in feed.items():
                c = v[lo:lo + step]
                if len(c) < step:
                    c = np.concatenate([c, np.zeros((step - len(c),) + c.shape[1:], c.dtype)])
                chunk[k] = c
            for n, o in zip(names, handle.session.run(names, chunk)):
                parts[n].append(np.asarray(o))
        return {n: np.concatenate(p)[:total] for n, p in parts.items()}
