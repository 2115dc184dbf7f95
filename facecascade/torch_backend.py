# facecascade/torch_backend.py — TorchScript adapter
from __future__ import annotations
import json
import logging
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np
import torch

from .backend import ExecutorBackend, ModelHandle, TensorInfo

log = logging.getLogger(__name__)

IO_META = "io.json"   # {"inputs": {"data": [1,3,H,W]}, "outputs": ["name", ...]}


def _torch_device(device: str) -> torch.device:
    dev = device.upper()
    if ("GPU" in dev or "CUDA" in dev) and torch.cuda.is_available():
        return torch.device("cuda")
    return torch.device("cpu")


class _ScriptModel(ModelHandle):
    def __init__(self, path, device, config, module, inputs: Dict[str, List[int]], outputs: List[str]):
        super().__init__(path, device, config)
        self.module = module
        self.dev = _torch_device(device)
        self.input_shapes = {k: tuple(int(d) for d in v) for k, v in inputs.items()}
        self.output_names = list(outputs)
        self.stream = torch.cuda.Stream(self.dev) if self.dev.type == "cuda" else None
        self._probed: Dict[int, Dict[str, TensorInfo]] = {}


class TorchBackend(ExecutorBackend):
    """
    Loads TorchScript archives saved with an io.json extra file describing
    input shapes and output names. Output descriptors come from a dry forward
    pass at the configured batch size.
    """

    def load_model(self, path: str, device: str = "CPU", config: Optional[Mapping[str, str]] = None) -> _ScriptModel:
        extra = {IO_META: ""}
        dev = _torch_device(device)
        module = torch.jit.load(str(path), map_location=dev, _extra_files=extra)
        module.eval()
        if not extra[IO_META]:
            raise ValueError(f"{path}: missing {IO_META} extra file (input shapes / output names)")
        meta = json.loads(extra[IO_META])
        return _ScriptModel(path, device, config, module, meta["inputs"], meta["outputs"])

    def _input_shape(self, handle: _ScriptModel, name: str) -> Tuple[int, ...]:
        shape = handle.input_shapes[name]
        return (handle.batch_size,) + shape[1:]

    def get_input_info(self, handle: _ScriptModel) -> Dict[str, TensorInfo]:
        return {n: TensorInfo(n, self._input_shape(handle, n), np.dtype(np.float32))
                for n in handle.input_shapes}

    def get_output_info(self, handle: _ScriptModel) -> Dict[str, TensorInfo]:
        cached = handle._probed.get(handle.batch_size)
        if cached is not None:
            return cached
        feed = {n: np.zeros(self._input_shape(handle, n), np.float32) for n in handle.input_shapes}
        outs = self._forward(handle, feed)
        infos = {n: TensorInfo(n, tuple(a.shape), a.dtype) for n, a in outs.items()}
        handle._probed[handle.batch_size] = infos
        return infos

    def _name_outputs(self, handle: _ScriptModel, res) -> Dict[str, torch.Tensor]:
        if isinstance(res, dict):
            return {n: res[n] for n in handle.output_names}
        if isinstance(res, torch.Tensor):
            res = (res,)
        if len(res) != len(handle.output_names):
            raise RuntimeError(f"{handle.path}: model returned {len(res)} outputs, io.json names {len(handle.output_names)}")
        return dict(zip(handle.output_names, res))

    @torch.inference_mode()
    def _forward(self, handle: _ScriptModel, feed: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
        args = [torch.from_numpy(np.ascontiguousarray(feed[n], dtype=np.float32)).to(handle.dev, non_blocking=True)
                for n in handle.input_shapes]
        if handle.stream is not None:
            handle.stream.wait_stream(torch.cuda.current_stream(handle.dev))
            with torch.cuda.stream(handle.stream):
                res = handle.module(*args)
            handle.stream.synchronize()
        else:
            res = handle.module(*args)
        named = self._name_outputs(handle, res)
        return {n: t.detach().cpu().numpy() for n, t in named.items()}
