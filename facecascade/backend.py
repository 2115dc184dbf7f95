# facecascade/backend.py — inference backend interface + shared request machinery
from __future__ import annotations
import abc
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np

log = logging.getLogger(__name__)

# plugin config keys understood by the adapters
KEY_DYN_BATCH_ENABLED = "DYN_BATCH_ENABLED"
YES, NO = "YES", "NO"


@dataclass(frozen=True)
class TensorInfo:
    name: str
    shape: Tuple[int, ...]
    dtype: np.dtype

    @property
    def rank(self) -> int:
        return len(self.shape)


class InferenceBackend(abc.ABC):
    """Opaque tensor runtime. Handles and requests are backend-owned objects."""

    @abc.abstractmethod
    def load_model(self, path: str, device: str = "CPU", config: Optional[Mapping[str, str]] = None) -> Any: ...

    @abc.abstractmethod
    def set_batch_size(self, handle, n: int): ...

    @abc.abstractmethod
    def get_input_info(self, handle) -> Dict[str, TensorInfo]: ...

    @abc.abstractmethod
    def get_output_info(self, handle) -> Dict[str, TensorInfo]: ...

    @abc.abstractmethod
    def create_request(self, handle) -> Any: ...

    @abc.abstractmethod
    def get_tensor(self, request, name: str) -> np.ndarray: ...

    @abc.abstractmethod
    def run_sync(self, request): ...

    @abc.abstractmethod
    def run_async(self, request): ...

    @abc.abstractmethod
    def await_completion(self, request): ...

    @abc.abstractmethod
    def set_dynamic_batch_size(self, request, n: int): ...

    def close(self):
        pass


class ModelHandle:
    """Loaded network plus the state the executor needs to feed it."""

    def __init__(self, path: str, device: str, config: Optional[Mapping[str, str]] = None):
        self.path = path
        self.device = device
        self.config = dict(config or {})
        self.batch_size = 1

    @property
    def dyn_batch(self) -> bool:
        return self.config.get(KEY_DYN_BATCH_ENABLED) == YES


class Request:
    def __init__(self, handle: ModelHandle, inputs: Dict[str, np.ndarray]):
        self.handle = handle
        self.inputs = inputs
        self.outputs: Dict[str, np.ndarray] = {}
        self.active_batch: Optional[int] = None
        self.future: Optional[Future] = None

    @property
    def busy(self) -> bool:
        return self.future is not None and not self.future.done()


class ExecutorBackend(InferenceBackend):
    """
    Request bookkeeping shared by the concrete adapters.
    Subclasses implement model loading, tensor descriptors and _forward();
    async requests run on a private thread pool.
    """

    def __init__(self, num_workers: int = 2):
        self._pool = ThreadPoolExecutor(max_workers=max(1, int(num_workers)),
                                        thread_name_prefix=type(self).__name__)

    @abc.abstractmethod
    def _forward(self, handle: ModelHandle, feed: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
        """Run one forward pass; returns output name -> host array."""

    def set_batch_size(self, handle: ModelHandle, n: int):
        handle.batch_size = max(1, int(n))

    def create_request(self, handle: ModelHandle) -> Request:
        bufs = {name: np.zeros(info.shape, dtype=info.dtype)
                for name, info in self.get_input_info(handle).items()}
        return Request(handle, bufs)

    def get_tensor(self, request: Request, name: str) -> np.ndarray:
        if name in request.inputs:
            return request.inputs[name]
        if request.busy:
            raise RuntimeError(f"output '{name}' read while request is still running")
        try:
            out = request.outputs[name]
        except KeyError:
            raise KeyError(f"no tensor named '{name}' (request not run yet?)") from None
        view = out.view()
        view.flags.writeable = False
        return view

    def set_dynamic_batch_size(self, request: Request, n: int):
        if not request.handle.dyn_batch:
            log.debug("[Backend] dynamic batch not enabled for %s; ignoring size %d", request.handle.path, n)
            return
        request.active_batch = max(1, int(n))

    def _feed(self, request: Request) -> Dict[str, np.ndarray]:
        n = request.active_batch
        if n is None:
            return dict(request.inputs)
        return {k: v[:n] for k, v in request.inputs.items()}

    def _run(self, request: Request):
        outs = self._forward(request.handle, self._feed(request))
        # publish only complete results
        request.outputs = outs

    def run_sync(self, request: Request):
        self.await_completion(request)
        self._run(request)

    def run_async(self, request: Request):
        self.await_completion(request)
        request.future = self._pool.submit(self._run, request)

    def await_completion(self, request: Request):
        fut = request.future
        if fut is None:
            return
        try:
            fut.result()
        finally:
            request.future = None

    def close(self):
        self._pool.shutdown(wait=True)
