# facecascade/loader.py — bind stages to a backend with device-specific plugin config
from __future__ import annotations
import dataclasses
import logging
from typing import Dict, Optional

from .backend import InferenceBackend, KEY_DYN_BATCH_ENABLED, YES
from .stages import ModelStage

log = logging.getLogger(__name__)

_DYN_BATCH_DEVICES = ("CPU", "GPU")


def supports_dynamic_batch(device: str) -> bool:
    return any(d in device.upper() for d in _DYN_BATCH_DEVICES)


class Load:
    """Load(stage).into(backend, device, enable_dynamic_batch)"""

    def __init__(self, stage: ModelStage):
        self.stage = stage

    def plugin_config(self, device: str, enable_dynamic_batch: bool) -> Dict[str, str]:
        config: Dict[str, str] = {}
        if enable_dynamic_batch and self.stage.config.dynamic_batch and supports_dynamic_batch(device):
            config[KEY_DYN_BATCH_ENABLED] = YES
        return config

    def into(self, backend: InferenceBackend, device: Optional[str] = None, enable_dynamic_batch: bool = False) -> bool:
        st = self.stage
        if not st.configured:
            return st.bind(backend)          # marks it disabled, no backend call
        if device and device != st.config.device:
            st.config = dataclasses.replace(st.config, device=device)
        device = st.config.device
        st.bind(backend, self.plugin_config(device, enable_dynamic_batch))
        log.info("[Loader] %s: %s on %s", st.name, st.config.model_path, device)
        log.info("[Loader] \tBatch size is set to %d%s", st.capacity, " (dynamic)" if st.dyn_batch else "")
        return True
