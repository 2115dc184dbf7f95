# -*- coding: utf-8 -*-
from __future__ import annotations
from unittest import mock

import pytest

from facecascade.backend import InferenceBackend, KEY_DYN_BATCH_ENABLED, YES
from facecascade.loader import Load, supports_dynamic_batch
from facecascade.stages import ModelStage
from facecascade.types import StageConfig, StageKind


@pytest.mark.parametrize("device,ok", [
    ("CPU", True), ("GPU", True), ("GPU.1", True), ("HETERO:FPGA,CPU", True), ("cpu", True),
    ("MYRIAD", False), ("HDDL", False),
])
def test_dynamic_batch_devices(device, ok):
    assert supports_dynamic_batch(device) is ok


def _stage(**kw):
    return ModelStage(StageConfig(kind=StageKind.ANTISPOOFING, model_path="as.onnx", **kw))


def test_plugin_config_needs_both_switches():
    assert Load(_stage(dynamic_batch=True)).plugin_config("CPU", True) == {KEY_DYN_BATCH_ENABLED: YES}
    assert Load(_stage(dynamic_batch=True)).plugin_config("CPU", False) == {}
    assert Load(_stage(dynamic_batch=False)).plugin_config("CPU", True) == {}
    assert Load(_stage(dynamic_batch=True)).plugin_config("MYRIAD", True) == {}


def test_into_binds_with_plugin_config(backend, caplog):
    st = _stage(max_batch=4, dynamic_batch=True)
    with caplog.at_level("INFO"):
        assert Load(st).into(backend, enable_dynamic_batch=True)
    assert st.is_enabled()
    assert st.dyn_batch
    assert backend.loaded == [("as.onnx", "CPU", {KEY_DYN_BATCH_ENABLED: YES})]
    assert "Batch size is set to 4" in caplog.text


def test_into_device_override(backend):
    st = _stage()
    Load(st).into(backend, device="GPU")
    assert backend.loaded[0][1] == "GPU"
    assert st.config.device == "GPU"


def test_into_unconfigured_stage_skips_backend():
    be = mock.MagicMock(spec=InferenceBackend)
    st = ModelStage(StageConfig(kind=StageKind.LANDMARKS))
    assert Load(st).into(be, device="GPU") is False
    assert not st.is_enabled()
    assert be.mock_calls == []
