# -*- coding: utf-8 -*-
from __future__ import annotations
import numpy as np
import pytest

from fakes import (
    FakeBackend, SSD_ROWS, ssd_spec, age_gender_spec, head_pose_spec,
    emotions_spec, landmarks_spec, antispoof_spec,
)


@pytest.fixture
def frame():
    rng = np.random.default_rng(0)
    return rng.integers(0, 255, size=(256, 512, 3), dtype=np.uint8)


@pytest.fixture
def models():
    return {
        "fd.onnx": ssd_spec(SSD_ROWS),
        "ag.onnx": age_gender_spec(),
        "hp.onnx": head_pose_spec(),
        "em.onnx": emotions_spec(),
        "lm.onnx": landmarks_spec(),
        "as.onnx": antispoof_spec(),
    }


@pytest.fixture
def backend(models):
    be = FakeBackend(models)
    yield be
    be.close()
