# facecascade/types.py
from __future__ import annotations
import enum
from dataclasses import dataclass, field
from typing import Dict, List, Tuple, Union

Rect = Tuple[int, int, int, int]          # x, y, w, h in frame pixels
Point = Tuple[float, float]


class StageKind(enum.Enum):
    FACE_DETECTION = "Face Detection"
    AGE_GENDER     = "Age/Gender Recognition"
    HEAD_POSE      = "Head Pose Estimation"
    EMOTIONS       = "Emotions Recognition"
    LANDMARKS      = "Facial Landmarks Estimation"
    ANTISPOOFING   = "Antispoofing"

    @property
    def title(self) -> str:
        return self.value


SECONDARY_KINDS = (
    StageKind.AGE_GENDER,
    StageKind.HEAD_POSE,
    StageKind.EMOTIONS,
    StageKind.LANDMARKS,
    StageKind.ANTISPOOFING,
)

# emotions-recognition-retail-0003 class order
DEFAULT_EMOTIONS: Tuple[str, ...] = ("neutral", "happy", "sad", "surprise", "anger")


@dataclass(frozen=True)
class StageConfig:
    kind: StageKind
    model_path: str = ""
    device: str = "CPU"
    max_batch: int = 16
    dynamic_batch: bool = False
    is_async: bool = False
    raw_output: bool = False

    @property
    def configured(self) -> bool:
        return bool(self.model_path)


@dataclass(frozen=True)
class DetectorParams:
    threshold: float = 0.5
    bb_enlarge: float = 1.2
    bb_dx: float = 1.0
    bb_dy: float = 1.0


@dataclass(frozen=True)
class PipelineConfig:
    stages: Dict[StageKind, StageConfig]
    detector: DetectorParams = DetectorParams()
    emotion_labels: Tuple[str, ...] = DEFAULT_EMOTIONS
    enable_dynamic_batch: bool = False

    def stage(self, kind: StageKind) -> StageConfig:
        # missing entries behave like an empty model path
        return self.stages.get(kind) or StageConfig(kind=kind)


@dataclass(frozen=True)
class Detection:
    label: int
    confidence: float
    box: Rect


@dataclass(frozen=True)
class AgeGender:
    age: float               # years, [0, 100]
    male_prob: float         # [0, 1]


@dataclass(frozen=True)
class HeadPose:
    yaw: float
    pitch: float
    roll: float


Emotions = Dict[str, float]
Landmarks = Tuple[Point, ...]
FaceAttribute = Union[AgeGender, HeadPose, Emotions, Landmarks, float]


@dataclass
class FrameResult:
    detections: List[Detection] = field(default_factory=list)
    # kind -> per-face results, aligned with detections by prefix
    attributes: Dict[StageKind, List[FaceAttribute]] = field(default_factory=dict)
    # stages whose decode failed this frame; they have no entry in attributes
    errors: Dict[StageKind, Exception] = field(default_factory=dict)

    def for_face(self, i: int) -> Dict[StageKind, FaceAttribute]:
        return {k: v[i] for k, v in self.attributes.items() if i < len(v)}
