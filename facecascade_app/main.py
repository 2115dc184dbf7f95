# -*- coding: utf-8 -*-
from __future__ import annotations
import sys, queue, logging, argparse

from facecascade.errors import ContractViolation
from facecascade.pipeline import build_pipeline
from facecascade.telemetry import Telemetry
from facecascade.types import StageKind

from facecascade_app.wiring import bootstrap as B
from facecascade_app.decoders.pyav_decoder import DecoderThread

log = logging.getLogger("facecascade")

_MODEL_FLAGS = {
    StageKind.FACE_DETECTION: "m",
    StageKind.AGE_GENDER:     "m_ag",
    StageKind.HEAD_POSE:      "m_hp",
    StageKind.EMOTIONS:       "m_em",
    StageKind.LANDMARKS:      "m_lm",
    StageKind.ANTISPOOFING:   "m_am",
}


def build_parser() -> argparse.ArgumentParser:
    env_paths = B.model_paths_from_env()
    p = argparse.ArgumentParser(description="face detection + per-face analytics over a video file")
    p.add_argument("video", help="input video file path")
    for kind, flag in _MODEL_FLAGS.items():
        p.add_argument(f"--{flag}", default=env_paths[kind], help=f"{kind.title} model (empty = disabled)")
    p.add_argument("-d", "--device", default=B.DEVICE)
    p.add_argument("--backend", default=B.BACKEND, choices=("onnx", "torch"))
    p.add_argument("-n", "--max-batch", type=int, default=B.MAX_BATCH, help="max faces per secondary batch")
    p.add_argument("--dyn-batch", action="store_true", default=B.DYN_BATCH)
    p.add_argument("--async", dest="is_async", action="store_true", default=B.ASYNC)
    p.add_argument("-t", "--threshold", type=float, default=B.CONF_THRES)
    p.add_argument("--bb-enlarge", type=float, default=B.BB_ENLARGE)
    p.add_argument("--dx", type=float, default=B.BB_DX)
    p.add_argument("--dy", type=float, default=B.BB_DY)
    p.add_argument("-r", "--raw", action="store_true", default=B.RAW_OUTPUT, help="log raw network outputs")
    p.add_argument("--limit", type=int, default=0, help="stop after N frames (0 = all)")
    p.add_argument("--telemetry-csv", default=B.TELEM_CSV)
    p.add_argument("-v", "--verbose", action="store_true")
    return p


def format_report(report) -> str:
    lines = [f"{'stage':<32}{'count':>8}{'total ms':>12}{'last ms':>10}{'ema ms':>10}{'p95 ms':>10}"]
    for name, st in report.items():
        lines.append(f"{name:<32}{st['count']:>8}{st['total']:>12.1f}{st['last']:>10.2f}"
                     f"{st['smoothed']:>10.2f}{st['p95']:>10.2f}")
    return "\n".join(lines)


def run_frame(pipeline, fid: int, frame, telemetry: Telemetry):
    """Process one frame; a failed stage loses only its own results."""
    try:
        res = pipeline.process(frame)
    except ContractViolation as e:
        log.error("[Main] frame %d: %s", fid, e)
        telemetry.inc("decode_errors")
        res = e.result
        if res is None:
            return None
    telemetry.inc("frames")
    telemetry.inc("faces", len(res.detections))
    log.debug("[Main] frame %d: %d faces, %s", fid, len(res.detections),
              {k.name: len(v) for k, v in res.attributes.items()})
    return res


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if (args.verbose or args.raw) else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    paths = {kind: getattr(args, flag) for kind, flag in _MODEL_FLAGS.items()}
    config = B.make_config(paths, device=args.device, max_batch=args.max_batch, dyn_batch=args.dyn_batch,
                           is_async=args.is_async, threshold=args.threshold,
                           bb=(args.bb_enlarge, args.dx, args.dy), raw=args.raw)

    telemetry = Telemetry(csv_path=args.telemetry_csv, period_sec=B.TELEM_PERIOD)
    backend = B.pick_backend(args.backend)
    try:
        pipeline = build_pipeline(config, backend, tracker=telemetry.tracker)
    except ContractViolation as e:
        log.error("[Main] model rejected: %s", e)
        backend.close()
        return 2

    frame_q: "queue.Queue" = queue.Queue(maxsize=8)
    stats: dict = {}
    telemetry.gauge("q_frames", frame_q.qsize)
    telemetry.start()
    dec = DecoderThread(args.video, frame_q, stats, telemetry, limit=args.limit)
    dec.start()

    try:
        while True:
            item = frame_q.get()
            if item is None:
                break
            fid, frame = item
            run_frame(pipeline, fid, frame, telemetry)
    except KeyboardInterrupt:
        dec.stop_flag = True
    finally:
        telemetry.stop()
        backend.close()

    print(format_report(pipeline.get_latency_report()))
    if "error" in stats:
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
