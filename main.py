import argparse, os, json, logging
import time
from typing import Dict, List, Optional

from sfm_mapper.config import load_config
from sfm_mapper.errors import SolverDivergence
from sfm_mapper.layout import load_layout, load_cameras, save_layout
from sfm_mapper.mapper import SfmMapper
from sfm_mapper.models import EstimatorPhase, pose_to_dict
from sfm_mapper.source import ReplayBatchSource, BatchSourceError
from sfm_mapper_common.kpi_logging import KPILogger


def parse_args():
    ap = argparse.ArgumentParser(description="Replay odometry + landmark keyframes through the incremental mapper.")
    ap.add_argument("--log", required=True, help="Path to the replay log (.json)")
    ap.add_argument("--layout", required=True, help="Prior landmark layout (AprilTagFieldLayout JSON)")
    ap.add_argument("--cameras", required=True, help="Camera calibration JSON")
    ap.add_argument("--export-path", required=True, help="Directory to write outputs")
    ap.add_argument("--config", default=None, help="Optional mapper config JSON")
    ap.add_argument("--fixed-tags", default=None,
                    help="Comma-separated landmark ids pinned to their layout pose (overrides config)")
    ap.add_argument("--allow-unmapped", action="store_true", default=None,
                    help="Seed landmarks missing from the layout by back-projection")
    ap.add_argument("--robust", choices=["none", "huber", "cauchy"], default=None, help="Camera robust kernel")
    ap.add_argument("--robust-k", type=float, default=None, help="Robust tuning parameter")
    ap.add_argument("--tag-size", type=float, default=None, help="Landmark side length in meters")
    ap.add_argument("--relin-th", type=float, default=None, help="iSAM2 relinearize threshold")
    ap.add_argument("--relin-skip", type=int, default=None, help="iSAM2 relinearize skip")
    ap.add_argument("--batch-window", type=float, default=0.1,
                    help="Replay window (log time units) grouped into one optimize call")
    ap.add_argument("--quat-order", choices=["wxyz", "xyzw"], default="wxyz", help="Quaternion order in files")
    ap.add_argument("--plot", action="store_true", help="Export a top-down PNG of the result")
    ap.add_argument("--kpi", action="store_true", help="Write KPI events to kpi_events.jsonl")
    ap.add_argument("--log-level", default="INFO", help="Logging level")
    return ap.parse_args()


def ensure_dir(p):
    os.makedirs(p, exist_ok=True)


def _parse_ids(csv: Optional[str]) -> Optional[List[int]]:
    if csv is None:
        return None
    return [int(p.strip()) for p in csv.split(",") if p.strip()]


def run(args, out_dir: str) -> Dict[str, object]:
    log = logging.getLogger("sfm_mapper.cli")
    cfg = load_config(args.config, {
        "fixed_landmarks": _parse_ids(args.fixed_tags),
        "allow_unmapped_landmarks": args.allow_unmapped,
        "camera_robust": args.robust,
        "camera_robust_k": args.robust_k,
        "tag_size": args.tag_size,
        "relinearize_threshold": args.relin_th,
        "relinearize_skip": args.relin_skip,
    })
    layout = load_layout(args.layout)
    cameras = load_cameras(args.cameras, args.quat_order)
    log.info("Cameras: %s; fixed landmarks: %s", list(cameras.indices()), cfg.fixed_landmarks or "none")

    kpi = KPILogger(log_path=os.path.join(out_dir, "kpi_events.jsonl"), emit_to_logger=False) if args.kpi else None
    mapper = SfmMapper(layout, cameras, cfg, kpi=kpi)

    rejected = 0
    batches = 0
    pnp_poses = []
    start = time.perf_counter()
    try:
        with ReplayBatchSource(args.log, args.batch_window, args.quat_order) as src:
            for batch in src.iter_batches():
                batches += 1
                for kf in batch.keyframes:
                    pose = mapper.locate(kf)
                    if pose is not None:
                        pnp_poses.append({"time": kf.time, "camera": kf.camera_index, **pose_to_dict(pose)})
                try:
                    mapper.optimize(batch)
                except SolverDivergence as exc:
                    rejected += 1
                    log.warning("Dropping batch %d: %s", batches, exc)
    finally:
        if kpi:
            kpi.close()
    elapsed = time.perf_counter() - start

    result = mapper.result
    with open(os.path.join(out_dir, "trajectory.json"), "w", encoding="utf-8") as f:
        json.dump(result.to_json_dict(), f, indent=2)
    with open(os.path.join(out_dir, "pnp_poses.json"), "w", encoding="utf-8") as f:
        json.dump(pnp_poses, f, indent=2)
    save_layout(mapper.optimized_layout(), os.path.join(out_dir, "layout.json"))
    if args.plot:
        from sfm_mapper_common.viz import plot_map_2d
        prior = {lid: layout.position(lid) for lid in layout.ids()}
        plot_map_2d(result, os.path.join(out_dir, "map_xy.png"), prior=prior)

    summary = {
        "batches": batches,
        "rejected_batches": rejected,
        "phase": result.phase.value,
        "states": len(result.trajectory),
        "landmarks": len(result.landmarks),
        "has_vision": result.has_vision,
        "latest_pose": pose_to_dict(result.latest_pose) if result.latest_pose is not None else None,
        "pending_keyframes": result.pending_keyframes,
        "unsupported_landmarks": sorted(result.unsupported_landmarks),
        "counts": dict(mapper.context.counts),
        "elapsed_s": elapsed,
    }
    with open(os.path.join(out_dir, "summary.json"), "w", encoding="utf-8") as f:
        json.dump(summary, f, indent=2)
    if result.phase == EstimatorPhase.EMPTY:
        log.warning("No motion state was ever created; check that the log contains odometry")
    return summary


def main():
    args = parse_args()
    logging.basicConfig(level=args.log_level.upper(),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    out_dir = os.path.abspath(args.export_path)
    ensure_dir(out_dir)
    try:
        summary = run(args, out_dir)
    except BatchSourceError as exc:
        logging.getLogger("sfm_mapper.cli").error("Failed to open replay log: %s", exc)
        raise SystemExit(2)
    print("=== Mapper summary ===")
    print(json.dumps(summary, indent=2))


if __name__ == "__main__":
    main()
