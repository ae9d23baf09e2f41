from __future__ import annotations

import argparse
from pathlib import Path
import signal
from typing import List, Optional

from Thickness.config import SIDES, RunConfig, default_threads, load_tool_config
from Thickness.errors import ConfigurationError, ExternalToolError, ThicknessError
from Thickness.inputs import probe_segmentations
from Thickness.pipeline import STAGES, ThicknessRunner, parse_stage_spec


INTERRUPTED = 130


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Multi-template MTL thickness pipeline for ASHS segmentations")
    sub = parser.add_subparsers(dest="command", required=True)

    run_p = sub.add_parser("run", help="Run the thickness pipeline for one subject")
    run_p.add_argument(
        "--input-dir",
        required=True,
        type=Path,
        help="ASHS output directory with *_MTLSeg_<side>.nii.gz (fastashs) or *_<side>_lfseg_heur.nii.gz (ashs)",
    )
    run_p.add_argument("--template-dir", required=True, type=Path, help="Multi-template thickness template directory")
    run_p.add_argument("--output-dir", required=True, type=Path, help="Directory for the thickness CSV and fitted meshes")
    run_p.add_argument("--work-dir", type=Path, default=None, help="Working directory (default: the output directory)")
    run_p.add_argument("--subject-id", default=None, help="Subject id (default: prefix of the input segmentation)")
    run_p.add_argument("--side", choices=("left", "right", "both"), default="both", help="Hemisphere(s) to process")
    run_p.add_argument(
        "--stages",
        default=None,
        help="Stage or inclusive range, e.g. 3 or 1-8 (default: 1-5, variant template only)",
    )
    run_p.add_argument("--threads", type=int, default=None, help="Threads for the registration tools (default: job cores)")
    run_p.add_argument("--tidy", action="store_true", help="Delete the working files after a successful run")
    run_p.add_argument("--debug", action="store_true", help="Keep scratch files when the run is interrupted")
    run_p.add_argument("--config", type=Path, default=None, help="YAML with a 'tools' section locating the executables")

    sub.add_parser("stages", help="List the pipeline stages")
    return parser.parse_args(argv)


def build_run_config(args: argparse.Namespace) -> RunConfig:
    sides = list(SIDES) if args.side == "both" else [args.side]
    inputs = probe_segmentations(args.input_dir, sides)
    start, end = parse_stage_spec(args.stages)
    threads = args.threads if args.threads is not None else default_threads()
    if threads < 1:
        raise ConfigurationError(f"Number of threads must be a positive integer. Current value: {threads}")
    if not args.template_dir.is_dir():
        raise ConfigurationError(f"Template directory {args.template_dir} does not exist")
    output_dir = args.output_dir.resolve()
    output_dir.mkdir(parents=True, exist_ok=True)
    return RunConfig(
        subject_id=args.subject_id or inputs.prefix,
        input_segs=inputs.segs,
        template_dir=args.template_dir.resolve(),
        output_dir=output_dir,
        work_dir=(args.work_dir or output_dir).resolve(),
        threads=threads,
        stage_start=start,
        stage_end=end,
        tidy=args.tidy,
        debug=args.debug,
    )


def _terminate(signum, frame) -> None:
    raise KeyboardInterrupt


def cmd_run(args: argparse.Namespace) -> int:
    cfg = build_run_config(args)
    runner = ThicknessRunner(cfg, tools=load_tool_config(args.config))
    print(f"[run] subject {cfg.subject_id}, sides {','.join(cfg.sides)}, stages {cfg.stage_start}-{cfg.stage_end}")
    previous = signal.signal(signal.SIGTERM, _terminate)
    try:
        runner.run()
    except KeyboardInterrupt:
        print("[run] Interrupted")
        runner.remove_scratch()
        return INTERRUPTED
    except ExternalToolError as exc:
        print(f"\n{exc}\n")
        print("EXITED ON ERROR - PROCESSING MAY BE INCOMPLETE")
        return exc.exit_code
    finally:
        signal.signal(signal.SIGTERM, previous)
    return 0


def cmd_stages(args: argparse.Namespace) -> int:
    for stage in STAGES:
        print(f"{stage.number}: {stage.name:<15} {stage.description}")
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    try:
        if args.command == "run":
            code = cmd_run(args)
        else:
            code = cmd_stages(args)
    except ThicknessError as exc:
        print(f"[error] {exc}")
        code = exc.exit_code
    if code:
        raise SystemExit(code)


if __name__ == "__main__":
    main()
