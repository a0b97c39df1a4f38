"""
POPCORN CLI - Command-line interface for storyboard generation.

명령:
- plan: 레퍼런스 분석 + 플랜만 출력
- run: 프로젝트 생성 후 시퀀스 전체 실행
- resume: 저장된 프로젝트 이어서 실행 (완료된 단위는 건너뜀)
- animate: 프레임 1개 애니메이션
- status: 프로젝트 상태/프레임 요약
"""

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

# Add parent directory to path for imports
sys.path.append(str(Path(__file__).parent.parent))

from config import init_settings
from schemas import Brief, SequenceResult
from agents.project_store import build_project_store
from pipeline import SequencePipeline
from utils.errors import PopcornError


def print_banner():
    """Print POPCORN banner."""
    banner = """
=====================================================================
   ██████╗  ██████╗ ██████╗  ██████╗ ██████╗ ██████╗ ███╗   ██╗
   ██╔══██╗██╔═══██╗██╔══██╗██╔════╝██╔═══██╗██╔══██╗████╗  ██║
   ██████╔╝██║   ██║██████╔╝██║     ██║   ██║██████╔╝██╔██╗ ██║
   ██╔═══╝ ██║   ██║██╔═══╝ ██║     ██║   ██║██╔══██╗██║╚██╗██║
   ██║     ╚██████╔╝██║     ╚██████╗╚██████╔╝██║  ██║██║ ╚████║
   ╚═╝      ╚═════╝ ╚═╝      ╚═════╝ ╚═════╝ ╚═╝  ╚═╝╚═╝  ╚═══╝

              AI Storyboard Generator (v1.0)
              Backgrounds · Frames · Clips
=====================================================================
"""
    print(banner)


def load_env():
    """Load environment variables from .env file."""
    load_dotenv()
    print("[OK] Environment variables loaded")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="popcorn", description="POPCORN storyboard generator")
    parser.add_argument("--config", help="Path to popcorn.yaml (default: POPCORN_CONFIG or config/popcorn.yaml)")
    sub = parser.add_subparsers(dest="command", required=True)

    def add_brief_args(p):
        p.add_argument("brief", help="Creative direction text")
        p.add_argument("--style", default=None, help="Style label (default from config)")
        p.add_argument("--frames", type=int, default=None, help="Number of frames")
        p.add_argument("--ref", action="append", default=[], dest="refs", help="Reference image URL (repeatable)")
        p.add_argument("--board", default=None, help="Elements board image URL")
        p.add_argument("--seed", default=None, help="Seed image URL")

    p_plan = sub.add_parser("plan", help="Analyze references and print a plan")
    add_brief_args(p_plan)

    p_run = sub.add_parser("run", help="Generate a full sequence")
    add_brief_args(p_run)
    p_run.add_argument("--project-id", default=None)
    p_run.add_argument("--no-anchor", action="store_true", help="Skip the anchor image stage")
    p_run.add_argument("--animate", action="store_true", help="Animate frames after generation")

    p_resume = sub.add_parser("resume", help="Resume a stored project")
    p_resume.add_argument("project_id")

    p_animate = sub.add_parser("animate", help="Animate one frame of a stored project")
    p_animate.add_argument("project_id")
    p_animate.add_argument("frame_number", type=int)
    p_animate.add_argument("--prompt", default=None, help="Motion prompt (default: planned movement)")

    p_status = sub.add_parser("status", help="Show project status")
    p_status.add_argument("project_id")

    return parser


def _brief(args, settings, **extra) -> Brief:
    return Brief(
        creative_direction=args.brief,
        style=args.style or settings.generation.default_style,
        frame_count=args.frames or settings.generation.default_frame_count,
        seed_image_url=args.seed,
        elements_board_url=args.board,
        **extra,
    )


def print_result(result: SequenceResult):
    """Print sequence summary."""
    print("\n" + "=" * 60)
    print(f"Project {result.project_id}: {result.status.value.upper()}")
    print("=" * 60)
    for bg in result.plan.backgrounds:
        print(f"  [BG {bg.id}] {bg.status.value:<10} {bg.url or bg.error or ''}")
    for frame in result.plan.frames:
        clip = f" | clip: {frame.video_url}" if frame.video_url else ""
        print(f"  [Frame {frame.frame_number}] {frame.status.value:<10} {frame.url or frame.error or ''}{clip}")
    if result.failures:
        print(f"\nFailures ({len(result.failures)}):")
        for failure in result.failures:
            print(f"  - {failure.unit.value} {failure.unit_id} [{failure.error_type}] {failure.reason}")
    print()


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)
    print_banner()
    load_env()

    settings = init_settings(config_path=args.config)

    try:
        if args.command == "status":
            record = build_project_store(settings).load_record(args.project_id)
            project = record.project
            print(f"Project {project.id}: {project.status.value} ({project.total_scenes} frames)")
            if project.error_message:
                print(f"  Error: {project.error_message}")
            for scene in record.scenes:
                print(f"  [Frame {scene.scene_number}] {scene.status.value:<10} {scene.image_url or scene.error or ''}")
            return 0

        pipeline = SequencePipeline.from_settings(settings)

        if args.command == "plan":
            plan, references = pipeline.plan(_brief(args, settings), args.refs)
            print(json.dumps(
                {"plan": plan.model_dump(mode="json"),
                 "references": [r.model_dump(mode="json") for r in references]},
                ensure_ascii=False, indent=2,
            ))

        elif args.command == "run":
            brief = _brief(args, settings, use_anchor=not args.no_anchor, animate=args.animate)
            project = pipeline.store.create_project(args.project_id, brief=brief, reference_urls=args.refs)
            print(f"Project ID: {project.id}")
            print_result(pipeline.run_sequence(project.id, brief, args.refs))

        elif args.command == "resume":
            print_result(pipeline.resume(args.project_id))

        elif args.command == "animate":
            frame = pipeline.animate_frame(args.project_id, args.frame_number, args.prompt)
            print(f"Frame {frame.frame_number} clip: {frame.video_url}")

    except KeyboardInterrupt:
        print("\n\n[INTERRUPTED] Generation interrupted by user.")
        return 1

    except PopcornError as e:
        print(f"\n\n[ERROR] {type(e).__name__}: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
