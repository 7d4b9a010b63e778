"""
Local batch runner: reads one prompt per line, runs the batch against the
generation service and writes each finished artifact to disk. Bypasses the
API layer.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

# Ensure project root is importable when running from scripts/
import sys

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from genbatch_service import config
from genbatch_service.archive import build_zip, safe_filename
from genbatch_service.client import GeminiRestClient
from genbatch_service.models import AspectRatio, GenerationConfig, ModelTier, Resolution
from genbatch_service.orchestrator import BatchPolicy, require_api_key, submit_batch
from genbatch_service.preprocessing import decode_image
from genbatch_service.prompts import PromptOptions, build_batch_specs
from genbatch_service.storage import get_history_store, serialize_artifact


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a generation batch from a prompt file")
    parser.add_argument("--prompts", required=True, help="Text file with one prompt per line")
    parser.add_argument("--output", required=True, help="Directory for generated artifacts")
    parser.add_argument("--tier", default="standard", choices=[t.value for t in ModelTier])
    parser.add_argument("--aspect-ratio", default="3:4", choices=[a.value for a in AspectRatio])
    parser.add_argument("--resolution", default="1K", choices=[r.value for r in Resolution])
    parser.add_argument("--reference", action="append", default=[], help="Reference image path (repeatable)")
    parser.add_argument("--lighting", default=None, help="Lighting style, e.g. 'Golden Hour'")
    parser.add_argument("--transparent", action="store_true", help="Key out the white background")
    parser.add_argument("--preserve-background", action="store_true", help="Keep the first reference's scene")
    parser.add_argument("--max-attempts", type=int, default=None)
    parser.add_argument("--base-delay", type=float, default=None, help="Backoff base in seconds")
    parser.add_argument("--cooldown", type=float, default=None, help="Seconds between jobs")
    parser.add_argument("--zip", action="store_true", help="Also write batch.zip")
    parser.add_argument("--save-history", action="store_true", help="Persist results to the history store")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = config.get_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

    prompts_path = Path(args.prompts)
    output_dir = Path(args.output)
    if not prompts_path.exists():
        raise FileNotFoundError(f"Prompt file not found: {prompts_path}")

    references = [decode_image(Path(p).read_bytes()) for p in args.reference]
    options = PromptOptions(
        lighting=args.lighting,
        transparent=args.transparent,
        preserve_background=args.preserve_background,
    )
    gen_config = GenerationConfig(tier=args.tier, aspect_ratio=args.aspect_ratio, resolution=args.resolution)
    specs = build_batch_specs(prompts_path.read_text().splitlines(), gen_config, options, references)
    if not specs:
        print("No prompts found.")
        return

    policy = BatchPolicy.from_settings(
        settings,
        max_attempts=args.max_attempts,
        base_delay=args.base_delay,
        inter_job_cooldown=args.cooldown,
    )
    handle = submit_batch(
        specs,
        GeminiRestClient(settings),
        policy=policy,
        sink=get_history_store(settings) if args.save_history else None,
        precondition=require_api_key(settings),
        background=False,
    )

    output_dir.mkdir(parents=True, exist_ok=True)
    states = handle.states()
    for index, state in enumerate(states):
        if state.result_artifact is not None:
            payload, mime_type = serialize_artifact(state.result_artifact)
            extension = "mp4" if mime_type.startswith("video/") else "png"
            path = output_dir / safe_filename(state.label or state.prompt, index, extension)
            path.write_bytes(payload)
            print(f"[{state.status.value}] {state.label}: {path}")
        else:
            print(f"[{state.status.value}] {state.label}: {state.last_error}")

    if args.zip:
        try:
            (output_dir / "batch.zip").write_bytes(build_zip(states))
        except ValueError as exc:
            print(exc)

    progress = handle.progress()
    print(f"Done: {progress.completed}/{progress.total}")


if __name__ == "__main__":
    main()
