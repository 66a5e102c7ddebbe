"""
Command-line entry point for the runner.

Usage:
    localdream-runner [--config PATH] models [--json PATH]
    localdream-runner download MODEL_ID
    localdream-runner uninstall MODEL_ID
    localdream-runner generate MODEL_ID --prompt "a cat" [--steps 20] [--batch 3] [--out DIR]
    localdream-runner upscale UPSCALER_ID IMAGE --out FILE
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

from runner.config import load_config
from runner.errors import RunnerError
from runner.imaging import encode_png, load_image_file
from runner.logging_utils import init_logging
from runner.session import RunnerSession
from runner.states import DownloadState, DownloadStatus, GenerationState, GenerationStatus
from shared.model_registry import save_catalog_to_file
from shared.schemas import GenerationRequest


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="localdream-runner", description="Local diffusion worker runner")
    parser.add_argument("--config", type=Path, default=None, help="YAML config (default: $RUNNER_CONFIG)")
    sub = parser.add_subparsers(dest="command", required=True)

    models = sub.add_parser("models", help="List known models and their install state")
    models.add_argument("--json", dest="json_path", default=None, help="Also dump the catalog to this file")

    download = sub.add_parser("download", help="Download and install a model or upscaler")
    download.add_argument("model_id")

    uninstall = sub.add_parser("uninstall", help="Remove a model with its history")
    uninstall.add_argument("model_id")

    gen = sub.add_parser("generate", help="Generate images")
    gen.add_argument("model_id")
    gen.add_argument("--prompt", default=None, help="Defaults to the model's default prompt")
    gen.add_argument("--negative-prompt", default=None)
    gen.add_argument("--steps", type=int, default=20)
    gen.add_argument("--cfg", type=float, default=7.0)
    gen.add_argument("--seed", type=int, default=None)
    gen.add_argument("--width", type=int, default=512)
    gen.add_argument("--height", type=int, default=512)
    gen.add_argument("--denoise", type=float, default=0.6)
    gen.add_argument("--runtime", choices=["cpu", "gpu", "npu"], default="npu")
    gen.add_argument("--scheduler", default="dpm")
    gen.add_argument("--image", type=Path, default=None, help="Input image for image-to-image")
    gen.add_argument("--mask", type=Path, default=None, help="Inpainting mask (same size as --image)")
    gen.add_argument("--batch", type=int, default=1)
    gen.add_argument("--out", type=Path, default=None, help="Also write PNGs here")

    up = sub.add_parser("upscale", help="Upscale an image")
    up.add_argument("upscaler_id")
    up.add_argument("image", type=Path)
    up.add_argument("--out", type=Path, required=True)
    return parser


def _print_download(state: DownloadState) -> None:
    if state.status is DownloadStatus.DOWNLOADING:
        total = f"/{state.total_bytes}" if state.total_bytes else ""
        print(f"\rdownloading {state.progress * 100:5.1f}% {state.downloaded_bytes}{total}", end="", flush=True)
    elif state.status is DownloadStatus.EXTRACTING:
        print("\nextracting...", flush=True)


async def _cmd_models(session: RunnerSession, args) -> int:
    for m in session.catalog.models:
        if session.store.is_complete(m, session.config.use_img2img):
            status = "installed"
        elif session.store.needs_upgrade(m.id, m.is_npu):
            status = "needs-upgrade"
        elif session.store.is_installed(m.id, m.is_custom):
            status = "incomplete"
        else:
            status = "-"
        kind = "cpu" if m.run_on_cpu else "npu"
        resolutions = ",".join(str(r) for r in session.store.available_resolutions(m.id))
        print(f"{m.id:24} {kind:4} {status:14} {m.name} {resolutions}")
    for u in session.catalog.upscalers:
        status = "installed" if session.store.is_upscaler_installed(u.id) else "-"
        print(f"{u.id:24} {'up':4} {status:14} {u.name}")
    if args.json_path:
        save_catalog_to_file(session.catalog, args.json_path)
    return 0


async def _cmd_download(session: RunnerSession, args) -> int:
    terminal = await session.install(args.model_id, on_state=_print_download)
    print()
    if terminal.status is DownloadStatus.SUCCESS:
        print(f"installed {args.model_id}")
        return 0
    print(f"error: {terminal.message}", file=sys.stderr)
    return 1


async def _cmd_uninstall(session: RunnerSession, args) -> int:
    removed = session.uninstall(args.model_id)
    print(f"removed {args.model_id}" if removed else f"{args.model_id} was not installed")
    return 0


async def _cmd_generate(session: RunnerSession, args) -> int:
    descriptor = session.descriptor(args.model_id)
    image_b64: Optional[str] = None
    mask_b64: Optional[str] = None
    width, height = args.width, args.height
    if args.image is not None:
        source = load_image_file(str(args.image))
        image_b64 = source.to_base64()
        width, height = source.width, source.height
    if args.mask is not None:
        mask_b64 = load_image_file(str(args.mask)).to_base64()

    request = GenerationRequest(
        prompt=args.prompt if args.prompt is not None else descriptor.default_prompt,
        negative_prompt=args.negative_prompt if args.negative_prompt is not None else descriptor.default_negative_prompt,
        steps=args.steps,
        cfg=args.cfg,
        seed=args.seed,
        width=width,
        height=height,
        denoise_strength=args.denoise,
        runtime=args.runtime,
        image=image_b64,
        mask=mask_b64,
        scheduler=args.scheduler,
        batch_count=args.batch,
    )

    written: List[Path] = []

    def _on_state(index: int, state: GenerationState):
        if state.status is GenerationStatus.PROGRESS:
            print(f"\r[{index + 1}] {state.progress * 100:5.1f}%", end="", flush=True)
        elif state.status is GenerationStatus.COMPLETE and args.out is not None:
            args.out.mkdir(parents=True, exist_ok=True)
            path = args.out / f"{args.model_id}_{index + 1}_{state.seed if state.seed is not None else 'x'}.png"
            path.write_bytes(encode_png(state.image))
            written.append(path)

    try:
        results = await session.generate(args.model_id, request, on_state=_on_state)
    finally:
        await session.supervisor.stop()
    print()
    failed = [r for r in results if r.status is not GenerationStatus.COMPLETE]
    for path in written:
        print(f"wrote {path}")
    for r in failed:
        print(f"error: {r.message}", file=sys.stderr)
    return 1 if failed else 0


async def _cmd_upscale(session: RunnerSession, args) -> int:
    image = load_image_file(str(args.image))
    try:
        result = await session.upscale(image, args.upscaler_id)
    finally:
        await session.supervisor.stop()
    args.out.parent.mkdir(parents=True, exist_ok=True)
    result.image.to_pil("RGB").save(args.out)
    print(f"wrote {args.out} ({result.image.width}x{result.image.height}, {result.duration_ms}ms)")
    return 0


COMMANDS = {
    "models": _cmd_models,
    "download": _cmd_download,
    "uninstall": _cmd_uninstall,
    "generate": _cmd_generate,
    "upscale": _cmd_upscale,
}


async def run(args) -> int:
    config = load_config(args.config)
    init_logging(runner_id=config.runner_id)
    async with RunnerSession(config) as session:
        return await COMMANDS[args.command](session, args)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(run(args))
    except (RunnerError, KeyError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
