from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from selectball.api import BurstSession
from selectball.config import Config, ConfigValidationError, RegistrationParams, RunArgs, parse_crop
from selectball.logs import LOG_FORMAT, verbosity_level
from selectball.registration import RegistrationError


def _crop_arg(text: str):
    if text.lower() == "none":
        return None
    try:
        values = [int(v) for v in text.split(",")]
    except ValueError:
        raise argparse.ArgumentTypeError(f"crop must be L,T,R,B integers or 'none': {text}") from None
    try:
        return parse_crop(values)
    except ConfigValidationError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def run_command(args: argparse.Namespace) -> int:
    config = Config(sigma=args.sigma, threshold=args.threshold, mask_ray=args.mask_ray, verbosity=args.verbosity)
    registration = None
    if args.register:
        registration = RegistrationParams(levels=args.levels, mode=args.mode, reference=args.reference)
    run_args = RunArgs(
        config=config,
        crops=tuple(args.crop or ()),
        registration=registration,
        registration_crop=args.registration_crop,
    )

    session = BurstSession()
    for path in args.images:
        session.load(path.name, path.read_bytes())
    session.run(run_args)

    out: Path = args.out
    out.mkdir(parents=True, exist_ok=True)
    for i, image_id in enumerate(session.image_ids()):
        stem = Path(image_id).stem
        for channel, crop in enumerate(run_args.crops):
            if crop is not None:
                (out / f"{stem}_crop{channel}.png").write_bytes(session.cropped_img_file(i, channel))
        if args.register:
            (out / f"{stem}_registered.png").write_bytes(session.register_and_save(i))

    report_path = out / "report.json"
    report_path.write_text(json.dumps(session.report(), indent=2), encoding="utf-8")
    print(f"Wrote {report_path}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="selectball")
    sub = parser.add_subparsers(dest="cmd", required=True)

    run = sub.add_parser("run", help="Locate sphere highlights in a burst and triangulate the light source.")
    run.add_argument("images", type=Path, nargs="+")
    run.add_argument("--out", type=Path, required=True, help="Output directory for crops, frames and report.json.")
    run.add_argument(
        "--crop",
        type=_crop_arg,
        action="append",
        help="Sphere crop as L,T,R,B pixels (repeat for several spheres, 'none' for an empty channel).",
    )
    run.add_argument("--sigma", type=float, default=3.0, help="Gaussian blur radius before thresholding (px).")
    run.add_argument("--threshold", type=float, default=0.9, help="Luma threshold in [0,1].")
    run.add_argument("--mask-ray", type=float, default=0.9, help="Fraction of the crop radius kept as sphere.")
    run.add_argument("--verbosity", type=int, default=1, help="0 error, 1 warning, 2 info, 3 debug.")
    run.add_argument("--register", action="store_true", help="Align frames before locating highlights.")
    run.add_argument("--levels", type=int, default=4, help="Pyramid levels for registration.")
    run.add_argument("--mode", type=str, default="reference", choices=["reference", "sequential"])
    run.add_argument("--reference", type=int, default=0, help="Index of the reference frame.")
    run.add_argument("--registration-crop", type=_crop_arg, default=None, help="Restrict registration to L,T,R,B.")

    args = parser.parse_args(argv)
    logging.basicConfig(level=verbosity_level(getattr(args, "verbosity", 1)), format=LOG_FORMAT)

    if args.cmd == "run":
        try:
            return run_command(args)
        except (ValueError, RegistrationError) as e:
            # unreadable image, invalid crop or parameters, image too small
            print(f"error: {e}", file=sys.stderr)
            return 1

    raise AssertionError(f"Unhandled cmd: {args.cmd}")


if __name__ == "__main__":
    raise SystemExit(main())
