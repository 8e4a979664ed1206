"""
Command line entry point.

    backdrop video clip.mov beach.jpg out.mov --blur
    backdrop image portrait.jpg beach.jpg out.png
    backdrop remove-background portrait.jpg out.png
    backdrop blur portrait.jpg out.png
    backdrop fingerprint beach.jpg --blur
"""

import argparse
import logging
import shutil
import sys

import cv2

from backdrop.errors import BackdropError
from backdrop.models import BackgroundSpec, fingerprint
from backdrop.utils.config_manager import BackdropConfig, ConfigManager

logger = logging.getLogger("backdrop")


def _read_image(path):
    image = cv2.imread(path, cv2.IMREAD_COLOR)
    if image is None:
        raise BackdropError(f"Cannot read image {path}")
    return image


def _write_image(path, image):
    if not cv2.imwrite(path, image):
        raise BackdropError(f"Cannot write image {path}")
    logger.info(f"Wrote {path}")


def _service(args):
    from backdrop.service import BackgroundReplaceService

    config = BackdropConfig.from_manager(ConfigManager(args.config_dir))
    return BackgroundReplaceService(config)


def run_video(args):
    service = _service(args)
    try:
        background = BackgroundSpec.from_file(args.background, blur=args.blur) if args.background else None
        handle = service.replace_video(args.source, background=background, blur=args.blur)
        artifact = handle.result()
        shutil.move(artifact.path, args.output)
        logger.info(f"Wrote {args.output} ({artifact.frame_count} frames, "
                    f"audio={'yes' if artifact.has_audio else 'no'})")
    finally:
        service.close()


def run_image(args):
    service = _service(args)
    try:
        image = _read_image(args.source)
        if args.command == "image":
            future = service.replace_image(image, _read_image(args.background), blur=args.blur)
        elif args.command == "remove-background":
            future = service.remove_background(image)
        else:
            future = service.apply_blur(image)
        _write_image(args.output, future.result())
    finally:
        service.close()


def run_fingerprint(args):
    with open(args.background, "rb") as f:
        print(fingerprint(f.read(), args.blur))


def build_parser():
    parser = argparse.ArgumentParser(
        prog="backdrop",
        description="Replace the background of videos and images using person segmentation"
    )
    parser.add_argument("--config-dir", type=str, default=None,
                        help="Directory holding backdrop.yaml (default: <project>/configs)")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    video = sub.add_parser("video", help="Replace the background of a video")
    video.add_argument("source", help="Source video")
    video.add_argument("background", nargs="?", default=None,
                       help="Background image (default: the video's first frame)")
    video.add_argument("output", help="Output video path")
    video.add_argument("--blur", action="store_true", help="Blur the background")
    video.set_defaults(func=run_video)

    image = sub.add_parser("image", help="Replace the background of an image")
    image.add_argument("source", help="Source image")
    image.add_argument("background", help="Background image")
    image.add_argument("output", help="Output image path")
    image.add_argument("--blur", action="store_true", help="Blur the background")
    image.set_defaults(func=run_image)

    for name, text in (("remove-background", "Re-render an image over its own background"),
                       ("blur", "Blur an image's own background")):
        p = sub.add_parser(name, help=text)
        p.add_argument("source", help="Source image")
        p.add_argument("output", help="Output image path")
        p.set_defaults(func=run_image)

    fp = sub.add_parser("fingerprint", help="Print the cache fingerprint of a background")
    fp.add_argument("background", help="Background image")
    fp.add_argument("--blur", action="store_true", help="Fingerprint the blurred variant")
    fp.set_defaults(func=run_fingerprint)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )
    try:
        args.func(args)
    except BackdropError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
