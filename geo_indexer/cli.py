from __future__ import annotations
import argparse
import logging
import sys

from .config import INDEX_TYPES_HELP, JobConfig
from .errors import ConfigurationError, JobFailedError
from .geometry import Rectangle
from .indexer import index, repartition

logger = logging.getLogger(__name__)


_SIZE_SUFFIXES = {
    "kb": 1024,
    "mb": 1024 ** 2,
    "gb": 1024 ** 3,
    "tb": 1024 ** 4,
}


def _parse_size_bytes(raw: str) -> int:
    """
    Parse a human-friendly size string into bytes.

    Examples: "134217728", "128mb", "1gb".
    """
    s = raw.strip().lower()
    if s.isdigit():
        return int(s)

    for suffix, mul in _SIZE_SUFFIXES.items():
        if s.endswith(suffix):
            num = s[: -len(suffix)].strip()
            try:
                return int(float(num) * mul)
            except ValueError:
                break

    raise argparse.ArgumentTypeError(f"Invalid size: {raw}")


def _parse_mbr(raw: str) -> Rectangle:
    try:
        return Rectangle.parse(raw)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def _report_background(job) -> None:
    if job.is_successful():
        logger.info("Background job %s finished", job.job_id)
    else:
        logger.error("Background job %s failed: %s", job.job_id, job.failure())


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="geo-indexer",
        description="Builds a spatial index on an input file (one GeoParquet file per partition).",
    )
    ap.add_argument("input", help="Path to input file (GeoParquet, or text with one shape per line).")
    ap.add_argument("output", help="Path to output directory.")
    ap.add_argument("--shape", required=True, help="Type of shapes stored in input file: point|rectangle|polygon.")
    ap.add_argument("--sindex", default=None, help=f"Type of spatial index ({INDEX_TYPES_HELP.replace(', ', '|')}).")
    ap.add_argument("--overwrite", action="store_true", help="Overwrite output without notice.")
    ap.add_argument("--background", action="store_true", help="Submit the job and return without waiting.")
    ap.add_argument("--mbr", type=_parse_mbr, default=None,
                    help="Input MBR as x1,y1,x2,y2 (skips the MBR scan).")
    ap.add_argument("--block-size", type=_parse_size_bytes, default="128mb",
                    help="Target bytes per partition. Accepts suffixes KB, MB, GB, TB. Default: 128MB.")
    ap.add_argument("--geom-col", default="geometry", help="Geometry column name (default: geometry).")
    ap.add_argument("--max-attempts", type=int, default=4, help="Attempts per task before the job fails.")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return ap


def main(argv=None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(relativeCreated).0fms] %(levelname)s %(name)s: %(message)s",
    )

    if args.sindex is None:
        print(f"Please specify type of index to build ({INDEX_TYPES_HELP})", file=sys.stderr)
        ap.print_usage(sys.stderr)
        return 2

    config = JobConfig(
        input_path=args.input,
        output_path=args.output,
        shape_type=args.shape,
        index_type=args.sindex,
        mbr=args.mbr,
        overwrite=args.overwrite,
        background=args.background,
        block_size=args.block_size,
        max_attempts=args.max_attempts,
        geom_col=args.geom_col,
    )

    try:
        if config.background:
            job = repartition(config)
            job.add_done_callback(_report_background)
            print(f"Submitted {job.job_id}")
            return 0
        elapsed = index(config)
    except ConfigurationError as e:
        logger.error("%s", e)
        ap.print_usage(sys.stderr)
        return 2
    except JobFailedError as e:
        logger.error("Indexing failed: %s", e)
        return 1

    print(f"Total indexing time in millis {elapsed}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
