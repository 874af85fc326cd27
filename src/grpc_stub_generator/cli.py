"""Command-line interface for expanding grpc service declarations in Python modules.

Notes:
    - Generated modules import `grpc_stub_generator.runtime` and `grpc_stub_generator.codec`,
      so this package must be installed wherever they are used.
"""

from __future__ import annotations

import argparse
import logging
import os.path
from collections.abc import Sequence

from grpc_stub_generator.run import DEFAULT_SUFFIX, run
from grpc_stub_generator.writer_dto import SchemaError

logger = logging.getLogger(__name__)


def _add_recursive_argument(parser: argparse.ArgumentParser):
    """Add a recursive argument to a parser.

    Args:
        parser (argparse.ArgumentParser): The parser to add the argument to.
    """
    parser.add_argument(
        "-r",
        "--recursive",
        dest="recursive",
        default=False,
        action="store_true",
        help="recursively search for *.py files with a given glob expression.",
    )


def setup_parser() -> argparse.ArgumentParser:
    """Setup for the parser.

    Returns:
        argparse.ArgumentParser: The parser after setup.
    """
    parser = argparse.ArgumentParser(description="Generate grpc clients and servers from service declarations.")

    parser.add_argument(
        "-c",
        "--clean",
        type=str,
        nargs="+",
        default=[],
        help="path or glob expressions that match files to clean up before stub generation.",
    )

    parser.add_argument(
        "-p",
        "--paths",
        type=str,
        nargs="+",
        default=["**/*.py"],
        help="path or glob expressions that match *.py files with service declarations.",
    )

    parser.add_argument(
        "-e",
        "--excludes",
        type=str,
        nargs="+",
        default=[],
        help="path or glob expressions to exclude from path matches.",
    )

    parser.add_argument(
        "-o",
        "--output-dir",
        type=str,
        default="",
        help="directory to write all generated modules; defaults to alongside each source module if omitted.",
    )

    parser.add_argument(
        "--suffix",
        type=str,
        default=DEFAULT_SUFFIX,
        help=f"suffix appended to the stem of generated modules (default: {DEFAULT_SUFFIX}).",
    )

    parser.add_argument(
        "--no-format",
        dest="skip_format",
        default=False,
        action="store_true",
        help="skip ruff formatting of generated modules.",
    )

    parser.add_argument(
        "--no-pyright",
        dest="skip_pyright",
        default=False,
        action="store_true",
        help="skip pyright validation of generated modules.",
    )

    _add_recursive_argument(parser)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point of the stub generator.

    Args:
        argv (Sequence[str] | None, optional): Run arguments. Defaults to None.

    Returns:
        int: Error code.
    """
    logging.basicConfig(level=logging.INFO)

    root_directory = os.getcwd()
    logger.info("Working from root directory: %s", root_directory)

    parser = setup_parser()
    args = parser.parse_args(argv)

    if not args.suffix:
        parser.error("--suffix must not be empty, the output would overwrite its source")

    try:
        run(args, root_directory)
    except SchemaError as e:
        logger.error("%s", e)
        return 1

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
