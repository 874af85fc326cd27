"""Top-level module for stub generation."""

from __future__ import annotations

import argparse
import glob
import logging
import os.path
import subprocess
import tempfile
from pathlib import Path

from grpc_stub_generator.writer import Writer

logger = logging.getLogger(__name__)

PY_SUFFIX = ".py"
DEFAULT_SUFFIX = "_grpc"


class PyrightValidationError(Exception):
    """Raised when pyright validation finds type errors in generated modules."""

    pass


def validate_with_pyright(output_files: list[str]) -> None:
    """Validate generated modules using pyright.

    Args:
        output_files: The generated modules.

    Raises:
        PyrightValidationError: If pyright finds any type errors.
    """
    if not output_files:
        logger.warning("No generated modules found to validate")
        return

    logger.info("Validating %d generated module(s) with pyright...", len(output_files))

    try:
        result = subprocess.run(
            ["pyright", *sorted(output_files)],
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError as e:
        logger.error("pyright not found. Please install pyright: pip install pyright")
        raise PyrightValidationError("pyright command not found. Please install pyright.") from e
    except subprocess.SubprocessError as e:
        error_msg = f"Error running pyright: {e}"
        logger.error(error_msg)
        raise PyrightValidationError(error_msg) from e

    error_count = result.stdout.count(" error:")

    if error_count > 0 or result.returncode != 0:
        error_msg = f"Pyright validation failed with {error_count} error(s):\n\n{result.stdout}"
        logger.error(error_msg)
        raise PyrightValidationError(error_msg)

    logger.info("Pyright validation passed - no type errors found")


def format_outputs(raw_input: str) -> str:
    """Formats raw input using ruff.

    Args:
        raw_input (str): The unformatted input.

    Returns:
        str: The formatted outputs, or the raw input if ruff fails.
    """
    try:
        with tempfile.NamedTemporaryFile(mode="w", suffix=PY_SUFFIX, delete=False, encoding="utf-8") as f:
            temp_path = Path(f.name)
            f.write(raw_input)

        try:
            # Sorts the generated imports into the existing import block.
            subprocess.run(
                ["ruff", "check", "--fix", "--select", "I", str(temp_path)],
                capture_output=True,
                check=False,
            )

            subprocess.run(
                ["ruff", "format", str(temp_path)],
                capture_output=True,
                check=True,
            )

            return temp_path.read_text(encoding="utf-8")

        finally:
            temp_path.unlink(missing_ok=True)

    except subprocess.CalledProcessError as e:
        logger.error("Ruff formatting failed: %s", e)
        logger.error("Stdout: %s", e.stdout.decode("utf-8", errors="replace"))
        logger.error("Stderr: %s", e.stderr.decode("utf-8", errors="replace"))
        return raw_input
    except OSError as e:
        logger.error("Unexpected error during formatting: %s", e)
        return raw_input


def generate_module(source: str, filename: str) -> str | None:
    """Entry-point for expanding one module.

    Args:
        source (str): The module source.
        filename (str): The path of the module, used in diagnostics.

    Returns:
        str | None: The expanded module, or None if the module declares no services or servers.

    Raises:
        SchemaError: If a declaration in the module is malformed.
    """
    writer = Writer(source, filename)
    if not writer.has_expansions:
        return None
    return writer.dumps()


def output_file_name(path: str, suffix: str) -> str:
    """`greeter.py` to `greeter_grpc.py`."""
    stem = Path(path).stem
    return f"{stem}{suffix}{PY_SUFFIX}"


def is_generated(path: str, suffix: str) -> bool:
    """Whether a path names a module that the generator wrote."""
    return Path(path).stem.endswith(suffix)


def find_modules(
    paths: list[str],
    excludes: list[str],
    root_directory: str,
    recursive: bool = False,
    suffix: str = DEFAULT_SUFFIX,
) -> list[str]:
    """Collect the modules to expand.

    Directories contribute their `*.py` files, everything else is treated as a glob expression.
    Generated modules are never picked up.

    Args:
        paths: Path or glob expressions, relative to the root directory.
        excludes: Path or glob expressions to remove from the matches.
        root_directory: The directory that the expressions are relative to.
        recursive: Whether directories and `**` globs descend into subdirectories.
        suffix: The suffix of generated modules.

    Returns:
        list[str]: The matching modules, sorted.
    """
    excluded_paths: set[str] = set()
    for exclude in excludes:
        exclude_path = os.path.join(root_directory, exclude)
        if os.path.isfile(exclude_path):
            excluded_paths.add(os.path.normpath(exclude_path))
        else:
            excluded_paths.update(os.path.normpath(p) for p in glob.glob(exclude_path, recursive=recursive))

    search_paths: set[str] = set()
    for path in paths:
        search_path = os.path.join(root_directory, path)

        if recursive and os.path.isdir(search_path):
            for root, _, files in os.walk(search_path):
                for file in files:
                    if file.endswith(PY_SUFFIX):
                        search_paths.add(os.path.join(root, file))
        elif os.path.isdir(search_path):
            for file in os.listdir(search_path):
                file_path = os.path.join(search_path, file)
                if os.path.isfile(file_path) and file.endswith(PY_SUFFIX):
                    search_paths.add(file_path)
        else:
            search_paths.update(glob.glob(search_path, recursive=recursive))

    valid_paths = {
        os.path.normpath(p)
        for p in search_paths
        if os.path.isfile(p) and p.endswith(PY_SUFFIX) and not is_generated(p, suffix)
    }
    return sorted(valid_paths - excluded_paths)


def common_base(valid_paths: list[str]) -> str | None:
    """The deepest directory that contains all modules, None if there are none."""
    if not valid_paths:
        return None
    return os.path.commonpath([os.path.dirname(os.path.abspath(p)) for p in valid_paths])


def output_path_for(path: str, output_dir: str, suffix: str, base: str | None = None) -> str:
    """Where the expansion of a module is written.

    Without an output directory, next to the module. With one, the directory structure below the
    common base of all modules is preserved inside it.

    Args:
        path: The module.
        output_dir: The output directory, empty for writing next to the module.
        suffix: The suffix of generated modules.
        base: The common base directory of all modules.

    Returns:
        str: The path of the generated module.
    """
    file_name = output_file_name(path, suffix)
    if not output_dir:
        return os.path.join(os.path.dirname(path), file_name)

    rel_dir = ""
    if base is not None:
        rel_dir = os.path.relpath(os.path.dirname(os.path.abspath(path)), base)
        if rel_dir == os.curdir or rel_dir.startswith(os.pardir):
            rel_dir = ""
    return os.path.normpath(os.path.join(output_dir, rel_dir, file_name))


def run(args: argparse.Namespace, root_directory: str) -> list[str]:
    """Run the stub generator on a set of paths that point to Python modules.

    Every module is expanded in memory before anything is written, so a malformed declaration
    leaves no partial output behind.

    Args:
        args (argparse.Namespace): The arguments that were passed when calling the stub generator.
        root_directory (str): The directory, from which the generator is executed.

    Returns:
        list[str]: The written modules.

    Raises:
        SchemaError: If a declaration is malformed.
        PyrightValidationError: If pyright validation of the written modules fails.
    """
    paths: list[str] = args.paths
    excludes: list[str] = args.excludes
    clean: list[str] = args.clean
    output_dir: str = getattr(args, "output_dir", "")
    suffix: str = getattr(args, "suffix", DEFAULT_SUFFIX)
    skip_format: bool = getattr(args, "skip_format", False)
    skip_pyright: bool = getattr(args, "skip_pyright", False)
    recursive: bool = getattr(args, "recursive", False)

    cleanup_paths: set[str] = set()
    for c in clean:
        cleanup_directory = os.path.join(root_directory, c)
        cleanup_paths = cleanup_paths.union(glob.glob(cleanup_directory, recursive=recursive))

    for cleanup_path in sorted(cleanup_paths):
        if os.path.isfile(cleanup_path):
            logger.info("Removing %s", cleanup_path)
            os.remove(cleanup_path)

    valid_paths = find_modules(paths, excludes, root_directory, recursive, suffix)
    logger.info("Found %d module(s) to scan.", len(valid_paths))

    if output_dir:
        output_dir = os.path.join(root_directory, output_dir)
    base = common_base(valid_paths)

    outputs: dict[str, str] = {}
    for path in valid_paths:
        with open(path, encoding="utf8") as f:
            source = f.read()

        output = generate_module(source, path)
        if output is None:
            logger.debug("Nothing to expand in %s", path)
            continue

        outputs[output_path_for(path, output_dir, suffix, base)] = output

    written: list[str] = []
    for output_path, output in outputs.items():
        if not skip_format:
            output = format_outputs(output)

        os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
        with open(output_path, "w", encoding="utf8") as f:
            f.write(output)

        logger.info("Wrote %s", output_path)
        written.append(output_path)

    if written and not skip_pyright:
        validate_with_pyright(written)

    return written
