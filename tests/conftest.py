"""Pytest configuration and fixtures for grpc stub generator tests."""

from __future__ import annotations

import importlib.util
import itertools
import logging
import sys
import textwrap
from concurrent.futures import Executor, Future
from pathlib import Path
from types import ModuleType

import pytest

from grpc_stub_generator.cli import main
from grpc_stub_generator.writer import Writer

# Test directory structure
TESTS_DIR = Path(__file__).parent
SCHEMAS_DIR = TESTS_DIR / "schemas"
SERVICES_SCHEMAS_DIR = SCHEMAS_DIR / "services"

_module_counter = itertools.count()


class ImmediateExecutor(Executor):
    """Runs submitted work on the calling thread."""

    def submit(self, fn, /, *args, **kwargs):
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class FakeServicerContext:
    """The part of `grpc.ServicerContext` that sinks and call contexts use."""

    def __init__(self, active: bool = True):
        self.active = active

    def is_active(self) -> bool:
        return self.active


def load_module(path: Path, name: str | None = None) -> ModuleType:
    """Import a generated module from a file.

    The module is registered in `sys.modules`, so pickle can find the message types it defines.

    Args:
        path: Path to the generated module.
        name: The module name, defaults to the file stem.

    Returns:
        The imported module.
    """
    name = name or path.stem
    if name in sys.modules:
        return sys.modules[name]

    spec = importlib.util.spec_from_file_location(name, path)
    assert spec is not None and spec.loader is not None
    module = importlib.util.module_from_spec(spec)
    sys.modules[name] = module
    try:
        spec.loader.exec_module(module)
    except BaseException:
        del sys.modules[name]
        raise
    return module


def expand(source: str, filename: str = "sample.py") -> str:
    """Expand a dedented source string in memory."""
    return Writer(textwrap.dedent(source), filename).dumps()


def expand_and_load(source: str, directory: Path) -> ModuleType:
    """Expand a dedented source string, write it and import the result under a unique name."""
    name = f"sample_{next(_module_counter)}_grpc"
    path = directory / f"{name}.py"
    path.write_text(expand(source, f"{name}.py"), encoding="utf8")
    return load_module(path, name)


@pytest.fixture(scope="session")
def generated_dir(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """Expand all test schemas once per test session.

    Returns:
        Path: The directory with the generated modules.
    """
    logger = logging.getLogger(__name__)
    output_dir = tmp_path_factory.mktemp("generated")
    logger.info("Generating test modules from %s", SERVICES_SCHEMAS_DIR)

    result = main(["-p", str(SERVICES_SCHEMAS_DIR), "-o", str(output_dir), "--no-format", "--no-pyright"])
    if result != 0:
        pytest.fail("Generating the test modules failed")

    return output_dir


@pytest.fixture(scope="session")
def greeter_module(generated_dir: Path) -> ModuleType:
    """The expanded `greeter.py` schema."""
    return load_module(generated_dir / "greeter_grpc.py")


@pytest.fixture(scope="session")
def forwarding_module(generated_dir: Path) -> ModuleType:
    """The expanded `forwarding.py` schema."""
    return load_module(generated_dir / "forwarding_grpc.py")


@pytest.fixture(scope="session")
def internal_module(generated_dir: Path) -> ModuleType:
    """The expanded `internal.py` schema."""
    return load_module(generated_dir / "internal_grpc.py")
