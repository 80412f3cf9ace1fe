"""Which modules make up the ``driftguard`` CLI, in the order ``--help`` lists them.

A command module provides ``register(subparsers)``; the parser it adds sets
``func`` to the callable that runs the command and returns an exit code.
"""
from __future__ import annotations

from importlib import import_module
from types import ModuleType
from typing import Iterator

COMMAND_MODULES: tuple[str, ...] = (
    "doctor",
    "catalog",
    "config",
    "replay",
    "export",
    "serve",
)


def load_command(name: str) -> ModuleType:
    module = import_module(f"driftguard.commands.{name}")
    if not callable(getattr(module, "register", None)):
        raise RuntimeError(f"driftguard.commands.{name} has no register(subparsers) function")
    return module


def iter_command_modules() -> Iterator[tuple[str, ModuleType]]:
    for name in COMMAND_MODULES:
        yield name, load_command(name)


def register_all(subparsers) -> None:
    for _name, module in iter_command_modules():
        module.register(subparsers)
