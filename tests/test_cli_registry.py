import argparse
import types

import pytest

from driftguard.commands import registry
from driftguard.commands.registry import COMMAND_MODULES, iter_command_modules, load_command, register_all


def test_registry_registers_expected_commands() -> None:
    parser = argparse.ArgumentParser()
    sub = parser.add_subparsers(dest="command")

    register_all(sub)

    registered = set(sub.choices.keys())
    expected = {"doctor", "catalog", "config", "replay", "export", "serve"}
    assert registered == expected


def test_registry_module_list_is_unique_and_stable() -> None:
    assert len(COMMAND_MODULES) == len(set(COMMAND_MODULES))
    assert COMMAND_MODULES[0] == "doctor"
    assert COMMAND_MODULES[-1] == "serve"


def test_iter_command_modules_follows_declared_order() -> None:
    names = [name for name, _module in iter_command_modules()]
    assert names == list(COMMAND_MODULES)


def test_load_command_returns_the_module() -> None:
    module = load_command("doctor")
    assert module.__name__ == "driftguard.commands.doctor"
    assert callable(module.register)


def test_load_command_rejects_module_without_register(monkeypatch) -> None:
    monkeypatch.setattr(registry, "import_module", lambda name: types.ModuleType(name))
    with pytest.raises(RuntimeError, match="no register"):
        load_command("doctor")


def test_registered_commands_set_func() -> None:
    parser = argparse.ArgumentParser()
    register_all(parser.add_subparsers(dest="command"))
    args = parser.parse_args(["catalog"])
    assert callable(args.func)
