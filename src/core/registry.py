"""Command registry and module-scan rebuild.

A registry is built once and then only read. Hot reload produces a brand new
registry via ``load_commands`` which callers swap in as a whole.
"""

from __future__ import annotations

import importlib
import logging
import pkgutil
from types import ModuleType
from typing import Iterable, Iterator, Optional

from core.errors import InvalidCommandError
from core.models import Command

LOGGER = logging.getLogger(__name__)


class CommandRegistry:
    """Case-insensitive lookup of commands by name or alias."""

    def __init__(self, commands: Iterable[Command] = ()) -> None:
        self._lookup: dict[str, Command] = {}
        for command in commands:
            self.register(command)

    def register(self, command: Command) -> None:
        """Add the command's name and aliases. Later registrations win."""

        if not getattr(command, "name", None) or not callable(getattr(command, "handler", None)):
            raise InvalidCommandError("Command requires a name and a callable handler")
        for key in (command.name, *command.aliases):
            if key:
                self._lookup[key.lower()] = command

    def resolve(self, name: str) -> Optional[Command]:
        if not isinstance(name, str):
            return None
        return self._lookup.get(name.lower())

    def commands(self) -> list[Command]:
        """Unique commands in registration order."""

        seen: dict[int, Command] = {}
        for command in self._lookup.values():
            seen.setdefault(id(command), command)
        return list(seen.values())

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._lookup

    def __iter__(self) -> Iterator[Command]:
        return iter(self.commands())

    def __len__(self) -> int:
        return len(self.commands())


def _iter_command_modules(package: ModuleType, reload: bool) -> Iterator[ModuleType]:
    for info in sorted(pkgutil.iter_modules(package.__path__), key=lambda item: item.name):
        if info.name.startswith("_"):
            continue
        full_name = f"{package.__name__}.{info.name}"
        try:
            module = importlib.import_module(full_name)
            if reload:
                module = importlib.reload(module)
        except Exception:
            LOGGER.exception("Failed to load command module %s", full_name)
            continue
        yield module


def load_commands(package: ModuleType, reload: bool = False) -> CommandRegistry:
    """Scan ``package`` for modules exposing ``COMMAND`` and build a new registry.

    Invalid modules are logged and skipped; the returned registry is never
    shared with a previous scan.
    """

    registry = CommandRegistry()
    if reload:
        package = importlib.reload(package)
    for module in _iter_command_modules(package, reload):
        command = getattr(module, "COMMAND", None)
        if not isinstance(command, Command):
            LOGGER.warning("Skipping %s: no COMMAND defined", module.__name__)
            continue
        try:
            registry.register(command)
        except InvalidCommandError as exc:
            LOGGER.warning("Skipping %s: %s", module.__name__, exc)
    LOGGER.info("Loaded %s commands from %s", len(registry), package.__name__)
    return registry
