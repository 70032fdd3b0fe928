"""Command storage.

The dispatcher talks to storage only through ``CommandRepository`` so a
persistent store can replace the in-memory one. Every write goes through
``compare_and_set``, which applies a mutation only when the stored status is
one of the expected ones; this is what keeps a command from being attempted
twice at the same time.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Collection, Iterable
from typing import Protocol, runtime_checkable

from smarthome_dispatch.exceptions import CommandNotFound
from smarthome_dispatch.logging_abstraction import get_logger
from smarthome_dispatch.models import Command, CommandStatus, utcnow

__all__ = ["CommandRepository", "InMemoryCommandStore"]

logger = get_logger(__name__)

type CommandPredicate = Callable[[Command], bool]
type CommandMutation = Callable[[Command], None]


@runtime_checkable
class CommandRepository(Protocol):
    """Storage contract used by the dispatcher and the scheduler."""

    async def add(self, command: Command) -> None: ...

    async def get(self, command_id: str) -> Command | None: ...

    async def get_many(self, command_ids: Iterable[str]) -> dict[str, Command]: ...

    async def query(self, predicate: CommandPredicate | None = None) -> list[Command]: ...

    async def compare_and_set(
        self,
        command_id: str,
        expected: Collection[CommandStatus],
        mutate: CommandMutation,
    ) -> Command | None: ...

    async def delete(self, command_ids: Iterable[str]) -> int: ...


class InMemoryCommandStore:
    """Process-local store guarded by a single asyncio.Lock.

    Reads and writes hand out deep copies, so a caller holding a Command can
    never change stored state except through ``compare_and_set``.
    """

    lp: str = "InMemoryCommandStore:"

    def __init__(self) -> None:
        self._commands: dict[str, Command] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._commands)

    async def add(self, command: Command) -> None:
        async with self._lock:
            if command.id in self._commands:
                msg = f"Command id already stored: {command.id}"
                raise ValueError(msg)
            self._commands[command.id] = command.model_copy(deep=True)
        logger.debug("%s stored command", self.lp, extra={"command_id": command.id, "status": command.status})

    async def get(self, command_id: str) -> Command | None:
        async with self._lock:
            command = self._commands.get(command_id)
            return command.model_copy(deep=True) if command else None

    async def get_many(self, command_ids: Iterable[str]) -> dict[str, Command]:
        """Return the stored commands among ``command_ids``; unknown ids are omitted."""
        async with self._lock:
            return {
                cid: self._commands[cid].model_copy(deep=True) for cid in command_ids if cid in self._commands
            }

    async def query(self, predicate: CommandPredicate | None = None) -> list[Command]:
        async with self._lock:
            return [c.model_copy(deep=True) for c in self._commands.values() if predicate is None or predicate(c)]

    async def compare_and_set(
        self,
        command_id: str,
        expected: Collection[CommandStatus],
        mutate: CommandMutation,
    ) -> Command | None:
        """Apply ``mutate`` atomically if the stored status is in ``expected``.

        The mutation runs on a copy that replaces the stored record only when it
        returns normally, and ``updated_at`` is refreshed.

        Returns:
            The updated command, or None when the status did not match

        Raises:
            CommandNotFound: No command with this id

        """
        async with self._lock:
            current = self._commands.get(command_id)
            if current is None:
                raise CommandNotFound(command_id)
            if current.execution.status not in expected:
                return None
            working = current.model_copy(deep=True)
            mutate(working)
            working.updated_at = utcnow()
            self._commands[command_id] = working
            return working.model_copy(deep=True)

    async def delete(self, command_ids: Iterable[str]) -> int:
        removed = 0
        async with self._lock:
            for cid in command_ids:
                if self._commands.pop(cid, None) is not None:
                    removed += 1
        if removed:
            logger.debug("%s deleted %d command(s)", self.lp, removed)
        return removed
