# hopper/core/registry/tasks.py
from __future__ import annotations

from typing import Dict, Generic, Iterator, MutableMapping, TypeVar

from hopper.core.errors import ErrorCode, RegistryError

T = TypeVar('T')


class NotRegistered(RegistryError, KeyError):
    """Raised when a task name has no handler on this consumer.

    Also a KeyError so the ``in`` operator of MutableMapping keeps working.
    """

    def __init__(self, task_name: str) -> None:
        RegistryError.__init__(
            self,
            message=f"task '{task_name}' not registered",
            code=ErrorCode.TASK_NOT_REGISTERED,
            notes=[f"requested task: '{task_name}'"],
            help_text='register a handler with @consumer.task(name) or consumer.register_task(...)',
        )
        self.task_name = task_name


class DuplicateTaskNameError(RegistryError):
    """Raised when one consumer gets two handlers for the same task name."""

    def __init__(self, task_name: str, context: str = '') -> None:
        super().__init__(
            message=f"duplicate task name '{task_name}'",
            code=ErrorCode.TASK_DUPLICATE_NAME,
            notes=[context] if context else [],
            help_text='each task name can only have one handler per consumer',
        )
        self.task_name = task_name


class TaskRegistry(MutableMapping[str, T], Generic[T]):
    """Task name -> registered entry.

    Re-registering a name from the same source location (module re-import) is
    a no-op; any other second registration raises DuplicateTaskNameError.
    """

    def __init__(self) -> None:
        self._data: Dict[str, T] = {}
        self._sources: Dict[str, str] = {}

    def __getitem__(self, key: str) -> T:
        try:
            return self._data[key]
        except KeyError:
            raise NotRegistered(key)

    def __setitem__(self, key: str, value: T) -> None:
        if key in self._data:
            raise DuplicateTaskNameError(key, 'detected via direct assignment')
        self._data[key] = value

    def __delitem__(self, key: str) -> None:
        del self._data[key]
        self._sources.pop(key, None)

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def register(self, entry: T, *, name: str, source: str | None = None) -> T:
        """Insert ``entry`` under ``name``.

        Returns the existing entry when ``source`` matches the first
        registration, raises DuplicateTaskNameError otherwise.
        """
        if name in self._data:
            existing_source = self._sources.get(name)
            if existing_source and source and existing_source == source:
                return self._data[name]
            raise DuplicateTaskNameError(name, 'a handler for this name already exists')
        self._data[name] = entry
        if source:
            self._sources[name] = source
        return entry

    def unregister(self, name: str) -> None:
        self._data.pop(name, None)
        self._sources.pop(name, None)

    def names(self) -> list[str]:
        return list(self._data.keys())
