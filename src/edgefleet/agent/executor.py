"""Task executors: the pluggable capability that applies a task on the host."""

from __future__ import annotations

import importlib
from collections.abc import Callable, Mapping
from typing import Any, Protocol

TaskHandler = Callable[[Any], Any]


class UnsupportedTaskError(Exception):
    """Raised when no handler is registered for a task type."""


class Executor(Protocol):
    """Synchronous ``execute(task_type, payload) -> result``; may raise."""

    def __call__(self, task_type: str, payload: Any) -> Any: ...


class HandlerExecutor:
    """Dispatch each task type to one registered handler."""

    def __init__(self, handlers: Mapping[str, TaskHandler] | None = None) -> None:
        self._handlers: dict[str, TaskHandler] = dict(handlers or {})

    def register(self, task_type: str, handler: TaskHandler) -> None:
        """Install or replace the handler for a task type."""
        self._handlers[task_type] = handler

    def __call__(self, task_type: str, payload: Any) -> Any:
        handler = self._handlers.get(task_type)
        if handler is None:
            raise UnsupportedTaskError(f"No handler for task type {task_type}")
        return handler(payload)


def default_executor() -> HandlerExecutor:
    """An executor with no handlers; every task is reported FAILED."""
    return HandlerExecutor()


def load_executor(path: str) -> Executor:
    """Import ``module:factory`` and call the factory to build an executor."""
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Executor path must look like 'module:factory', got {path!r}")
    factory = getattr(importlib.import_module(module_name), attribute)
    executor: Executor = factory()
    return executor
