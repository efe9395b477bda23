# hopper/core/codec/serde.py
from __future__ import annotations

import dataclasses
import datetime as dt
import json
import traceback as tb
from typing import Any, Dict, List, Union

from pydantic import BaseModel, ValidationError

from hopper.core.models.tasks import Task


Json = Union[None, bool, int, float, str, List['Json'], Dict[str, 'Json']]
"""
Union type for JSON-serializable values.
"""


class SerializationError(Exception):
    """
    Raised when a value cannot be converted to or from its JSON form.
    """

    pass


def task_to_json(task: Task) -> str:
    """Wire form of a task: camelCase keys, eta as epoch milliseconds."""
    try:
        return task.model_dump_json(by_alias=True)
    except (ValueError, TypeError) as exc:
        raise SerializationError(f'task {task.name!r} body is not JSON serializable: {exc}') from exc


def task_from_json(raw: bytes | str) -> Task:
    """Decode a wire message into a Task.

    Raises:
        SerializationError: body is not JSON, or not a valid task record
    """
    try:
        return Task.model_validate_json(raw)
    except ValidationError as exc:
        raise SerializationError(f'invalid task message: {exc}') from exc


def exception_to_json(ex: BaseException) -> Dict[str, Json]:
    """
    Convert a BaseException to a JSON-serializable dictionary.

    Returns:
        A dict with following key-value pairs:
        - "type": str
        - "message": str
        - "traceback": str
        - "state": str, when the consumer attached a classification
    """
    data: Dict[str, Json] = {
        'type': type(ex).__name__,
        'message': str(ex),
        'traceback': ''.join(tb.format_exception(type(ex), ex, ex.__traceback__)),
    }
    state = getattr(ex, 'state', None)
    if state is not None:
        data['state'] = getattr(state, 'value', str(state))
    return data


def _to_jsonable(value: Any) -> Json:
    if isinstance(value, BaseModel):
        return value.model_dump(mode='json')
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, (dt.datetime, dt.date)):
        return value.isoformat()
    if isinstance(value, BaseException):
        return exception_to_json(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f'Object of type {type(value).__name__} is not JSON serializable')


def dumps_json(value: Any) -> str:
    """Serialize a handler result (pydantic models, dataclasses, datetimes allowed).

    Raises:
        SerializationError: value has no JSON representation
    """
    try:
        return json.dumps(value, default=_to_jsonable)
    except (TypeError, ValueError) as exc:
        raise SerializationError(str(exc)) from exc
