"""Human-readable task synopsis used in logs and operator output."""

from __future__ import annotations

import html
from collections.abc import Sequence
from typing import Any

from task_pump.queue.models import Callback, FunctionRef, MethodRef


def format_callback_name(callback: Callback | None, display_name: str | None = None) -> str:
    if display_name:
        return display_name
    if isinstance(callback, FunctionRef):
        return callback.name
    if isinstance(callback, MethodRef):
        return f"{callback.target}::{callback.method}"
    return "????"


def format_parameter(value: Any) -> str:
    # bool is an int subclass, so it has to be checked first
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return _format_float(value)
    if isinstance(value, str):
        return '"' + escape_markup(value) + '"'
    if value is None:
        return "NULL"
    if isinstance(value, list | tuple):
        return "ARRAY"
    if isinstance(value, dict):
        return "OBJECT"
    return "????"


def format_synopsis(
    callback: Callback | None,
    parameters: Sequence[Any] | None,
    *,
    display_name: str | None = None,
) -> str:
    """Render `Name(param, ...)`, for example `Foo::bar(1, "x&quot;y", TRUE, NULL)`."""

    rendered = ", ".join(format_parameter(value) for value in parameters or ())
    return f"{format_callback_name(callback, display_name)}({rendered})"


def escape_markup(value: str) -> str:
    """Escape `& < > " '` with the single quote as `&#039;`."""

    return html.escape(value, quote=True).replace("&#x27;", "&#039;")


def _format_float(value: float) -> str:
    # whole floats render like ints
    if value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(value)
