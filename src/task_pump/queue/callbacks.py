"""Callback wire format and the explicit dispatch table used to resolve it.

Callbacks are stored as canonical JSON (sorted keys, compact separators) so
that two structurally equal callbacks always produce byte-identical encodings
and dedup can compare stored columns directly. Parameters use the same
canonical encoding.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from task_pump.errors import CallbackDecodeError
from task_pump.queue.models import Callback, FunctionRef, MethodRef

CONTEXT_KWARG = "task_context"


def canonical_json(value: Any) -> str:
    """Deterministic JSON encoding used for every stored blob."""

    return json.dumps(value, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


def encode_callback(callback: Callback) -> str:
    if isinstance(callback, FunctionRef):
        return canonical_json({"type": "function", "function": callback.name})
    if isinstance(callback, MethodRef):
        return canonical_json(
            {"type": "method", "target": callback.target, "method": callback.method},
        )
    raise TypeError(f"Unsupported callback type: {type(callback).__name__}")


def decode_callback(raw: str) -> Callback:
    try:
        payload = json.loads(raw)
    except ValueError as error:
        raise CallbackDecodeError(f"Callback is not valid JSON: {raw!r}") from error
    if not isinstance(payload, dict):
        raise CallbackDecodeError(f"Callback must be a JSON object: {raw!r}")

    kind = payload.get("type")
    if kind == "function" and isinstance(payload.get("function"), str):
        return FunctionRef(name=payload["function"])
    if (
        kind == "method"
        and isinstance(payload.get("target"), str)
        and isinstance(payload.get("method"), str)
    ):
        return MethodRef(target=payload["target"], method=payload["method"])
    raise CallbackDecodeError(f"Unrecognized callback encoding: {raw!r}")


def encode_parameters(parameters: Sequence[Any] | None) -> str:
    """Encode a parameter list; tuples are stored as lists."""

    try:
        return canonical_json(list(parameters or ()))
    except TypeError as error:
        raise TypeError(f"Task parameters must be JSON-serializable: {error}") from error


def decode_parameters(raw: str | None) -> list[Any]:
    if not raw:
        return []
    try:
        payload = json.loads(raw)
    except ValueError as error:
        raise CallbackDecodeError(f"Parameters are not valid JSON: {raw!r}") from error
    if not isinstance(payload, list):
        raise CallbackDecodeError(f"Parameters must be a JSON list: {raw!r}")
    return payload


@dataclass(slots=True, frozen=True)
class ResolvedCallback:
    """Invocable behind a stored callback."""

    func: Callable[..., Any]
    pass_context: bool = False


@dataclass(slots=True, frozen=True)
class _Registration:
    value: Any
    pass_context: bool


class CallbackRegistry:
    """Name -> behaviour dispatch table.

    Functions are registered under a name and referenced with `FunctionRef`.
    Objects or types are registered under a target name; any public method
    on them can then be referenced with `MethodRef`. Callbacks registered with
    ``pass_context=True`` receive the current `ExecutionContext` as the
    ``task_context`` keyword argument.
    """

    def __init__(self) -> None:
        self._functions: dict[str, _Registration] = {}
        self._targets: dict[str, _Registration] = {}

    def register_function(
        self,
        name: str,
        func: Callable[..., Any],
        *,
        pass_context: bool = False,
    ) -> FunctionRef:
        if not name:
            raise ValueError("Function name is required.")
        if not callable(func):
            raise TypeError(f"Registered function {name!r} is not callable.")
        self._functions[name] = _Registration(value=func, pass_context=pass_context)
        return FunctionRef(name=name)

    def function(
        self,
        name: str | None = None,
        *,
        pass_context: bool = False,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of `register_function`."""

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            self.register_function(name or func.__name__, func, pass_context=pass_context)
            return func

        return decorator

    def register_target(self, name: str, target: object, *, pass_context: bool = False) -> None:
        if not name:
            raise ValueError("Target name is required.")
        self._targets[name] = _Registration(value=target, pass_context=pass_context)

    def method(self, target: str, method: str) -> MethodRef:
        return MethodRef(target=target, method=method)

    def target(self, name: str) -> object | None:
        registration = self._targets.get(name)
        return registration.value if registration is not None else None

    def resolve(self, callback: Callback | None) -> ResolvedCallback | None:
        """Return the invocable for a callback, or None when it cannot run."""

        if isinstance(callback, FunctionRef):
            registration = self._functions.get(callback.name)
            if registration is None:
                return None
            return ResolvedCallback(
                func=registration.value,
                pass_context=registration.pass_context,
            )

        if isinstance(callback, MethodRef):
            registration = self._targets.get(callback.target)
            if registration is None or callback.method.startswith("_"):
                return None
            bound = getattr(registration.value, callback.method, None)
            if bound is None or not callable(bound):
                return None
            return ResolvedCallback(func=bound, pass_context=registration.pass_context)

        return None

    def display_name(self, callback: Callback | None) -> str | None:
        """Name a target chooses to present for itself, if any."""

        if not isinstance(callback, MethodRef):
            return None
        target = self.target(callback.target)
        if target is None or isinstance(target, type):
            return None
        as_text = getattr(target, "callback_as_text", None)
        if as_text is None or not callable(as_text):
            return None
        return str(as_text())
