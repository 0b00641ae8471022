"""Validator entries and the structured join that runs them."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Pattern, Union

from loguru import logger

from ..errors import ConfigurationError
from .base import as_handle, callback_handle, failed

Predicate = Union[Callable[..., Any], Pattern[str]]


@dataclass(eq=False)
class Validator:
    """
    One ``(predicate, tag)`` entry of a field.

    Parameters
    ----------
    check : callable or compiled regex
        A regex is tested with ``search`` against the string form of the
        value. A callable receives the value and returns a truthy result (or
        an awaitable of one). With ``asynchronous=True`` the callable is
        called as ``check(value, done)`` and reports through ``done(ok)``.
    tag : str, optional
        Validator kind used in error reports (``"required"``, ``"min"``...).
    message : str, optional
        Custom message for the resulting `ValidatorError`.
    asynchronous : bool, default False
        Callback-style predicate.

    Entries compare by identity, so a field can remove exactly the entry it
    installed.
    """

    check: Predicate
    tag: str | None = None
    message: str | None = None
    asynchronous: bool = False

    def schedule(self, value: Any) -> asyncio.Future:
        """Start the check and return its handle on the running loop."""
        check = self.check

        if isinstance(check, re.Pattern):
            text = "" if value is None else str(value)
            return as_handle(check.search(text) is not None)

        if self.asynchronous:
            return callback_handle(check, value)

        try:
            return as_handle(check(value))
        except Exception as exc:
            return failed(exc)

    @staticmethod
    def passed(outcome: Any) -> bool:
        """A predicate returning None counts as a pass."""
        return outcome is None or bool(outcome)


def make_validators(
    obj: Any,
    tag: str | None = None,
    *more: Any,
    message: str | None = None,
    asynchronous: bool = False,
) -> list[Validator]:
    """
    Normalize the arguments of ``Field.validate`` into `Validator` entries.

    Accepts a `Validator`, a compiled regex, a callable (coroutine functions
    are picked up as asynchronous automatically), or one or more dicts of the
    form ``{"validator": ..., "msg": ...}``.
    """
    if isinstance(obj, Validator):
        return [obj]

    if isinstance(obj, re.Pattern) or callable(obj):
        return [Validator(obj, tag, message=message, asynchronous=asynchronous)]

    validators: list[Validator] = []
    for arg in (obj, tag, *more):
        if arg is None and validators:
            continue
        if not isinstance(arg, dict):
            raise ConfigurationError(
                f"Invalid validator. Received ({type(arg).__name__}) {arg!r}. "
                "Expected a callable, a compiled regex, or a dict with a "
                "'validator' key."
            )
        validators.extend(
            make_validators(
                arg.get("validator"),
                arg.get("msg", arg.get("type")),
                message=arg.get("message"),
                asynchronous=arg.get("asynchronous", False),
            )
        )
    return validators


async def run_validators(
    validators: Iterable[Validator], value: Any
) -> list[tuple[Validator, Any]]:
    """
    Run every validator at once and wait for all of them.

    Returns
    -------
    list[tuple[Validator, Any]]
        ``(validator, outcome)`` pairs in completion order. An outcome is the
        predicate result, or the exception the validator raised.
    """
    outcomes: list[tuple[Validator, Any]] = []

    async def settle(validator: Validator, handle: asyncio.Future) -> None:
        try:
            outcome = await handle
        except Exception as exc:
            logger.opt(exception=exc).warning(
                f"Validator {validator.tag or validator.check!r} raised: {exc}"
            )
            outcome = exc
        outcomes.append((validator, outcome))

    pending = [settle(v, v.schedule(value)) for v in validators]
    if pending:
        await asyncio.gather(*pending)
    return outcomes

