"""Validator entries and the future-handle protocol used to run them."""

from .base import as_handle, callback_handle, resolved
from .core import Validator, make_validators, run_validators

__all__ = [
    "Validator",
    "make_validators",
    "run_validators",
    "as_handle",
    "callback_handle",
    "resolved",
]
