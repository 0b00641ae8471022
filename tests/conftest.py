"""Shared fixtures for conform tests."""

from datetime import datetime

import pytest

from conform import Schema


@pytest.fixture
def user_schema():
    """Schema with nested, trimmed, bounded and array fields."""
    return Schema(
        {
            "name": {
                "first": {"type": str, "trim": True},
                "last": str,
            },
            "email": {"type": str, "lowercase": True, "trim": True},
            "age": {"type": int, "min": 18, "required": True},
            "tags": [str],
            "joined": datetime,
        }
    )


@pytest.fixture
def order_schema():
    """Schema with an array of nested documents."""
    return Schema(
        {
            "reference": {"type": str, "required": True},
            "items": [
                {
                    "title": {"type": str, "required": True},
                    "quantity": {"type": int, "min": 1},
                }
            ],
        }
    )


@pytest.fixture
def request_sources():
    """Request-like input split across body, query and params."""
    return {
        "body": {"name": {"first": " Ada ", "last": "Lovelace"}, "age": "17"},
        "query": {"age": "36", "tags": "math"},
        "params": {},
    }
