"""Dotted path parsing and raw access to nested data containers.

A path such as ``"items.0.name"`` is tokenized into ``("items", 0, "name")``:
name segments stay strings, pure-integer segments become positional ``int``
tokens. Dicts are walked with string keys and lists with integer indices.
"""

from functools import lru_cache
from typing import Any, Iterable, Union

PathToken = Union[str, int]


@lru_cache(maxsize=1024)
def parse_path(path: str) -> tuple[PathToken, ...]:
    """
    Split a dotted path into name and index tokens.

    Parameters
    ----------
    path : str
        Dotted path, e.g. ``"a.0.b"``.

    Returns
    -------
    tuple[str | int, ...]
        One token per segment; integer segments are returned as ``int``.

    Raises
    ------
    ValueError
        If the path is empty or contains an empty segment.

    Examples
    --------
        >>> parse_path("tags.3")
        ('tags', 3)
        >>> parse_path("name.first")
        ('name', 'first')
    """
    if not path:
        raise ValueError("Path must be a non-empty string")

    tokens: list[PathToken] = []
    for segment in path.split("."):
        if not segment:
            raise ValueError(f"Empty segment in path '{path}'")
        index = segment.isascii() and segment.isdigit()
        tokens.append(int(segment) if index else segment)
    return tuple(tokens)


def format_path(tokens: Iterable[PathToken]) -> str:
    """Join tokens back into a dotted path."""
    return ".".join(str(token) for token in tokens)


def is_positional(path: str) -> bool:
    """Return True if any segment after the first is an array index."""
    return any(isinstance(token, int) for token in parse_path(path)[1:])


def _step(container: Any, token: PathToken) -> Any:
    if isinstance(container, dict):
        return container.get(str(token))
    if isinstance(container, list) and isinstance(token, int):
        return container[token] if token < len(container) else None
    return None


def get_value(data: Any, path: str) -> Any:
    """
    Read the raw value at `path`, returning None on any missing segment.

    Examples
    --------
        >>> get_value({"a": [{"b": 1}]}, "a.0.b")
        1
        >>> get_value({"a": {}}, "a.x.y") is None
        True
    """
    value = data
    for token in parse_path(path):
        if value is None:
            return None
        value = _step(value, token)
    return value


def _can_descend(child: Any, token: PathToken) -> bool:
    return isinstance(child, dict) or (
        isinstance(child, list) and isinstance(token, int)
    )


def set_value(data: dict, path: str, value: Any) -> None:
    """
    Write `value` at `path`, creating intermediate containers as needed.

    Existing dict intermediates are reused, and so are lists when the next
    segment is an index; any other intermediate value is replaced by a new
    dict. Writing past the end of a list pads it with None.

    Examples
    --------
        >>> data = {}
        >>> set_value(data, "name.first", "Ada")
        >>> data
        {'name': {'first': 'Ada'}}
    """
    tokens = parse_path(path)
    container: Any = data

    for position, token in enumerate(tokens):
        last = position == len(tokens) - 1

        if isinstance(container, list):
            # _can_descend guarantees an int token here
            if token >= len(container):  # type: ignore[operator]
                container.extend([None] * (token + 1 - len(container)))  # type: ignore[operator]
            key: Any = token
            current = container[token]  # type: ignore[index]
        else:
            key = str(token)
            current = container.get(key)

        if last:
            container[key] = value
            return

        if not _can_descend(current, tokens[position + 1]):
            current = {}
            container[key] = current
        container = current
