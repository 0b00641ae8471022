"""Core `Schema` class: field declaration, path resolution, set/get/validate/export."""

import asyncio
import copy
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from loguru import logger

from .errors import (
    _MISSING,
    CastError,
    ConfigurationError,
    ConformError,
    ValidationError,
    ValidatorError,
)
from .fields import Array, Field, FieldRegistry, Mixed, SchemaArray, String, VirtualType
from .options import SchemaOptions
from .paths import get_value, is_positional, parse_path, set_value


class PathType(str, Enum):
    """How `Schema.set` treats a path."""

    REAL = "real"
    VIRTUAL = "virtual"
    NESTED = "nested"
    ADHOC = "adhocOrUndefined"


@dataclass
class Submission:
    """Result of `Schema.bind`: the exported form and its validity."""

    form: dict[str, Any]
    is_valid: bool
    error: ValidationError | None = None


def _is_nested_shape(declaration: Any) -> bool:
    """
    A plain dict without a ``type`` key (or whose ``type`` is itself a
    declaration with a ``type``) describes a nested container.
    """
    if not isinstance(declaration, dict):
        return False
    declared = declaration.get("type")
    return declared is None or (isinstance(declared, dict) and "type" in declared)


def _is_array_declaration(declared: Any) -> bool:
    if isinstance(declared, list):
        return True
    if isinstance(declared, type) and issubclass(declared, (list, Array)):
        return True
    return isinstance(declared, str) and declared in ("array", "Array")


def _deep_merge(target: dict, source: Mapping) -> dict:
    for key, value in source.items():
        if isinstance(value, Mapping):
            current = target.get(key)
            target[key] = _deep_merge(current if isinstance(current, dict) else {}, value)
        elif isinstance(value, list):
            target[key] = list(value)
        else:
            target[key] = value
    return target


class Schema:
    """
    A set of typed fields and the live document they read and write.

    A nested declarative shape is compiled once into a flat map of dotted
    paths to `Field` objects (``paths``) and a tree mirroring the shape
    (``tree``). Input flows through `set`, which runs setters and casts, and
    is checked by `validate`, which runs every field's validators and
    aggregates failures into one `ValidationError`.

    Parameters
    ----------
    shape : dict, optional
        Field declarations. Values may be a Python type (``str``, ``int``,
        ``float``, ``bool``, ``datetime``, ``date``, ``list``, ``dict``), a
        `Field` class, a type name (``"number"``), an options dict with a
        ``type`` key, a nested shape dict, or a list literal ``[caster]``.
    options : dict or SchemaOptions, optional
        Schema options, see `SchemaOptions`.
    registry : FieldRegistry, optional
        Type lookup table. Defaults to `FieldRegistry.default()`.

    Examples
    --------
    Declaring and loading a form:

        >>> from conform import Schema
        >>> form = Schema({
        ...     "name": {"first": {"type": str, "trim": True}, "last": str},
        ...     "age": {"type": int, "min": 18, "required": True},
        ...     "tags": [str],
        ... })
        >>> form = form.set({"name": {"first": " Ada "}, "age": "36", "tags": "math"})
        >>> form.get("name.first"), form.get("age"), form.get("tags")
        ('Ada', 36, ['math'])

    Validating:

        >>> error = form.set("age", "17").validate()
        >>> error.errors["age"].type
        'min'
    """

    def __init__(
        self,
        shape: dict | None = None,
        options: dict | SchemaOptions | None = None,
        *,
        registry: FieldRegistry | None = None,
    ):
        self.data: dict[str, Any] = {}
        self.paths: dict[str, Field] = {}
        self.subpaths: dict[str, Field | None] = {}
        self.virtuals: dict[str, VirtualType] = {}
        self.nested: set[str] = set()
        self.tree: dict[str, Any] = {}
        self.registry = registry or FieldRegistry.default()
        self.options = (
            options
            if isinstance(options, SchemaOptions)
            else SchemaOptions.model_validate(options or {})
        )
        self.validation_error: ValidationError | None = None
        self._cast_errors: dict[str, CastError] = {}
        self._required_paths: list[str] | None = None

        if shape:
            self.add(shape)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(paths={list(self.paths)})"

    # Declaration

    def add(self, shape: dict, prefix: str = "") -> "Schema":
        """
        Declare fields from a (possibly nested) shape.

        Raises
        ------
        ConfigurationError
            On None values, conflicting nested/leaf declarations or unknown
            types.
        """
        for key, declaration in shape.items():
            path = prefix + key
            if declaration is None:
                raise ConfigurationError(f"Invalid value for field path `{path}`")

            if _is_nested_shape(declaration) and declaration:
                if path in self.paths:
                    raise ConfigurationError(
                        f"Cannot declare nested path `{path}`: "
                        f"already declared as {self.paths[path]!r}."
                    )
                self.nested.add(path)
                self.add(declaration, path + ".")
            else:
                # an empty dict declares an untyped leaf
                self.path(path, declaration)
        return self

    field = add

    def path(self, name: str, declaration: Any = _MISSING) -> Any:
        """
        Get the field of a path, or declare one.

        With one argument, returns the `Field` for `name` (resolving
        positional paths such as ``"items.0.title"``) or None. With a
        declaration, (re)declares the path and returns the schema.

        A default given to the field after declaration fills the path in
        this schema's data when it is still unset. Documents already made by
        `instance` keep their data; later ones start from the new default.

        Examples
        --------
            >>> from conform import Schema
            >>> form = Schema({"tags": [str]})
            >>> form.path("tags")
            Array(path='tags')
            >>> form.path("tags.2")
            String(path='tags')
            >>> form = form.path("age", int)
        """
        if declaration is _MISSING:
            return self._resolve(name)

        *parents, last = name.split(".")
        branch = self.tree
        for depth, sub in enumerate(parents):
            node = branch.setdefault(sub, {})
            if not isinstance(node, dict):
                parent = ".".join(parents[: depth + 1])
                raise ConfigurationError(
                    f"Cannot set nested path `{name}`. Parent path `{parent}` "
                    f"already set to type {type(node).__name__}."
                )
            branch = node

        if name in self.nested or isinstance(branch.get(last), dict):
            raise ConfigurationError(
                f"Cannot declare `{name}` as a field: it is already a nested path."
            )
        if isinstance(branch.get(last), VirtualType):
            raise ConfigurationError(
                f"Cannot declare `{name}` as a field: it is already a virtual path."
            )

        field = self.interpret_as_type(name, declaration)
        if self.options.auto_trim and isinstance(field, String):
            field.trim()

        branch[last] = field
        self.paths[name] = field
        self.subpaths.clear()
        self._required_paths = None

        default = field.get_default(self, True)
        if default is not None:
            set_value(self.data, name, default)
        field.on_default(self._default_listener(name))
        return self

    def _default_listener(self, path: str) -> Callable[[Field, Any], None]:
        # bound to the declaring schema, not to its instances
        def listener(field: Field, _default: Any) -> None:
            current = self.get_value(path)
            if current is None or current == []:
                value = field.get_default(self)
                if value is not None:
                    self.set_value(path, value)

        return listener

    def interpret_as_type(self, path: str | None, declaration: Any) -> Field:
        """
        Turn a declaration into a concrete `Field`.

        Accepts a bare type (``int``, ``Number``), a type name (``"number"``),
        an options dict ``{"type": ..., **options}``, or an array declaration
        (``[caster]``, ``list``/``"array"`` with a ``cast`` option). A nested
        shape or `Schema` as caster gives a `SchemaArray`.

        Raises
        ------
        ConfigurationError
            If the type cannot be resolved.
        """
        if isinstance(declaration, Field):
            declaration.path = path
            return declaration

        options = (
            dict(declaration) if isinstance(declaration, dict) else {"type": declaration}
        )
        declared = options.get("type")

        if _is_array_declaration(declared):
            if isinstance(declared, list):
                caster_decl = declared[0] if declared else None
            else:
                caster_decl = options.get("cast")
            return self._array_field(path, caster_decl, options, declared)

        if declared is None or isinstance(declared, dict):
            # { type: { type: String } } or no type at all
            field_class: type[Field] | None = Mixed
        else:
            field_class = self.registry.resolve(declared)

        if field_class is None:
            raise ConfigurationError(
                f"Undefined type {declared!r} at `{path}`\n"
                f"  Known types: {', '.join(self.registry.names())}. "
                f"Did you try nesting Schemas? You can only nest using arrays."
            )
        return field_class(path, options)

    def _array_field(
        self, path: str | None, caster_decl: Any, options: dict, declared: Any
    ) -> Array:
        if isinstance(declared, type) and issubclass(declared, SchemaArray):
            if not isinstance(caster_decl, Schema):
                raise ConfigurationError(
                    f"SchemaArray at `{path}` needs a Schema as its `cast` option."
                )
            return SchemaArray(path, caster_decl, options)

        if isinstance(caster_decl, Schema):
            return SchemaArray(path, caster_decl, options)

        if _is_nested_shape(caster_decl) and caster_decl:
            nested = Schema(
                caster_decl, self.options.model_copy(), registry=self.registry
            )
            return SchemaArray(path, nested, options)

        caster = None
        if caster_decl is not None:
            caster = self.interpret_as_type(path, caster_decl)
        return Array(path, caster, options)

    def required_paths(self) -> list[str]:
        """Paths with a required validator, in declaration order."""
        if self._required_paths is None:
            self._required_paths = [
                path
                for path, field in self.paths.items()
                if field.options.get("required")
            ]
        return self._required_paths

    def virtual(self, name: str, options: dict | None = None) -> VirtualType:
        """
        Declare (or fetch) a computed path backed by getters and setters.

        Examples
        --------
            >>> from conform import Schema
            >>> form = Schema({"name": {"first": str, "last": str}})
            >>> full = form.virtual("name.full")
            >>> full = full.get(lambda _, v, doc: f"{doc.get('name.first')} {doc.get('name.last')}")
            >>> form = form.set({"name": {"first": "Ada", "last": "Lovelace"}})
            >>> form.get("name.full")
            'Ada Lovelace'
        """
        parts = name.split(".")
        branch: Any = self.tree
        for depth, part in enumerate(parts):
            last = depth == len(parts) - 1
            node = branch.get(part)
            if node is None:
                node = VirtualType(options, name) if last else {}
                branch[part] = node
            elif last and not isinstance(node, VirtualType):
                raise ConfigurationError(
                    f"Cannot declare virtual `{name}`: path is already declared."
                )
            elif not last and not isinstance(node, dict):
                raise ConfigurationError(
                    f"Cannot declare virtual `{name}`: parent `{part}` is a field."
                )
            branch = node

        self.virtuals[name] = branch
        return branch

    def virtualpath(self, name: str) -> VirtualType | None:
        """Return the virtual declared at `name`, if any."""
        return self.virtuals.get(name)

    # Path resolution

    def _resolve(self, name: str) -> Field | None:
        field = self.paths.get(name)
        if field is not None:
            return field
        if name in self.subpaths:
            return self.subpaths[name]
        try:
            if not is_positional(name):
                return None
        except ValueError:
            return None
        return self._positional(name)

    def _positional(self, name: str) -> Field | None:
        # group name tokens between indexes: "a.b.0.c.d" -> ["a.b", 0, "c.d"]
        chunks: list[str | int] = []
        names: list[str] = []
        for token in parse_path(name):
            if isinstance(token, int):
                if names:
                    chunks.append(".".join(names))
                    names = []
                chunks.append(token)
            else:
                names.append(token)
        if names:
            chunks.append(".".join(names))

        if not chunks or isinstance(chunks[0], int):
            return None

        field: Field | None = self.paths.get(chunks[0])
        for position in range(1, len(chunks)):
            if field is None:
                break
            chunk = chunks[position]
            if isinstance(chunk, int):
                if position == len(chunks) - 1 and not isinstance(field, SchemaArray):
                    field = field.caster if isinstance(field, Array) else None
                # index into a nested schema array: keep walking
                continue
            if not isinstance(field, SchemaArray) or field.schema is None:
                field = None
                break
            field = field.schema.path(chunk)

        self.subpaths[name] = field
        return field

    def path_type(self, name: str) -> PathType:
        """
        Classify a path as real, virtual, nested or ad hoc.

        Examples
        --------
            >>> from conform import Schema
            >>> form = Schema({"name": {"first": str}, "tags": [str]})
            >>> form.path_type("name"), form.path_type("tags.0")
            (<PathType.NESTED: 'nested'>, <PathType.REAL: 'real'>)
        """
        if name in self.paths:
            return PathType.REAL
        if name in self.virtuals:
            return PathType.VIRTUAL
        if name in self.nested:
            return PathType.NESTED
        if self._resolve(name) is not None:
            return PathType.REAL
        return PathType.ADHOC

    # Reading and writing

    def set(
        self,
        path: Any,
        value: Any = _MISSING,
        type_hint: Any = None,
        *,
        merge: bool = False,
    ) -> "Schema":
        """
        Set the value of a path, or of many paths.

        Parameters
        ----------
        path : str, dict or Schema
            A dotted path, or a bag of paths/values (a nested dict, or another
            schema whose data is read).
        value : Any
            The value for a single path. For a bag, an optional path prefix.
        type_hint : type or str, optional
            Cast on the fly when `path` has no declared field.
        merge : bool, default False
            When setting a dict on a nested path, merge into the existing
            container instead of replacing it.

        Notes
        -----
        A value that fails to cast is still written as given. The
        `CastError` is remembered for the path and reported by the next
        `validate` pass; setting the path again successfully clears it.
        """
        if isinstance(type_hint, dict):
            merge = bool(type_hint.get("merge", merge))
            type_hint = None

        if not isinstance(path, str):
            if isinstance(path, Schema):
                path = path.data
            if not isinstance(path, Mapping):
                raise TypeError(
                    f"set() expects a path or a mapping, got {type(path).__name__}"
                )
            prefix = value if isinstance(value, str) else ""
            return self._set_bag(path, prefix, merge)

        if value is _MISSING:
            raise TypeError(f"set() missing the value for path '{path}'")
        return self._set_path(path, value, type_hint, merge)

    def _set_bag(self, bag: Mapping, prefix: str = "", merge: bool = False) -> "Schema":
        for key, value in bag.items():
            path = f"{prefix}.{key}" if prefix else str(key)
            try:
                parse_path(path)
            except ValueError:
                logger.debug(f"Skipping invalid path {path!r}")
                continue

            if isinstance(value, dict) and self.path_type(path) is not PathType.VIRTUAL:
                self._set_bag(value, path, merge)
            else:
                self._set_path(path, value, None, merge)
        return self

    def _set_path(self, path: str, value: Any, type_hint: Any, merge: bool) -> "Schema":
        kind = self.path_type(path)

        if kind is PathType.NESTED and isinstance(value, dict):
            if not merge:
                self.set_value(path, {})
                self._forget_cast_errors(path)
            return self._set_bag(value, path, merge)

        if kind is PathType.VIRTUAL:
            self.virtuals[path].apply_setters(value, self)
            return self

        field = self.path(path)
        if field is None or value is None:
            if field is None and type_hint is not None and value is not None:
                value = self.interpret_as_type(path, type_hint).cast(value, self)
            self._forget_cast_errors(path)
            set_value(self.data, path, value)
            return self

        # the whole value under `path` is replaced, element failures included
        self._forget_cast_errors(path)
        try:
            value = field.apply_setters(value, self, False, self.get_value(path))
        except CastError as err:
            logger.debug(f"Keeping raw value for {path!r}: {err}")
            self._cast_errors[path] = err

        set_value(self.data, path, value)
        return self

    def _forget_cast_errors(self, path: str) -> None:
        """Drop pending cast errors of `path` and of every path below it."""
        prefix = path + "."
        stale = [p for p in self._cast_errors if p == path or p.startswith(prefix)]
        for key in stale:
            del self._cast_errors[key]

    def get(self, path: str) -> Any:
        """Return the value of a path, passed through its getters."""
        field = self.path(path) or self.virtualpath(path)
        value = self.get_value(path)
        if field is not None:
            value = field.apply_getters(value, self)
        return value

    def get_value(self, path: str) -> Any:
        """Return the raw stored value of a path (no getters)."""
        return get_value(self.data, path)

    def set_value(self, path: str, value: Any) -> "Schema":
        """Store a raw value (no setters, no casting)."""
        set_value(self.data, path, value)
        return self

    # Validation

    def validate(self, callback: Callable[[ValidationError | None], Any] | None = None):
        """
        Run every field's validators.

        Without a running event loop, the pass runs to completion and the
        result is returned (and passed to `callback`). Inside a running loop
        the pass is scheduled as a task, `callback` is attached to it, and
        the task is returned.

        Returns
        -------
        ValidationError | None | asyncio.Task
            The aggregated error, None when everything passed, or the
            scheduled task.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is None:
            error = asyncio.run(self.validate_async())
            if callback is not None:
                callback(error)
            return error

        task = loop.create_task(self.validate_async())
        if callback is not None:

            def report(done: asyncio.Task) -> None:
                if not done.cancelled():
                    callback(done.result())

            task.add_done_callback(report)
        return task

    async def validate_async(self) -> ValidationError | None:
        """
        Validate every declared path concurrently.

        Every path reports before the pass completes, and a failing path never
        stops the others. Cast failures recorded under positional paths (such
        as ``"nums.1"``) are reported under those paths.

        Returns
        -------
        ValidationError | None
            The aggregated error, or None when every path passed.
        """
        for path, cast_error in list(self._cast_errors.items()):
            if path not in self.paths:
                self.invalidate(path, cast_error)

        validating: set[str] = set()
        pending = []
        for path in list(self.paths):
            if path in validating:
                continue
            validating.add(path)
            pending.append(self._validate_path(path))

        if pending:
            await asyncio.gather(*pending)

        error = self.validation_error
        self.validation_error = None
        if error is None:
            logger.debug(f"Validated {len(validating)} paths: all passed")
        else:
            logger.debug(
                f"Validated {len(validating)} paths: {len(error.errors)} failed "
                f"({', '.join(error.errors)})"
            )
        return error

    async def _validate_path(self, path: str) -> None:
        field = self.path(path)
        if field is None:
            return

        cast_error = self._cast_errors.get(path)
        if cast_error is not None:
            self.invalidate(path, cast_error)
            return

        value = self.get_value(path)
        error = await field.do_validate(value, self)
        if error is not None:
            self.invalidate(path, error)

        if isinstance(field, SchemaArray):
            nested_errors = await field.validate_documents(value)
            for subpath, sub_error in nested_errors.items():
                self.invalidate(f"{path}.{subpath}", sub_error)

    def invalidate(self, path: str, err: Any, value: Any = _MISSING) -> "Schema":
        """
        Mark `path` as invalid for the current validation pass.

        A string (or None) `err` is wrapped into a `ValidatorError` tagged
        with it; the value only appears in the message when given.
        """
        if self.validation_error is None:
            self.validation_error = ValidationError()

        if err is None or isinstance(err, str):
            err = (
                ValidatorError(path, err)
                if value is _MISSING
                else ValidatorError(path, err, value)
            )

        self.validation_error.errors[path] = err
        return self

    # Presentation

    def export(self, error: ValidationError | None = None) -> dict[str, Any]:
        """
        Build the presentation tree of the document.

        Each declared path becomes ``{"value", "data"}`` plus ``"error"``
        when `error` has an entry for it, nested by path segments. Errors
        below a declared path (``"items.0.title"``, ``"tags.1"``) are listed
        under that path's ``"errors"``, keyed by the rest of the path.

        Examples
        --------
            >>> from conform import Schema
            >>> form = Schema({"age": {"type": int, "min": 18}}, {"errors": {"min": "At least {data[min]}"}})
            >>> tree = form.set("age", 17).export(form.validate())
            >>> tree["age"]["value"], tree["age"]["error"]
            (17, 'At least 18')
        """
        errors = error.errors if error is not None else {}
        result: dict[str, Any] = {}
        entries: dict[str, dict[str, Any]] = {}
        for path, field in self.paths.items():
            entry: dict[str, Any] = {"value": self.get(path), "data": field.export()}
            field_error = errors.get(path)
            if field_error is not None:
                entry["error"] = self._error_message(field_error, entry["data"])
            entries[path] = entry
            set_value(result, path, entry)

        for error_path, sub_error in errors.items():
            if error_path in entries:
                continue
            owner = self._owning_path(error_path)
            if owner is None:
                continue
            sub_field = self.path(error_path)
            data = sub_field.export() if sub_field is not None else entries[owner]["data"]
            entries[owner].setdefault("errors", {})[error_path[len(owner) + 1 :]] = (
                self._error_message(sub_error, data)
            )
        return result

    def _owning_path(self, path: str) -> str | None:
        """Return the longest declared path that `path` lies below."""
        owners = [p for p in self.paths if path.startswith(p + ".")]
        return max(owners, key=len) if owners else None

    def _error_message(self, error: ConformError, data: dict[str, Any]) -> str:
        tag = getattr(error, "type", None)
        template = self.options.errors.get(tag) if isinstance(tag, str) else None
        if template is None:
            return error.message
        try:
            return template.format(data=data)
        except (KeyError, IndexError, AttributeError, ValueError) as exc:
            logger.warning(f"Could not render error template for {tag!r}: {exc}")
            return error.message

    # Documents and options

    def instance(self, data: Mapping | None = None) -> "Schema":
        """
        Return a new document sharing this schema's declarations.

        The new document has its own data container with defaults applied
        (array defaults are fresh lists), then `data` is loaded through `set`.
        """
        document = copy.copy(self)
        document.data = {}
        document.validation_error = None
        document._cast_errors = {}

        for path, field in self.paths.items():
            default = field.get_default(document, True)
            if default is not None:
                set_value(document.data, path, default)

        if data is not None:
            document.set(data)
        return document

    def plugin(self, func: Callable[..., Any], opts: Any = None) -> "Schema":
        """Apply a plugin: ``func(schema, opts)``."""
        func(self, opts)
        return self

    def option(self, key: str, value: Any = _MISSING) -> Any:
        """
        Read an option, or set it when `value` is given.

        Keys may be given in snake_case or as their camelCase alias.
        """
        name = key
        for field_name, info in SchemaOptions.model_fields.items():
            if info.alias == key:
                name = field_name
                break

        if value is _MISSING:
            return getattr(self.options, name, None)
        setattr(self.options, name, value)
        return self

    async def bind_async(self, sources: Mapping[str, Any]) -> Submission:
        """
        Load request-like sources, validate, and export.

        The mappings named by ``options.data_sources`` are deep-merged in
        order (later sources win) and loaded through `set`.
        """
        merged: dict[str, Any] = {}
        for name in self.options.data_sources:
            source = sources.get(name)
            if source:
                _deep_merge(merged, source)

        self.set(merged)
        error = await self.validate_async()
        return Submission(form=self.export(error), is_valid=error is None, error=error)

    def bind(self, sources: Mapping[str, Any]) -> Submission:
        """Synchronous `bind_async`; must not be called from a running loop."""
        return asyncio.run(self.bind_async(sources))
