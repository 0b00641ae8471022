"""Field types: casting, transforms, defaults and validators for one path."""

import asyncio
import inspect
import math
import numbers
import operator
import re
from collections.abc import Mapping
from datetime import date, datetime, timezone
from decimal import Decimal
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Pattern

from loguru import logger

from .errors import _MISSING, CastError, ConfigurationError, ConformError, ValidatorError
from .validators import Validator, make_validators, run_validators

if TYPE_CHECKING:  # pragma: no cover
    from .base import Schema


class FieldKind(str, Enum):
    """Primitive kind of a field variant."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    MIXED = "mixed"
    ARRAY = "array"


def _required_positional(func: Callable) -> int | None:
    """Count required positional parameters, or None if `func` takes *args."""
    try:
        sig = inspect.signature(func)
    except (TypeError, ValueError):
        return 1
    count = 0
    for param in sig.parameters.values():
        if param.kind == inspect.Parameter.VAR_POSITIONAL:
            return None
        if (
            param.kind
            in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
            and param.default is inspect.Parameter.empty
        ):
            count += 1
    return count


def call_transform(func: Callable, value: Any, owner: Any, context: Any) -> Any:
    """
    Call a setter or getter with as many of ``(value, owner, context)`` as it
    accepts.

    ``lambda v: v.strip()`` only receives the value, ``def f(v, field)`` also
    gets the field it is registered on, and ``def f(v, field, doc)`` the
    schema instance being read or written.
    """
    count = _required_positional(func)
    args = (value, owner, context)
    if count is None:
        return func(*args)
    return func(*args[: max(1, min(count, 3))])


def _call_factory(func: Callable, context: Any) -> Any:
    """Call a default factory, passing the context if it takes an argument."""
    count = _required_positional(func)
    if count == 0:
        return func()
    return func(context)


class Field:
    """
    Base field: the typed handler of one schema path.

    A field owns the cast for its type, its default value, its setters and
    getters, and its validators. Variants override `cast`, `check_required`
    and `_export_attributes`.

    Parameters
    ----------
    path : str, optional
        Dotted path of the field inside its schema.
    options : dict, optional
        Declaration options. Keys naming a declaration method (``default``,
        ``required``, ``validate``, ``set``, ``get`` and the variant's own,
        such as ``min`` or ``enum``) call that method; list values are passed
        as positional arguments.

    Examples
    --------
        >>> from conform.fields import Number
        >>> age = Number("age", {"min": 18, "required": True})
        >>> age.cast("42")
        42
        >>> [v.tag for v in age.validators]
        ['min', 'required']
    """

    kind: ClassVar[FieldKind] = FieldKind.MIXED
    option_methods: ClassVar[tuple[str, ...]] = (
        "default",
        "required",
        "validate",
        "set",
        "get",
    )
    # Methods enabled by a truthy option and taking no arguments
    flag_methods: ClassVar[tuple[str, ...]] = ()

    def __init__(self, path: str | None = None, options: dict | None = None):
        self.path = path
        self.options: dict[str, Any] = dict(options or {})
        self.validators: list[Validator] = []
        self.setters: list[Callable] = []
        self.getters: list[Callable] = []
        self.default_value: Any = _MISSING
        self._required_validator: Validator | None = None
        self._default_listeners: list[Callable[["Field", Any], None]] = []

        self._apply_options()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(path={self.path!r})"

    def _apply_options(self) -> None:
        for name, value in list(self.options.items()):
            if name not in self.option_methods:
                continue
            method = getattr(self, name)
            if name in self.flag_methods:
                if value:
                    method()
            elif name != "default" and isinstance(value, (list, tuple)):
                method(*value)
            else:
                method(value)

    # Casting

    def cast(self, value: Any, context: Any = None, init: bool = False) -> Any:
        """Convert `value` to this field's type or raise `CastError`."""
        return value

    def check_required(self, value: Any) -> bool:
        """Return True if `value` satisfies the required validator."""
        return value is not None

    # Declarations

    def default(self, value: Any) -> "Field":
        """
        Set the default value.

        Callables are stored and called when a document needs the default
        (with the document as argument if they accept one); their result is
        cast then. Other values are cast right away.
        """
        self.default_value = value if callable(value) else self.cast(value)
        for listener in list(self._default_listeners):
            listener(self, self.default_value)
        return self

    def on_default(self, listener: Callable[["Field", Any], None]) -> "Field":
        """Register `listener(field, default)` for later `default()` calls."""
        self._default_listeners.append(listener)
        return self

    def get_default(self, context: Any = None, init: bool = False) -> Any:
        """Return the cast default value, or None when there is none."""
        value = self.default_value
        if value is _MISSING:
            return None
        if callable(value):
            value = _call_factory(value, context)
        if value is None:
            return None
        return self.cast(value, context, init)

    def required(self, flag: bool = True) -> "Field":
        """Add (or with ``False`` remove) the built-in ``required`` validator."""
        if not flag:
            self.options.pop("required", None)
            if self._required_validator is not None:
                self.validators.remove(self._required_validator)
                self._required_validator = None
            return self

        self.options["required"] = True
        if self._required_validator is None:
            self._required_validator = Validator(self.check_required, "required")
            self.validators.append(self._required_validator)
        return self

    def set(self, *funcs: Callable) -> "Field":
        """Add setters. The last one registered runs first."""
        for func in funcs:
            if not callable(func):
                raise ConfigurationError(
                    f"A setter must be a function (path '{self.path}')."
                )
            self.setters.append(func)
        return self

    def get(self, *funcs: Callable) -> "Field":
        """Add getters. The last one registered runs first."""
        for func in funcs:
            if not callable(func):
                raise ConfigurationError(
                    f"A getter must be a function (path '{self.path}')."
                )
            self.getters.append(func)
        return self

    def validate(
        self,
        obj: Any,
        tag: Any = None,
        *more: Any,
        message: str | None = None,
        asynchronous: bool = False,
    ) -> "Field":
        """
        Add validators.

        Parameters
        ----------
        obj : callable, compiled regex, Validator or dict
            The predicate. ``async def`` predicates are awaited; with
            ``asynchronous=True`` the predicate is called as
            ``obj(value, done)`` and must call ``done(ok)``. Dicts of the form
            ``{"validator": fn, "msg": tag}`` may be passed, several at once.
        tag : str, optional
            Error tag reported when the predicate fails.
        message : str, optional
            Custom error message.
        asynchronous : bool, default False
            Use the callback style described above.

        Examples
        --------
            >>> import re
            >>> from conform.fields import String
            >>> name = String("name")
            >>> name = name.validate(re.compile(r"^[A-Z]"), "capitalized")
            >>> name = name.validate(lambda v: len(v) < 20, "short")
        """
        self.validators.extend(
            make_validators(obj, tag, *more, message=message, asynchronous=asynchronous)
        )
        return self

    # Transforms

    def apply_setters(
        self,
        value: Any,
        context: Any = None,
        init: bool = False,
        prior: Any = None,
    ) -> Any:
        """Run setters in reverse order, then cast the result."""
        for setter in reversed(self.setters):
            value = call_transform(setter, value, self, context)

        # do not cast until all setters are applied
        if value is None:
            return None
        return self.cast(value, context, init)

    def apply_getters(self, value: Any, context: Any = None) -> Any:
        """Run getters in reverse order over a stored value."""
        for getter in reversed(self.getters):
            value = call_transform(getter, value, self, context)
        return value

    # Validation

    async def do_validate(
        self, value: Any, context: Any = None
    ) -> ValidatorError | None:
        """
        Run every validator of this field and report the first failure.

        All validators start together; the field has passed only after each
        of them reported. The first failure in completion order wins, and
        later completions are still awaited but ignored.

        Returns
        -------
        ValidatorError | None
            None when every validator passed.
        """
        outcomes = await run_validators(list(self.validators), value)
        for validator, outcome in outcomes:
            if isinstance(outcome, Exception):
                error = ValidatorError(
                    self.path or "", validator.tag, value, message=str(outcome)
                )
                error.__cause__ = outcome
                return error
            if not Validator.passed(outcome):
                return ValidatorError(
                    self.path or "", validator.tag, value, message=validator.message
                )
        return None

    # Presentation

    def _export_attributes(self) -> dict[str, Any]:
        return {}

    def export(self) -> dict[str, Any]:
        """
        Return the field options decorated with rendering hints.

        The ``attributes`` map carries ``required`` (as a bare attribute,
        value None) and the variant hints (``type``, ``min``, ``max``).
        """
        options = dict(self.options)
        attributes = dict(options.get("attributes") or {})
        attributes.pop("required", None)
        if self.options.get("required"):
            attributes["required"] = None
        attributes.update(self._export_attributes())
        options["attributes"] = attributes
        return options


class Mixed(Field):
    """Untyped field: values are stored as given."""

    kind = FieldKind.MIXED


class String(Field):
    r"""
    String field with enum, case, trim and regex helpers.

    Examples
    --------
        >>> from conform.fields import String
        >>> email = String("email", {"lowercase": True, "trim": True})
        >>> email.apply_setters("  AVENUE@Q.COM ")
        'avenue@q.com'
        >>> state = String("state", {"enum": ["open", "closed"]})
        >>> state.enum_values
        ['open', 'closed']
    """

    kind = FieldKind.STRING
    option_methods = Field.option_methods + (
        "enum",
        "lowercase",
        "uppercase",
        "trim",
        "match",
    )
    flag_methods = ("lowercase", "uppercase", "trim")

    def __init__(self, path: str | None = None, options: dict | None = None):
        self.enum_values: list[str] = []
        self._enum_validator: Validator | None = None
        super().__init__(path, options)

    def cast(self, value: Any, context: Any = None, init: bool = False) -> Any:
        if value is None or isinstance(value, str):
            return value

        # reference-like values reduce to their identifier
        if isinstance(value, Mapping):
            identifier = value.get("_id")
        else:
            identifier = getattr(value, "_id", None)
        if isinstance(identifier, str):
            return identifier

        if isinstance(value, bool):
            return "true" if value else "false"

        if isinstance(value, (bytes, bytearray)):
            try:
                return bytes(value).decode("utf-8")
            except UnicodeDecodeError as exc:
                raise CastError("string", value, self.path) from exc

        # containers, and objects whose str() is only the default repr
        if isinstance(value, (Mapping, list, tuple, set, frozenset)) or (
            type(value).__str__ is object.__str__
            and type(value).__repr__ is object.__repr__
        ):
            raise CastError("string", value, self.path)

        return str(value)

    def check_required(self, value: Any) -> bool:
        return isinstance(value, str) and len(value) > 0

    def enum(self, *values: Any) -> "String":
        """
        Restrict values to an enumeration.

        Values accumulate across calls behind a single ``enum`` validator.
        Calling with no values, None or False removes the validator.
        """
        if not values or values[0] is None or values[0] is False:
            if self._enum_validator is not None:
                self.validators.remove(self._enum_validator)
                self._enum_validator = None
                self.enum_values = []
            return self

        for value in values:
            if value is not None:
                self.enum_values.append(self.cast(value))

        if self._enum_validator is None:
            self._enum_validator = Validator(
                lambda v: v is None or v in self.enum_values, "enum"
            )
            self.validators.append(self._enum_validator)
        return self

    def _string_setter(self, transform: Callable[[str], str]) -> "String":
        def setter(value: Any, field: "String") -> Any:
            if not isinstance(value, str):
                value = field.cast(value)
            if value:
                return transform(value)
            return value

        return self.set(setter)  # type: ignore[return-value]

    def lowercase(self) -> "String":
        """Add a setter lowercasing the value."""
        return self._string_setter(str.lower)

    def uppercase(self) -> "String":
        """Add a setter uppercasing the value."""
        return self._string_setter(str.upper)

    def trim(self) -> "String":
        """Add a setter stripping surrounding whitespace."""
        return self._string_setter(str.strip)

    def match(self, regex: str | Pattern[str], message: str | None = None) -> "String":
        """Add a ``regexp`` validator; None and empty strings pass."""
        pattern = re.compile(regex) if isinstance(regex, str) else regex
        self.validators.append(
            Validator(
                lambda v: v is None or v == "" or pattern.search(v) is not None,
                "regexp",
                message=message,
            )
        )
        return self


class Number(Field):
    """
    Numeric field with ``min``/``max`` bounds.

    Strings parse as ``int`` when possible and ``float`` otherwise; the empty
    string casts to None.

    Examples
    --------
        >>> from conform.fields import Number
        >>> price = Number("price").min(0).max(100)
        >>> price.cast("12.5"), price.cast(""), price.options["max"]
        (12.5, None, 100)
    """

    kind = FieldKind.NUMBER
    option_methods = Field.option_methods + ("min", "max")

    def __init__(self, path: str | None = None, options: dict | None = None):
        self._min_validator: Validator | None = None
        self._max_validator: Validator | None = None
        super().__init__(path, options)

    def cast(self, value: Any, context: Any = None, init: bool = False) -> Any:
        if value is None or value == "":
            return None

        if isinstance(value, str):
            text = value.strip()
            if "_" in text or not text.isascii():
                raise CastError("number", value, self.path)
            try:
                return int(text)
            except ValueError:
                pass
            try:
                number = float(text)
            except ValueError:
                raise CastError("number", value, self.path) from None
            if math.isnan(number):
                raise CastError("number", value, self.path)
            return number

        if isinstance(value, bool):
            raise CastError("number", value, self.path)

        if isinstance(value, Decimal):
            if value.is_nan():
                raise CastError("number", value, self.path)
            return value

        if isinstance(value, numbers.Real):
            if isinstance(value, float) and math.isnan(value):
                raise CastError("number", value, self.path)
            return value

        if hasattr(value, "__index__"):
            return operator.index(value)

        raise CastError("number", value, self.path)

    def check_required(self, value: Any) -> bool:
        return isinstance(value, (numbers.Number, Decimal)) and not isinstance(
            value, bool
        )

    def min(self, bound: Any = None, message: str | None = None) -> "Number":
        """Set the lower bound, replacing any previous one. None removes it."""
        if self._min_validator is not None:
            self.validators.remove(self._min_validator)
            self._min_validator = None
            self.options.pop("min", None)

        if bound is not None:
            self._min_validator = Validator(
                lambda v: v is None or v >= bound, "min", message=message
            )
            self.validators.append(self._min_validator)
            self.options["min"] = bound
        return self

    def max(self, bound: Any = None, message: str | None = None) -> "Number":
        """Set the upper bound, replacing any previous one. None removes it."""
        if self._max_validator is not None:
            self.validators.remove(self._max_validator)
            self._max_validator = None
            self.options.pop("max", None)

        if bound is not None:
            self._max_validator = Validator(
                lambda v: v is None or v <= bound, "max", message=message
            )
            self.validators.append(self._max_validator)
            self.options["max"] = bound
        return self

    def _export_attributes(self) -> dict[str, Any]:
        attributes: dict[str, Any] = {"type": "number"}
        if self.options.get("min") is not None:
            attributes["min"] = self.options["min"]
        if self.options.get("max") is not None:
            attributes["max"] = self.options["max"]
        return attributes


class Boolean(Field):
    """
    Boolean field.

    ``"0"`` and ``"false"`` cast to False, ``"true"`` to True, anything else
    by truthiness. Required means exactly True or False.
    """

    kind = FieldKind.BOOLEAN

    def cast(self, value: Any, context: Any = None, init: bool = False) -> Any:
        if value is None:
            return None
        if value == "0" or value == "false":
            return False
        if value == "true":
            return True
        return bool(value)

    def check_required(self, value: Any) -> bool:
        return value is True or value is False

    def _export_attributes(self) -> dict[str, Any]:
        return {"type": "checkbox"}


def _is_numeric_string(value: str) -> bool:
    try:
        return not math.isnan(float(value))
    except ValueError:
        return False


class Date(Field):
    """
    Date field.

    Numbers and numeric strings are epoch milliseconds (UTC). Other strings
    are parsed as ISO 8601, then as RFC 2822 dates.

    Examples
    --------
        >>> from conform.fields import Date
        >>> Date("born").cast("2024-03-01")
        datetime.datetime(2024, 3, 1, 0, 0)
        >>> Date("born").cast(0)
        datetime.datetime(1970, 1, 1, 0, 0, tzinfo=datetime.timezone.utc)
    """

    kind = FieldKind.DATE

    def cast(self, value: Any, context: Any = None, init: bool = False) -> Any:
        if value is None or value == "":
            return None

        if isinstance(value, date):
            return value

        if isinstance(value, bool):
            raise CastError("date", value, self.path)

        if isinstance(value, (int, float, Decimal)) or (
            isinstance(value, str) and _is_numeric_string(value)
        ):
            try:
                return datetime.fromtimestamp(float(value) / 1000, tz=timezone.utc)
            except (OverflowError, OSError, ValueError) as exc:
                raise CastError("date", value, self.path) from exc

        if isinstance(value, str):
            text = value.strip()
            try:
                return datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                pass
            try:
                return parsedate_to_datetime(text)
            except (TypeError, ValueError, IndexError):
                pass

        raise CastError("date", value, self.path)

    def check_required(self, value: Any) -> bool:
        return isinstance(value, date)

    def _export_attributes(self) -> dict[str, Any]:
        return {"type": "date"}


def _empty_list() -> list:
    return []


class Array(Field):
    """
    Array field casting each element through an inner caster field.

    Scalars are wrapped into a one-element list. Each document gets its own
    list as default.

    Parameters
    ----------
    path : str, optional
        Dotted path of the array.
    caster : Field, optional
        Field used to cast elements. Without one, elements are kept as is.
    options : dict, optional
        Declaration options, as for `Field`.

    Examples
    --------
        >>> from conform.fields import Array, String
        >>> tags = Array("tags", String())
        >>> tags.cast("solo")
        ['solo']
        >>> tags.get_default() is not tags.get_default()
        True
    """

    kind = FieldKind.ARRAY

    def __init__(
        self,
        path: str | None = None,
        caster: Field | None = None,
        options: dict | None = None,
    ):
        self.caster = caster
        super().__init__(path, options)
        if self.default_value is _MISSING:
            self.default_value = _empty_list

    def cast(self, value: Any, context: Any = None, init: bool = False) -> Any:
        if isinstance(value, (tuple, set, frozenset)):
            value = list(value)
        if not isinstance(value, list):
            return self.cast([value], context, init)

        if self.caster is None:
            return list(value)

        try:
            return [self.caster.cast(item, context, init) for item in value]
        except CastError as exc:
            raise CastError(exc.type, value, self.path) from exc

    def check_required(self, value: Any) -> bool:
        return isinstance(value, list) and len(value) > 0


class SchemaArray(Array):
    """
    Array whose elements are documents of a nested `Schema`.

    Elements are cast by loading them into a fresh instance of the nested
    schema. Element failures are reported under ``<path>.<index>.<subpath>``.
    """

    def __init__(
        self,
        path: str | None = None,
        schema: "Schema | None" = None,
        options: dict | None = None,
    ):
        self.schema = schema
        super().__init__(path, None, options)

    def cast(self, value: Any, context: Any = None, init: bool = False) -> Any:
        from .base import Schema

        if isinstance(value, (tuple, set, frozenset)):
            value = list(value)
        if not isinstance(value, list):
            value = [value]

        documents = []
        for item in value:
            if isinstance(item, Schema):
                item = item.data
            if not isinstance(item, Mapping) or self.schema is None:
                raise CastError("schema", value, self.path)
            documents.append(self.schema.instance(item).data)
        return documents

    async def validate_documents(self, value: Any) -> dict[str, ConformError]:
        """
        Validate every element against the nested schema.

        Returns
        -------
        dict[str, ConformError]
            Errors keyed by ``<index>.<subpath>``, relative to this array.
        """
        if self.schema is None or not isinstance(value, list):
            return {}

        documents = [
            (index, self.schema.instance(item))
            for index, item in enumerate(value)
            if isinstance(item, Mapping)
        ]
        results = await asyncio.gather(
            *(document.validate_async() for _, document in documents)
        )

        errors: dict[str, ConformError] = {}
        for (index, _), error in zip(documents, results):
            if error is None:
                continue
            for subpath, sub_error in error.errors.items():
                errors[f"{index}.{subpath}"] = sub_error
        return errors


class VirtualType:
    """
    Computed path backed only by getters and setters.

    Getters and setters are called like field transforms, with as many of
    ``(value, virtual, document)`` as they accept; both run in reverse
    registration order.

    Examples
    --------
        >>> from conform import Schema
        >>> form = Schema({"name": {"first": str, "last": str}})
        >>> full = form.virtual("name.full")
        >>> full = full.get(lambda _, v, doc: f"{doc.get('name.first')} {doc.get('name.last')}")
    """

    def __init__(self, options: dict | None = None, path: str | None = None):
        self.path = path
        self.options: dict[str, Any] = dict(options or {})
        self.getters: list[Callable] = []
        self.setters: list[Callable] = []

        if self.options.get("get") is not None:
            self.get(self.options["get"])
        if self.options.get("set") is not None:
            self.set(self.options["set"])

    def __repr__(self) -> str:
        return f"VirtualType(path={self.path!r})"

    def get(self, func: Callable) -> "VirtualType":
        """Add a getter."""
        if not callable(func):
            raise ConfigurationError(f"A getter must be a function (path '{self.path}').")
        self.getters.append(func)
        return self

    def set(self, func: Callable) -> "VirtualType":
        """Add a setter."""
        if not callable(func):
            raise ConfigurationError(f"A setter must be a function (path '{self.path}').")
        self.setters.append(func)
        return self

    def apply_getters(self, value: Any, context: Any = None) -> Any:
        for getter in reversed(self.getters):
            value = call_transform(getter, value, self, context)
        return value

    def apply_setters(self, value: Any, context: Any = None) -> Any:
        for setter in reversed(self.setters):
            value = call_transform(setter, value, self, context)
        return value


class FieldRegistry:
    """
    Lookup table from type declarations to field classes.

    Declarations may be a field class, a registered name (first letter is
    capitalized before lookup, so ``"number"`` finds ``"Number"``) or a
    registered Python type. Each schema holds its own registry; use
    `FieldRegistry.default` for the built-in one.

    Examples
    --------
        >>> registry = FieldRegistry.default()
        >>> registry.resolve("number") is Number
        True
        >>> registry.resolve(bool) is Boolean
        True
    """

    def __init__(self) -> None:
        self._by_name: dict[str, type[Field]] = {}
        self._by_type: dict[type, type[Field]] = {}

    def register(
        self,
        field_class: type[Field],
        *names: str,
        python_types: tuple[type, ...] = (),
    ) -> "FieldRegistry":
        """Register `field_class` under `names` and `python_types`."""
        for name in names or (field_class.__name__,):
            self._by_name[name[:1].upper() + name[1:]] = field_class
        for python_type in python_types:
            self._by_type[python_type] = field_class
        return self

    def resolve(self, declared: Any) -> type[Field] | None:
        """
        Return the field class for a type declaration.

        Returns
        -------
        type[Field] | None
            None when the declaration is unknown.
        """
        if isinstance(declared, type) and issubclass(declared, Field):
            return declared
        if isinstance(declared, str):
            return self._by_name.get(declared[:1].upper() + declared[1:])
        if isinstance(declared, type):
            return self._by_type.get(declared)
        return None

    def names(self) -> list[str]:
        """Registered type names."""
        return sorted(self._by_name)

    @classmethod
    def default(cls) -> "FieldRegistry":
        """Build a registry with the built-in field types."""
        registry = cls()
        registry.register(String, "String", "Str", python_types=(str,))
        registry.register(
            Number,
            "Number",
            "Int",
            "Float",
            "Decimal",
            python_types=(int, float, Decimal),
        )
        registry.register(Boolean, "Boolean", "Bool", python_types=(bool,))
        registry.register(Date, "Date", "Datetime", python_types=(datetime, date))
        registry.register(Mixed, "Mixed", "Dict", python_types=(dict, object))
        logger.trace(f"Built default field registry: {registry.names()}")
        return registry
