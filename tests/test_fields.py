"""Tests for field types: casting, transforms, defaults and validators."""

import asyncio
import re
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from hypothesis import given
from hypothesis import strategies as st

from conform import CastError, ConfigurationError, ValidatorError
from conform.errors import _MISSING
from conform.fields import (
    Array,
    Boolean,
    Date,
    Field,
    FieldKind,
    FieldRegistry,
    Mixed,
    Number,
    String,
    VirtualType,
    call_transform,
)


def run(coro):
    return asyncio.run(coro)


class TestStringField:
    """Test String casting and helpers."""

    def test_cast_keeps_strings_and_none(self):
        """Strings and None pass through unchanged."""
        field = String("name")
        assert field.cast("Ada") == "Ada"
        assert field.cast(None) is None

    def test_cast_scalars(self):
        """Numbers, booleans and bytes become their string form."""
        field = String("name")
        assert field.cast(5) == "5"
        assert field.cast(2.5) == "2.5"
        assert field.cast(True) == "true"
        assert field.cast(False) == "false"
        assert field.cast(b"abc") == "abc"

    def test_cast_reference_reduces_to_identifier(self):
        """Reference-like values cast to their `_id`."""

        class Ref:
            _id = "507f1f77"

        field = String("owner")
        assert field.cast({"_id": "abc123"}) == "abc123"
        assert field.cast(Ref()) == "507f1f77"

    def test_cast_objects_with_string_form(self):
        """Objects defining __str__ or __repr__ use their string form."""

        class Sku:
            def __str__(self):
                return "SKU-1"

        class Code:
            def __repr__(self):
                return "Code(7)"

        field = String("ref")
        assert field.cast(12345) == "12345"
        assert field.cast(Decimal("1.50")) == "1.50"
        assert field.cast(Sku()) == "SKU-1"
        assert field.cast(Code()) == "Code(7)"

    def test_cast_rejects_containers(self):
        """Lists, dicts and plain objects cannot be strings."""
        field = String("name")
        for value in ([1, 2], {"a": 1}, object()):
            with pytest.raises(CastError) as exc_info:
                field.cast(value)
            assert exc_info.value.type == "string"
            assert exc_info.value.path == "name"

    def test_setters_run_in_reverse_order(self):
        """The last registered setter runs first."""
        field = String("code")
        field.set(lambda v: v + "a")
        field.set(lambda v: v + "b")
        assert field.apply_setters("x") == "xba"

    def test_getters_run_in_reverse_order(self):
        """The last registered getter runs first."""
        field = String("code", {"get": [lambda v: v + "1", lambda v: v + "2"]})
        assert field.apply_getters("x") == "x21"

    def test_setters_receive_field_and_context(self):
        """Transforms get as many of (value, field, context) as they accept."""
        seen = []
        field = String("code").set(lambda v, f, ctx: seen.append((f, ctx)) or v)
        field.apply_setters("x", "doc")
        assert seen == [(field, "doc")]

    def test_none_skips_cast(self):
        """A setter returning None leaves None without casting."""
        field = String("code").set(lambda v: None)
        assert field.apply_setters(42) is None

    def test_lowercase_trim_options(self):
        """Flag options install setters."""
        field = String("email", {"lowercase": True, "trim": True})
        assert field.apply_setters("  AVENUE@Q.COM ") == "avenue@q.com"

    def test_falsy_flag_option_is_ignored(self):
        """`trim: False` does not install a setter."""
        field = String("name", {"trim": False})
        assert field.setters == []

    def test_uppercase_casts_before_transform(self):
        """Case helpers cast non-strings first."""
        field = String("code").uppercase()
        assert field.apply_setters(12) == "12"
        assert field.apply_setters("ab") == "AB"

    def test_enum_accumulates(self):
        """Re-declaring enum adds values behind one validator."""
        field = String("state").enum("open", "closed").enum("archived")
        assert field.enum_values == ["open", "closed", "archived"]
        assert [v.tag for v in field.validators] == ["enum"]

    def test_enum_validation(self):
        """Only enum members (or None) pass."""
        field = String("state", {"enum": ["open", "closed"]})
        assert run(field.do_validate("open")) is None
        assert run(field.do_validate(None)) is None

        error = run(field.do_validate("gone"))
        assert isinstance(error, ValidatorError)
        assert error.type == "enum"
        assert error.path == "state"
        assert error.value == "gone"

    def test_enum_removal(self):
        """enum(None) removes the validator and its values."""
        field = String("state").enum("open").enum(None)
        assert field.validators == []
        assert field.enum_values == []
        assert run(field.do_validate("anything")) is None

    def test_match(self):
        """match adds a regexp validator that lets empty values through."""
        field = String("zip").match(r"^\d{5}$")
        assert run(field.do_validate("12345")) is None
        assert run(field.do_validate("")) is None
        assert run(field.do_validate("12a45")).type == "regexp"

    def test_match_custom_message(self):
        """A custom message replaces the default one."""
        field = String("zip").match(re.compile(r"^\d+$"), "digits only")
        assert run(field.do_validate("abc")).message == "digits only"

    def test_required(self):
        """Required strings must be non-empty."""
        field = String("name").required()
        assert run(field.do_validate("")).type == "required"
        assert run(field.do_validate(None)).type == "required"
        assert run(field.do_validate("Ada")) is None

    def test_required_toggle(self):
        """required(False) removes exactly the required validator."""
        field = String("name", {"required": True}).match(r"^A")
        field.required(False)
        assert [v.tag for v in field.validators] == ["regexp"]
        assert "required" not in field.options
        assert run(field.do_validate(None)) is None

    def test_required_is_not_duplicated(self):
        """Calling required twice keeps a single validator."""
        field = String("name").required().required()
        assert [v.tag for v in field.validators] == ["required"]

    def test_export_marks_required(self):
        """Exported attributes carry a bare `required`."""
        exported = String("name", {"required": True}).export()
        assert exported["attributes"] == {"required": None}
        assert exported["required"] is True

    def test_non_callable_setter_rejected(self):
        """Setters and getters must be callable."""
        with pytest.raises(ConfigurationError):
            String("name").set("lower")
        with pytest.raises(ConfigurationError):
            String("name").get(42)


class TestNumberField:
    """Test Number casting and bounds."""

    def test_cast_strings(self):
        """Numeric strings become int or float."""
        field = Number("n")
        assert field.cast("42") == 42
        assert isinstance(field.cast("42"), int)
        assert field.cast(" 12.5 ") == 12.5
        assert field.cast("") is None

    def test_cast_numbers(self):
        """Numbers pass through."""
        field = Number("n")
        assert field.cast(7) == 7
        assert field.cast(1.5) == 1.5
        assert field.cast(Decimal("2.50")) == Decimal("2.50")

    @pytest.mark.parametrize("value", ["1_000", "1_0.5", "١٢", "１２"])
    def test_cast_rejects_underscores_and_non_ascii_digits(self, value):
        """Only plain ASCII numerals parse."""
        with pytest.raises(CastError) as exc_info:
            Number("n").cast(value)
        assert exc_info.value.type == "number"

    def test_cast_failures(self):
        """Non-numeric input raises CastError tagged `number`."""
        field = Number("n")
        for value in ("abc", True, float("nan"), [1], {"a": 1}):
            with pytest.raises(CastError) as exc_info:
                field.cast(value)
            assert exc_info.value.type == "number"

    def test_min_max(self):
        """Values must lie within the bounds."""
        field = Number("age").min(18).max(65)
        assert run(field.do_validate(18)) is None
        assert run(field.do_validate(65)) is None
        assert run(field.do_validate(17)).type == "min"
        assert run(field.do_validate(66)).type == "max"

    def test_min_replaces_previous_bound(self):
        """A second min replaces the first."""
        field = Number("age").min(5).min(10)
        assert [v.tag for v in field.validators] == ["min"]
        assert field.options["min"] == 10
        assert run(field.do_validate(7)).type == "min"

    def test_min_none_removes_bound(self):
        """min(None) drops the lower bound entirely."""
        field = Number("age").min(18).max(65)
        field.min(None)
        assert [v.tag for v in field.validators] == ["max"]
        assert "min" not in field.options
        assert run(field.do_validate(-100)) is None

    def test_bound_message(self):
        """Bounds accept a custom message."""
        field = Number("age", {"min": [18, "too young"]})
        assert run(field.do_validate(3)).message == "too young"

    def test_required(self):
        """Required numbers must be numbers."""
        field = Number("age").required()
        assert run(field.do_validate(0)) is None
        assert run(field.do_validate(None)).type == "required"

    def test_export(self):
        """Export carries number type and bounds."""
        exported = Number("age", {"min": 1, "max": 9}).export()
        assert exported["attributes"] == {"type": "number", "min": 1, "max": 9}

    @pytest.mark.parametrize(("low", "high"), [(0, 10), (-5, 5), (3, 3)])
    def test_bounds_property(self, low, high):
        """Validation passes iff low <= value <= high."""
        field = Number("n").min(low).max(high)
        for value in range(low - 2, high + 3):
            error = run(field.do_validate(value))
            assert (error is None) == (low <= value <= high)


class TestBooleanField:
    """Test Boolean casting."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("0", False),
            ("false", False),
            ("true", True),
            ("yes", True),
            ("", False),
            (0, False),
            (1, True),
            (True, True),
            (None, None),
        ],
    )
    def test_cast(self, value, expected):
        """String flags and truthiness."""
        assert Boolean("flag").cast(value) is expected

    def test_required_accepts_false(self):
        """False satisfies required."""
        field = Boolean("flag").required()
        assert run(field.do_validate(False)) is None
        assert run(field.do_validate(None)).type == "required"

    def test_export(self):
        """Booleans render as checkboxes."""
        assert Boolean("flag").export()["attributes"] == {"type": "checkbox"}


class TestDateField:
    """Test Date casting."""

    def test_cast_iso(self):
        """ISO strings parse."""
        field = Date("born")
        assert field.cast("2024-03-01") == datetime(2024, 3, 1)
        assert field.cast("2024-03-01T10:00:00Z") == datetime(
            2024, 3, 1, 10, tzinfo=timezone.utc
        )

    def test_cast_rfc2822(self):
        """RFC 2822 strings parse."""
        parsed = Date("born").cast("Fri, 01 Mar 2024 10:00:00 +0000")
        assert parsed == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)

    def test_cast_epoch_milliseconds(self):
        """Numbers and numeric strings are epoch milliseconds."""
        field = Date("born")
        expected = datetime(1970, 1, 1, 0, 0, 1, tzinfo=timezone.utc)
        assert field.cast(1000) == expected
        assert field.cast("1000") == expected

    def test_cast_dates_pass_through(self):
        """date and datetime values are kept."""
        field = Date("born")
        assert field.cast(date(2020, 1, 1)) == date(2020, 1, 1)

    def test_cast_failure(self):
        """Garbage raises CastError tagged `date`."""
        with pytest.raises(CastError) as exc_info:
            Date("born").cast("not-a-date")
        assert exc_info.value.type == "date"
        assert exc_info.value.value == "not-a-date"
        assert "born" in str(exc_info.value)

    def test_export(self):
        """Dates render as date inputs."""
        assert Date("born").export()["attributes"] == {"type": "date"}


class TestArrayField:
    """Test Array casting and defaults."""

    def test_scalar_is_wrapped(self):
        """A scalar becomes a one-element list."""
        assert Array("tags", String()).cast("solo") == ["solo"]

    def test_elements_are_cast(self):
        """Each element goes through the caster."""
        assert Array("ids", Number()).cast(["1", 2, "3.5"]) == [1, 2, 3.5]

    def test_no_caster_keeps_elements(self):
        """Without a caster, elements are kept."""
        assert Array("things").cast((1, "a")) == [1, "a"]

    def test_element_failure_names_array(self):
        """A failing element raises with the array's path."""
        with pytest.raises(CastError) as exc_info:
            Array("ids", Number()).cast(["1", "x"])
        assert exc_info.value.type == "number"
        assert exc_info.value.path == "ids"
        assert exc_info.value.value == ["1", "x"]

    def test_default_is_fresh_list(self):
        """Each default is a new empty list."""
        field = Array("tags", String())
        first = field.get_default()
        first.append("x")
        assert field.get_default() == []

    def test_required_needs_elements(self):
        """An empty list fails required."""
        field = Array("tags", String()).required()
        assert run(field.do_validate([])).type == "required"
        assert run(field.do_validate(["a"])) is None

    def test_kind(self):
        """Array fields report the array kind."""
        assert Array.kind is FieldKind.ARRAY


class TestDefaults:
    """Test default values."""

    def test_default_is_cast(self):
        """Static defaults are cast at declaration."""
        field = Number("n", {"default": "5"})
        assert field.default_value == 5
        assert field.get_default() == 5

    def test_callable_default(self):
        """Factories are called with the document when they take it."""
        assert Number("n").default(lambda: "3").get_default() == 3
        assert Number("n").default(lambda doc: doc["n"]).get_default({"n": 4}) == 4

    def test_no_default(self):
        """Without a default, None is returned."""
        field = Mixed("m")
        assert field.default_value is _MISSING
        assert field.get_default() is None

    def test_default_listeners(self):
        """Late defaults notify listeners."""
        calls = []
        field = Number("n").on_default(lambda f, value: calls.append(value))
        field.default(7)
        assert calls == [7]


class TestAsyncValidators:
    """Test mixed sync/async validators on one field."""

    def test_coroutine_validator(self):
        """async def predicates are awaited."""

        async def is_even(value):
            await asyncio.sleep(0)
            return value % 2 == 0

        field = Number("n").validate(is_even, "even")
        assert run(field.do_validate(2)) is None
        assert run(field.do_validate(3)).type == "even"

    def test_sync_false_and_late_async_true(self):
        """One failure is reported even though a slow validator passes later."""
        calls = []

        def slow_ok(value, done):
            loop = asyncio.get_running_loop()
            loop.call_later(0.01, done, True)
            loop.call_later(0.02, done, True)

        field = Number("n")
        field.validate(lambda v: False, "sync")
        field.validate(slow_ok, "async", asynchronous=True)

        async def check():
            error = await field.do_validate(1)
            calls.append(error)
            await asyncio.sleep(0.05)

        run(check())
        assert len(calls) == 1
        assert isinstance(calls[0], ValidatorError)
        assert calls[0].type == "sync"

    def test_first_failure_in_completion_order(self):
        """The failure that completes first wins."""

        async def slow_fail(value):
            await asyncio.sleep(0.02)
            return False

        field = Number("n")
        field.validate(slow_fail, "slow")
        field.validate(lambda v: False, "fast")
        assert run(field.do_validate(1)).type == "fast"

    def test_raising_validator_becomes_error(self):
        """Exceptions in predicates are reported as the field's error."""

        def boom(value):
            raise RuntimeError("lookup failed")

        field = String("name").validate(boom, "lookup")
        error = run(field.do_validate("x"))
        assert isinstance(error, ValidatorError)
        assert error.type == "lookup"
        assert error.message == "lookup failed"
        assert isinstance(error.__cause__, RuntimeError)

    def test_none_result_passes(self):
        """A predicate returning None counts as a pass."""
        field = String("name").validate(lambda v: None, "noop")
        assert run(field.do_validate("x")) is None


class TestVirtualType:
    """Test virtual path transforms."""

    def test_reverse_order(self):
        """Virtual getters also run last-registered first."""
        virtual = VirtualType(path="v").get(lambda v: v + "a").get(lambda v: v + "b")
        assert virtual.apply_getters("x") == "xba"

    def test_options(self):
        """get/set options register transforms."""
        virtual = VirtualType({"get": lambda v: "got", "set": lambda v: "set"})
        assert virtual.apply_getters(None) == "got"
        assert virtual.apply_setters(None) == "set"


class TestFieldRegistry:
    """Test type lookup."""

    def test_default_names(self):
        """Names resolve case-insensitively on the first letter."""
        registry = FieldRegistry.default()
        assert registry.resolve("number") is Number
        assert registry.resolve("String") is String
        assert registry.resolve("bool") is Boolean
        assert registry.resolve("unicorn") is None

    def test_python_types(self):
        """Python types map to field classes."""
        registry = FieldRegistry.default()
        assert registry.resolve(int) is Number
        assert registry.resolve(float) is Number
        assert registry.resolve(datetime) is Date
        assert registry.resolve(dict) is Mixed

    def test_field_classes_resolve_to_themselves(self):
        """Field classes are accepted as declarations."""
        assert FieldRegistry().resolve(String) is String

    def test_registries_are_independent(self):
        """Registering in one registry does not leak into another."""
        custom = FieldRegistry.default().register(String, "Text")
        assert custom.resolve("text") is String
        assert FieldRegistry.default().resolve("text") is None


class TestCallTransform:
    """Test transform arity handling."""

    def test_arity(self):
        """Only the accepted arguments are passed."""
        assert call_transform(lambda v: v, 1, "f", "c") == 1
        assert call_transform(lambda v, f: (v, f), 1, "f", "c") == (1, "f")
        assert call_transform(lambda *args: args, 1, "f", "c") == (1, "f", "c")
        assert call_transform(str.strip, " a ", "f", "c") == "a"


class TestCastIdempotency:
    """Casting a value of the field's own output type changes nothing."""

    @given(st.text())
    def test_string(self, value):
        field = String("s")
        assert field.cast(field.cast(value)) == field.cast(value)

    @given(st.one_of(st.integers(), st.floats(allow_nan=False)))
    def test_number(self, value):
        field = Number("n")
        assert field.cast(field.cast(value)) == field.cast(value)

    @given(st.one_of(st.booleans(), st.none()))
    def test_boolean(self, value):
        field = Boolean("b")
        assert field.cast(field.cast(value)) == field.cast(value)

    @given(st.datetimes())
    def test_date(self, value):
        field = Date("d")
        assert field.cast(field.cast(value)) == field.cast(value)


def test_base_field_is_untyped():
    """The base field keeps values as they are."""
    value = {"a": [1]}
    assert Field("x").cast(value) is value
