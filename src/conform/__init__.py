"""
Conform: Schema-Driven Form Data

Declare your fields once. Coerce, transform and validate any nested input.
"""

from .base import PathType, Schema, Submission
from .errors import (
    CastError,
    ConfigurationError,
    ConformError,
    ValidationError,
    ValidatorError,
)
from .fields import (
    Array,
    Boolean,
    Date,
    Field,
    FieldKind,
    FieldRegistry,
    Mixed,
    Number,
    SchemaArray,
    String,
    VirtualType,
)
from .options import SchemaOptions
from .validators import Validator

__version__ = "0.1.0"

__all__ = [
    # Core
    "Schema",
    "SchemaOptions",
    "Submission",
    "PathType",
    # Fields
    "Field",
    "FieldKind",
    "FieldRegistry",
    "String",
    "Number",
    "Boolean",
    "Date",
    "Mixed",
    "Array",
    "SchemaArray",
    "VirtualType",
    "Validator",
    # Errors
    "ConformError",
    "ConfigurationError",
    "CastError",
    "ValidatorError",
    "ValidationError",
]
