# covid_errors.py
# Error kinds raised by the loader, adapters, evaluator and explainers.
# All of them are ValueErrors so callers can catch them broadly.

from __future__ import annotations


class AnalysisError(ValueError):
    """Base class for every error raised by this project."""


class ParseError(AnalysisError):
    """Malformed delimited file (inconsistent field counts)."""


class SchemaError(AnalysisError):
    """A column cannot be coerced to its declared type or level set."""


class MissingColumnError(SchemaError):
    """A requested column is not present in the table."""


class SchemaMismatchError(SchemaError):
    """A table or row does not match the feature subset a model expects."""


class InvalidInputError(AnalysisError):
    """Degenerate or out-of-range input (labels, cutoffs, grids)."""
