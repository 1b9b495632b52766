"""
Code Generation Module

Compiles a measure's logic tree into CQL and dialect SQL, and applies
reviewer overrides to the generated text.
"""

from .cql_generator import (
    # Main classes
    CqlGenerator,

    # Convenience functions
    generate_cql,
)
from .sql_generator import SqlGenerator, generate_sql
from .sql_dialects import DIALECTS, DialectConfig, get_dialect
from .overrides import append_note, apply_overrides, new_override

__all__ = [
    "CqlGenerator",
    "SqlGenerator",
    "DialectConfig",
    "DIALECTS",
    "generate_cql",
    "generate_sql",
    "get_dialect",
    "apply_overrides",
    "new_override",
    "append_note",
]
