"""Configuration document loading for converge."""

from .expressions import (
    UNKNOWN,
    Interpolation,
    ResourceRef,
    VariableRef,
    iter_references,
    parse_value,
    substitute,
)
from .models import (
    Document,
    EngineSettings,
    OutputDeclaration,
    ResourceDeclaration,
    RetrySettings,
    VariableDeclaration,
    VariableType,
)
from .parser import ConfigLoader, load_document
from .variables import bind_variables, load_var_file, parse_var_assignments, resolve_variables

__all__ = [
    "UNKNOWN",
    "Interpolation",
    "ResourceRef",
    "VariableRef",
    "iter_references",
    "parse_value",
    "substitute",
    "Document",
    "EngineSettings",
    "OutputDeclaration",
    "ResourceDeclaration",
    "RetrySettings",
    "VariableDeclaration",
    "VariableType",
    "ConfigLoader",
    "load_document",
    "bind_variables",
    "load_var_file",
    "parse_var_assignments",
    "resolve_variables",
]
