"""Tool catalog and built-in tools."""

from .builtin import BuiltinTools, build_builtin_catalog, builtin_descriptors
from .catalog import (
    BuiltinBinding,
    CatalogChange,
    CatalogEntry,
    ExternalToolProvider,
    RemoteBinding,
    ToolCatalog,
)

__all__ = [
    "BuiltinBinding",
    "BuiltinTools",
    "CatalogChange",
    "CatalogEntry",
    "ExternalToolProvider",
    "RemoteBinding",
    "ToolCatalog",
    "build_builtin_catalog",
    "builtin_descriptors",
]
