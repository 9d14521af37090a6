"""Catalog - declared resources, edges and the builder that produces them.

Usage:
    from puppet_converge.catalog import CatalogBuilder

    catalog = CatalogBuilder().build(node_config)
    for resource in catalog.topological_order():
        print(resource.ref)
"""

from .errors import (
    CatalogError,
    DuplicateResourceError,
    UnknownResourceError,
    CycleError,
    UnsupportedAdapterError,
    CatalogValidationError,
    TemplateRenderError,
)
from .schema import (
    ResourceKind,
    EdgeKind,
    ResourceRef,
    Resource,
    Edge,
    ConfigFragment,
    ValidationResult,
)
from .graph import Catalog
from .fragments import assemble, assemble_catalog_fragments, find_order_conflicts
from .validator import CatalogValidator, MASTER_TAG
from .builder import (
    CatalogBuilder,
    AGENT_TAG,
    CONFIG_TAG,
    PASSENGER_TAG,
    STORECONFIGS_TAG,
)

__all__ = [
    # Errors
    "CatalogError",
    "DuplicateResourceError",
    "UnknownResourceError",
    "CycleError",
    "UnsupportedAdapterError",
    "CatalogValidationError",
    "TemplateRenderError",
    # Schema classes
    "ResourceKind",
    "EdgeKind",
    "ResourceRef",
    "Resource",
    "Edge",
    "ConfigFragment",
    "ValidationResult",
    # Graph
    "Catalog",
    # Fragments
    "assemble",
    "assemble_catalog_fragments",
    "find_order_conflicts",
    # Builder
    "CatalogValidator",
    "CatalogBuilder",
    "MASTER_TAG",
    "AGENT_TAG",
    "CONFIG_TAG",
    "PASSENGER_TAG",
    "STORECONFIGS_TAG",
]
