"""Catalog build errors.

Everything raised here is fatal to the whole run: a malformed catalog is
rejected before any resource is observed or applied.
"""
from typing import Optional, Sequence


class CatalogError(Exception):
    """Base class for errors raised while building a catalog."""
    pass


class DuplicateResourceError(CatalogError):
    """A resource with the same kind and title was already declared."""

    def __init__(self, ref, detail: str = ""):
        self.ref = ref
        message = f"Duplicate declaration: {ref} is already declared"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class UnknownResourceError(CatalogError):
    """An edge or reference points at an undeclared resource."""

    def __init__(self, ref, context: str = ""):
        self.ref = ref
        message = f"Unknown resource: {ref}"
        if context:
            message += f" referenced by {context}"
        super().__init__(message)


class CycleError(CatalogError):
    """The ordering edges of a catalog contain a cycle."""

    def __init__(self, cycle: Sequence):
        self.cycle = list(cycle)
        path = " => ".join(str(ref) for ref in self.cycle)
        super().__init__(f"Found dependency cycle: {path}")


class UnsupportedAdapterError(CatalogError):
    """A storeconfigs database adapter has no implementation."""

    def __init__(self, adapter: str, supported: Optional[Sequence[str]] = None):
        self.adapter = adapter
        self.supported = list(supported or [])
        message = f"Unsupported storeconfigs adapter: {adapter!r}"
        if self.supported:
            message += f". Supported: {', '.join(self.supported)}"
        super().__init__(message)


class CatalogValidationError(CatalogError):
    """A built catalog failed pre-flight validation."""

    def __init__(self, errors: Sequence[str]):
        self.errors = list(errors)
        super().__init__("Catalog validation failed: " + "; ".join(self.errors))


class TemplateRenderError(CatalogError):
    """A config fragment template is missing or failed to render."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Template error: {detail}")
