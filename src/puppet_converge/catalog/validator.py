"""Pre-flight validation for built catalogs.

Catches malformed declarations before any host communication.
"""
from typing import Optional

from .fragments import find_order_conflicts
from .graph import Catalog
from .schema import (
    ConfigFragment,
    Resource,
    ResourceKind,
    ResourceRef,
    ValidationResult,
)

MASTER_TAG = "puppet::master"

# Valid ensure values per kind (None means not managed)
ENSURE_VALUES = {
    ResourceKind.FILE: {"file", "present", "directory", "absent", None},
    ResourceKind.CONCAT: {"file", "present", None},
    ResourceKind.SERVICE: {"running", "stopped", None},
}

PACKAGE_PROVIDERS = {"apt", "yum", "gem", None}


class CatalogValidator:
    """Validate a catalog for logical errors before convergence."""

    def __init__(self, master_tag: Optional[str] = MASTER_TAG):
        """
        Initialize validator.

        Args:
            master_tag: Tag marking the master's service-management
                resources; None disables the single-notify-target check
        """
        self.master_tag = master_tag

    def validate(self, catalog: Catalog) -> ValidationResult:
        """
        Validate a catalog.

        Performs pre-flight checks:
        - Required attributes and ensure values per kind
        - Notify references resolve
        - A single master service is the notify target of master fragments
        - Fragment order collisions (warning)
        - Execs without an idempotence guard (warning)

        Args:
            catalog: The catalog to validate

        Returns:
            ValidationResult with valid flag, errors, and warnings
        """
        errors: list[str] = []
        warnings: list[str] = []

        for resource in catalog.resources:
            self._validate_resource(resource, errors, warnings)

        self._validate_references(catalog, errors)
        self._check_service_notify(catalog, errors)
        self._check_fragment_orders(catalog, warnings)

        return ValidationResult(
            valid=len(errors) == 0,
            errors=errors,
            warnings=warnings,
        )

    def _validate_resource(
        self,
        resource: Resource,
        errors: list[str],
        warnings: list[str]
    ) -> None:
        """Validate attributes of one resource."""
        attrs = resource.attributes
        ref = resource.ref

        allowed = ENSURE_VALUES.get(resource.kind)
        if allowed is not None and attrs.get("ensure") not in allowed:
            errors.append(f"Invalid ensure '{attrs.get('ensure')}' for {ref}")

        if resource.kind == ResourceKind.PACKAGE:
            if not attrs.get("ensure"):
                errors.append(f"{ref} has no ensure value")
            if attrs.get("provider") not in PACKAGE_PROVIDERS:
                errors.append(f"Unsupported package provider '{attrs.get('provider')}' for {ref}")

        elif resource.kind == ResourceKind.EXEC:
            if not attrs.get("command"):
                errors.append(f"{ref} has no command")
            guards = ("unless", "onlyif", "creates", "refreshonly")
            if not any(attrs.get(g) for g in guards):
                warnings.append(f"{ref} runs on every convergence (no unless/onlyif/creates)")

        elif resource.kind == ResourceKind.CONCAT_FRAGMENT:
            for key in ("target", "order"):
                if not attrs.get(key):
                    errors.append(f"{ref} is missing '{key}'")
            if not isinstance(attrs.get("content", ""), str):
                errors.append(f"{ref} content must be text")

        elif resource.kind == ResourceKind.FILE:
            if attrs.get("content") is not None and attrs.get("ensure") == "directory":
                errors.append(f"{ref} cannot have content with ensure=directory")

        mode = attrs.get("mode")
        if mode is not None:
            try:
                int(str(mode), 8)
            except ValueError:
                errors.append(f"Invalid mode '{mode}' for {ref}")

    def _validate_references(self, catalog: Catalog, errors: list[str]) -> None:
        """Every notify attribute must point at a declared resource."""
        for resource in catalog.resources:
            target = resource.attributes.get("notify")
            if target is None:
                continue
            if not isinstance(target, ResourceRef):
                errors.append(f"{resource.ref} notify must be a resource reference")
            elif target not in catalog:
                errors.append(f"{resource.ref} notifies undeclared {target}")

    def _check_service_notify(self, catalog: Catalog, errors: list[str]) -> None:
        """Exactly one master service, referenced by every master fragment."""
        if not self.master_tag:
            return

        tagged = catalog.resources_tagged(self.master_tag)
        if not tagged:
            return

        services = [r for r in tagged if r.kind == ResourceKind.SERVICE]
        if len(services) != 1:
            names = ", ".join(str(s.ref) for s in services) or "none"
            errors.append(
                f"Expected exactly one {self.master_tag} service, found {len(services)}: {names}"
            )
            return

        service_ref = services[0].ref
        for resource in tagged:
            if resource.kind != ResourceKind.CONCAT_FRAGMENT:
                continue
            if resource.attributes.get("notify") != service_ref:
                errors.append(f"{resource.ref} must notify {service_ref}")

    def _check_fragment_orders(self, catalog: Catalog, warnings: list[str]) -> None:
        fragments = [
            ConfigFragment.from_resource(r)
            for r in catalog.resources_of_kind(ResourceKind.CONCAT_FRAGMENT)
            if r.attributes.get("target")
        ]
        warnings.extend(find_order_conflicts(fragments))
