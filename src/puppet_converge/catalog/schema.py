"""Schema definitions for catalogs.

Defines resources, references, edges and config fragments.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ResourceKind(str, Enum):
    """Kinds of managed entities."""
    PACKAGE = "package"
    FILE = "file"
    SERVICE = "service"
    EXEC = "exec"
    CONCAT = "concat"                    # File assembled from fragments
    CONCAT_FRAGMENT = "concat_fragment"  # Ordered piece of a concat target

    @property
    def label(self) -> str:
        """Capitalized name used in references, e.g. ``Service``."""
        return "".join(part.capitalize() for part in self.value.split("_"))


class EdgeKind(str, Enum):
    """Kind of relationship between two resources."""
    REQUIRE = "require"  # Ordering only
    NOTIFY = "notify"    # Ordering plus refresh when the source changed


@dataclass(frozen=True)
class ResourceRef:
    """Unique identifier of a resource within a catalog."""
    kind: ResourceKind
    title: str

    def __str__(self) -> str:
        return f"{self.kind.label}[{self.title}]"

    @classmethod
    def parse(cls, text: str) -> "ResourceRef":
        """Parse ``Service[puppetmaster]`` style references."""
        label, sep, rest = text.partition("[")
        if not sep or not rest.endswith("]"):
            raise ValueError(f"Invalid resource reference: {text}")
        for kind in ResourceKind:
            if kind.label.lower() == label.strip().lower():
                return cls(kind, rest[:-1])
        raise ValueError(f"Unknown resource kind in reference: {text}")


@dataclass
class Resource:
    """Declared desired state for one managed entity."""
    kind: ResourceKind
    title: str
    attributes: dict[str, Any] = field(default_factory=dict)
    tags: frozenset[str] = frozenset()
    index: int = 0  # Declaration order, used as the stable tie-break

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(self.kind, self.title)

    @property
    def ensure(self) -> Optional[Any]:
        """Desired ensure state, if the kind uses one."""
        return self.attributes.get("ensure")

    @property
    def name(self) -> str:
        """Name of the entity on the host (defaults to the title)."""
        return self.attributes.get("name") or self.title

    def __str__(self) -> str:
        return str(self.ref)


@dataclass(frozen=True)
class Edge:
    """Relationship between two declared resources."""
    source: ResourceRef
    target: ResourceRef
    kind: EdgeKind = EdgeKind.REQUIRE

    def __str__(self) -> str:
        arrow = "~>" if self.kind == EdgeKind.NOTIFY else "->"
        return f"{self.source} {arrow} {self.target}"


@dataclass
class ConfigFragment:
    """A named, ordered piece of text contributed to one target file."""
    title: str
    target: str
    order: str
    content: str
    notify: Optional[ResourceRef] = None

    @property
    def sort_key(self) -> tuple[str, str]:
        return (self.order, self.title)

    @classmethod
    def from_resource(cls, resource: Resource) -> "ConfigFragment":
        attrs = resource.attributes
        return cls(
            title=resource.title,
            target=attrs["target"],
            order=str(attrs.get("order", "10")),
            content=attrs.get("content", ""),
            notify=attrs.get("notify"),
        )


# --- Validation Results ---

@dataclass
class ValidationResult:
    """Result of catalog validation."""
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
