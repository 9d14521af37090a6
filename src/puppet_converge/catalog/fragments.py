"""Config fragment assembly.

Fragments contribute ordered text to a single ``concat`` target. The
assembled text becomes the target's desired content, so the file is only
rewritten (and its notifications only fire) when the result differs from
what is on disk.
"""
import logging
from collections import defaultdict
from typing import Iterable

from .errors import UnknownResourceError
from .graph import Catalog
from .schema import ConfigFragment, EdgeKind, ResourceKind, ResourceRef

logger = logging.getLogger(__name__)


def assemble(fragments: Iterable[ConfigFragment]) -> str:
    """Concatenate fragments in ascending (order, title)."""
    return "".join(f.content for f in sorted(fragments, key=lambda f: f.sort_key))


def find_order_conflicts(fragments: Iterable[ConfigFragment]) -> list[str]:
    """Describe fragments of one target sharing an order key."""
    by_key: dict[tuple[str, str], list[str]] = defaultdict(list)
    for fragment in fragments:
        by_key[(fragment.target, fragment.order)].append(fragment.title)

    conflicts = []
    for (target, order), titles in sorted(by_key.items()):
        if len(titles) > 1:
            conflicts.append(
                f"Fragments {', '.join(sorted(titles))} share order '{order}' "
                f"in {target}; ordered by title"
            )
    return conflicts


def assemble_catalog_fragments(catalog: Catalog) -> dict[str, str]:
    """Resolve every concat target in ``catalog`` from its fragments.

    For each fragment this adds a REQUIRE edge to its target and lifts the
    fragment's ``notify`` onto a NOTIFY edge from the target.

    Returns:
        Dict mapping target path to assembled content

    Raises:
        UnknownResourceError: If a fragment targets an undeclared concat
    """
    by_target: dict[str, list[ConfigFragment]] = defaultdict(list)
    for resource in catalog.resources_of_kind(ResourceKind.CONCAT_FRAGMENT):
        fragment = ConfigFragment.from_resource(resource)
        target_ref = ResourceRef(ResourceKind.CONCAT, fragment.target)
        if target_ref not in catalog:
            raise UnknownResourceError(target_ref, str(resource.ref))
        by_target[fragment.target].append(fragment)

        catalog.add_edge(resource, target_ref, EdgeKind.REQUIRE)
        if fragment.notify is not None:
            if fragment.notify not in catalog:
                raise UnknownResourceError(fragment.notify, str(resource.ref))
            catalog.add_edge(target_ref, fragment.notify, EdgeKind.NOTIFY)

    assembled = {}
    for target in catalog.resources_of_kind(ResourceKind.CONCAT):
        fragments = by_target.get(target.title, [])
        if not fragments:
            logger.warning(f"{target.ref} has no fragments; it will be empty")
        content = assemble(fragments)
        target.attributes["content"] = content
        assembled[target.title] = content
        logger.debug(f"Assembled {target.ref} from {len(fragments)} fragment(s)")

    return assembled
