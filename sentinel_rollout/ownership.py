"""Per-field ownership table for desired specs."""

import logging
from typing import Optional

from .errors import OwnershipConflictError
from .models import DesiredSpec

logger = logging.getLogger(__name__)

OWNED_FIELDS = ("replicas", "template", "policy")


def changed_fields(old: Optional[DesiredSpec], new: DesiredSpec) -> list[str]:
    """Return the owned field paths whose values differ between two specs."""
    if old is None:
        return list(OWNED_FIELDS)
    changed = []
    if old.replicas != new.replicas:
        changed.append("replicas")
    if old.template.hash != new.template.hash:
        changed.append("template")
    if old.policy != new.policy:
        changed.append("policy")
    return changed


def apply_ownership(
    old: Optional[DesiredSpec],
    new: DesiredSpec,
    manager: str,
    force: bool = False,
) -> DesiredSpec:
    """
    Check and record field ownership for a spec write.

    A manager may change a field it owns or a field nobody owns yet. Changing
    a field owned by another manager is refused unless ``force`` is set, in
    which case ownership moves to the writer.

    Args:
        old: Currently stored spec, if any
        new: Spec being written
        manager: Name of the writing manager
        force: Take over conflicting fields

    Returns:
        The new spec with its ownership table updated

    Raises:
        OwnershipConflictError: If a changed field is owned by someone else
    """
    owners = dict(old.field_owners) if old else {}
    for field in changed_fields(old, new):
        owner = owners.get(field)
        if owner and owner != manager:
            if not force:
                raise OwnershipConflictError(field, owner, manager)
            logger.warning(
                f"Manager {manager} taking ownership of {new.workload}.{field} from {owner}"
            )
        owners[field] = manager
    return new.model_copy(update={"field_owners": owners})


def release_field(spec: DesiredSpec, field: str, manager: str) -> DesiredSpec:
    """Drop a manager's claim on a field."""
    owners = dict(spec.field_owners)
    if owners.get(field) == manager:
        del owners[field]
    return spec.model_copy(update={"field_owners": owners})
