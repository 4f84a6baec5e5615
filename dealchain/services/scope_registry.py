"""
Scope registry — hierarchy of the loci contracts and engagements bind to.

Business logic for:
    - Idempotent create-or-update of scope nodes (``upsert``)
    - Cycle prevention on re-parenting
    - Containment checks used by contract and engagement validation

A scope that was never registered only contains itself.
"""

import logging

from dealchain.core.exceptions import ValidationError
from dealchain.models import db
from dealchain.models.scope import SCOPE_TYPES, ScopeNode
from dealchain.services.helpers.store import transaction, upsert as _upsert

logger = logging.getLogger(__name__)

# Guard against corrupted parent chains
_MAX_DEPTH = 64


def _validate_no_cycle(scope_id, parent_id):
    """Return True if ``parent_id`` is not ``scope_id`` or one of its descendants."""
    current = parent_id
    depth = 0
    while current is not None and depth < _MAX_DEPTH:
        if current == scope_id:
            return False
        node = db.session.get(ScopeNode, current)
        current = node.parent_id if node else None
        depth += 1
    return True


def upsert(scope_id, scope_type, *, parent_id=None, name=None):
    """
    Register or update a scope node.

    On update only the supplied fields change: omitting ``parent_id`` or
    ``name`` keeps the stored value, so re-registering a node never
    detaches it from its tree.

    Returns:
        (ScopeNode, created), where ``created`` is False when an existing node
        was updated in place.
    """
    if not scope_id:
        raise ValidationError("scope_id is required", details={"scope_id": "required"})
    if scope_type not in SCOPE_TYPES:
        raise ValidationError(
            f"Invalid scope type: {scope_type}",
            details={"scope_type": f"must be one of {', '.join(SCOPE_TYPES)}"},
        )
    if parent_id is not None:
        if db.session.get(ScopeNode, parent_id) is None:
            raise ValidationError(
                f"Parent scope {parent_id} is not registered",
                details={"parent_id": "unknown scope"},
            )
        if not _validate_no_cycle(scope_id, parent_id):
            raise ValidationError(
                f"Parent {parent_id} would create a cycle under {scope_id}",
                details={"parent_id": "cycle"},
            )

    data = {"scope_type": scope_type}
    if parent_id is not None:
        data["parent_id"] = parent_id
    if name is not None:
        data["name"] = name
    with transaction("ScopeNode"):
        node, created = _upsert(ScopeNode, scope_id, data)
    logger.info(
        "Scope %s %s", scope_id, "registered" if created else "updated",
        extra={"scope_id": scope_id},
    )
    return node, created


def get(scope_id):
    return db.session.get(ScopeNode, scope_id)


def ancestors(scope_id):
    """Return the parent chain of ``scope_id`` (nearest first)."""
    chain = []
    node = db.session.get(ScopeNode, scope_id)
    while node is not None and node.parent_id is not None and len(chain) < _MAX_DEPTH:
        node = db.session.get(ScopeNode, node.parent_id)
        if node is None:
            break
        chain.append(node)
    return chain


def is_within(scope_id, container_id):
    """True if ``scope_id`` is ``container_id`` or one of its registered descendants."""
    if scope_id == container_id:
        return True
    return any(a.id == container_id for a in ancestors(scope_id))


def validate_within(scope_type, scope_id, container_type, container_id, *, field="scope_id"):
    """
    Raise ValidationError unless (scope_type, scope_id) lies inside the container.

    The container itself qualifies only with the same scope type. A
    registered node whose stored type disagrees with ``scope_type`` is a
    mismatch too.
    """
    if scope_type not in SCOPE_TYPES:
        raise ValidationError(
            f"Invalid scope type: {scope_type}",
            details={"scope_type": f"must be one of {', '.join(SCOPE_TYPES)}"},
        )
    if not scope_id:
        raise ValidationError(f"{field} is required", details={field: "required"})

    if scope_id == container_id:
        if scope_type != container_type:
            raise ValidationError(
                f"Scope {scope_id} is {container_type}, not {scope_type}",
                details={"scope_type": "mismatch"},
            )
        return

    node = db.session.get(ScopeNode, scope_id)
    if node is not None and node.scope_type != scope_type:
        raise ValidationError(
            f"Scope {scope_id} is registered as {node.scope_type}, not {scope_type}",
            details={"scope_type": "mismatch"},
        )
    if not is_within(scope_id, container_id):
        raise ValidationError(
            f"Scope {scope_type}:{scope_id} is outside {container_type}:{container_id}",
            details={field: "outside contract scope"},
        )
