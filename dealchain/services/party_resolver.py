"""
Party / identity resolution — external collaborator boundary.

The core never inspects identity documents. It asks the registered
resolver ``resolve_party_role(party_id)`` and gets back a ``PartyRole``
(party type + verified flag) or None for an unknown party.

Register a resolver with ``dealchain.init_collaborators(app, party_resolver=...)``.
"""

import logging
from dataclasses import dataclass

from flask import current_app

from dealchain.core.exceptions import AuthorizationError, ValidationError
from dealchain.models.contract import PARTY_TYPES

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PartyRole:
    type: str
    verified: bool = True


class StaticPartyResolver:
    """In-memory resolver backed by a ``{party_id: PartyRole | (type, verified)}`` map."""

    def __init__(self, parties=None):
        self._parties = {}
        for party_id, role in (parties or {}).items():
            self.register(party_id, role)

    def register(self, party_id, role, verified=True):
        if isinstance(role, PartyRole):
            self._parties[party_id] = role
            return
        if isinstance(role, tuple):
            role, verified = role
        if role not in PARTY_TYPES:
            raise ValidationError(f"Unknown party type: {role}", details={"type": role})
        self._parties[party_id] = PartyRole(type=role, verified=verified)

    def resolve_party_role(self, party_id):
        return self._parties.get(party_id)


def get_resolver():
    return current_app.extensions["dealchain"]["party_resolver"]


def resolve(party_id, *, purpose="act"):
    """Resolve a party or raise AuthorizationError.

    Unknown parties are always rejected; unverified parties are rejected
    while REQUIRE_VERIFIED_PARTIES is on.
    """
    if not party_id:
        raise AuthorizationError(party_id, f"A party id is required to {purpose}")
    role = get_resolver().resolve_party_role(party_id)
    if role is None:
        logger.info("Unknown party rejected", extra={"party_id": party_id})
        raise AuthorizationError(party_id, f"Unknown party cannot {purpose}")
    if current_app.config.get("REQUIRE_VERIFIED_PARTIES", True) and not role.verified:
        logger.info("Unverified party rejected", extra={"party_id": party_id})
        raise AuthorizationError(party_id, f"Unverified party cannot {purpose}")
    return role
