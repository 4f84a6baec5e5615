"""
Shared pytest fixtures for the dealchain test suite.

Provides:
    - app: Flask application (session-scoped) with a static party resolver
      and a recording dispatcher
    - _setup_db: Database table creation/teardown (session-scoped)
    - reset_schema: FK-safe drop + recreate of all tables
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - parties: party ids registered with the resolver, keyed by role
    - dispatcher: the recording dispatcher, emptied before every test
    - scopes / opportunity / proposal / final_proposal / draft_contract /
      signed_contract / active_engagement: lifecycle fixtures built through
      the services, each one step further than the last
"""

import copy

import pytest

from dealchain import create_app
from dealchain.models import db as _db
from dealchain.services import (
    contract_generator,
    engagement_scheduler,
    opportunity_registry,
    proposal_negotiator,
    scope_registry,
)
from dealchain.services.party_resolver import StaticPartyResolver


# Party ids known to the resolver, keyed by the role they play in tests.
PARTY_IDS = {
    "buyer": "party-beneficiary-1",
    "vendor": "party-vendor-1",
    "provider": "party-provider-1",
    "consultant": "party-consultant-1",
    "sub": "party-sub-1",
    "sub2": "party-sub-2",
    "individual": "party-individual-1",
    "unverified": "party-unverified-1",
}

PARTY_TYPES = {
    "party-beneficiary-1": "BENEFICIARY",
    "party-vendor-1": "VENDOR_CORPORATE",
    "party-provider-1": "SERVICE_PROVIDER",
    "party-consultant-1": "CONSULTANT",
    "party-sub-1": "SUB_CONTRACTOR",
    "party-sub-2": "SUB_CONTRACTOR",
    "party-individual-1": "VENDOR_INDIVIDUAL",
    "party-unverified-1": ("SERVICE_PROVIDER", False),
}

BASE_TERMS = {
    "total": 175000,
    "currency": "SAR",
    "paymentTerms": {"type": "CASH", "schedule": "milestone_based"},
    "timeline": {"startDate": "2026-01-01", "endDate": "2026-06-30"},
    "servicesOffered": ["structural works", "site supervision"],
    "deliverables": ["as-built drawings"],
}


class RecordingDispatcher:
    """Dispatcher double: keeps every event it is handed."""

    def __init__(self):
        self.events = []
        self.fail_with = None
        self.reject_types = set()

    def dispatch(self, event):
        if self.fail_with is not None:
            raise self.fail_with
        if event["eventType"] in self.reject_types:
            raise RuntimeError(f"cannot deliver {event['eventType']}")
        self.events.append(event)

    def types(self):
        return [e["eventType"] for e in self.events]

    def reset(self):
        self.events = []
        self.fail_with = None
        self.reject_types = set()


_DISPATCHER = RecordingDispatcher()


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app(
        "testing",
        party_resolver=StaticPartyResolver(PARTY_TYPES),
        dispatcher=_DISPATCHER,
    )
    return application


def _reset_schema(create=True):
    """
    Drop (and optionally recreate) every table.

    SQLite checks the self-referential scope_nodes FK row by row while
    DROP TABLE empties the table, so enforcement is switched off around it.
    """
    _db.session.rollback()
    # Scope ids are fixed strings; drop stale instances from the identity map
    _db.session.expunge_all()
    _db.session.remove()

    sqlite = _db.engine.dialect.name == "sqlite"
    if sqlite:
        with _db.engine.connect() as conn:
            conn.exec_driver_sql("PRAGMA foreign_keys=OFF")
    try:
        _db.drop_all()
        if create:
            _db.create_all()
    finally:
        if sqlite:
            with _db.engine.connect() as conn:
                conn.exec_driver_sql("PRAGMA foreign_keys=ON")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _reset_schema(create=False)


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        _DISPATCHER.reset()
        yield
        _DISPATCHER.reset()
        _reset_schema()


@pytest.fixture()
def reset_schema():
    """The FK-safe drop/recreate used between tests."""
    return _reset_schema


@pytest.fixture()
def dispatcher():
    """The recording dispatcher registered with the app."""
    return _DISPATCHER


@pytest.fixture()
def parties():
    return dict(PARTY_IDS)


@pytest.fixture()
def make_terms():
    """Return a factory for valid terms objects: ``make_terms(total=165000)``."""

    def _make(**overrides):
        terms = copy.deepcopy(BASE_TERMS)
        terms.update(overrides)
        return terms

    return _make


# ── Lifecycle fixtures ───────────────────────────────────────────────────


@pytest.fixture()
def scopes():
    """
    Register a small scope tree:

        MEGA-1 (MEGA_PROJECT)
          └── PRJ-1 (PROJECT)
                ├── SP-1 (SUB_PROJECT)
                │     └── WP-1 (WORK_PACKAGE)
                └── PH-1 (PHASE)
        PRJ-2 (PROJECT)  unrelated
    """
    scope_registry.upsert("MEGA-1", "MEGA_PROJECT", name="Riyadh North")
    scope_registry.upsert("PRJ-1", "PROJECT", parent_id="MEGA-1", name="Tower B")
    scope_registry.upsert("SP-1", "SUB_PROJECT", parent_id="PRJ-1", name="Foundations")
    scope_registry.upsert("WP-1", "WORK_PACKAGE", parent_id="SP-1", name="Piling")
    scope_registry.upsert("PH-1", "PHASE", parent_id="PRJ-1", name="Phase 1")
    scope_registry.upsert("PRJ-2", "PROJECT", name="Unrelated tower")
    return {
        "mega": "MEGA-1", "project": "PRJ-1", "sub_project": "SP-1",
        "work_package": "WP-1", "phase": "PH-1", "other_project": "PRJ-2",
    }


@pytest.fixture()
def opportunity(scopes, parties):
    """A PUBLISHED REQUEST_SERVICE opportunity on project PRJ-1."""
    opp = opportunity_registry.create({
        "title": "Structural works for Tower B",
        "intent": "REQUEST_SERVICE",
        "creatorPartyId": parties["buyer"],
        "scopeType": "PROJECT",
        "scopeId": scopes["project"],
        "paymentTerms": {"type": "CASH"},
        "skillsTags": ["concrete", "steel"],
    })
    return opportunity_registry.publish(opp.id, actor_id=parties["buyer"])


@pytest.fixture()
def proposal(opportunity, parties, make_terms):
    """Version 1 (total 175000) submitted by the vendor."""
    return proposal_negotiator.submit(
        opportunity.id, parties["vendor"], make_terms(), comment="Initial offer",
    )


@pytest.fixture()
def final_proposal(proposal, parties, make_terms):
    """Owner counters with 165000 as v2, both sides accept v2."""
    proposal_negotiator.propose_new_version(
        proposal.id, make_terms(total=165000), parties["buyer"],
        comment="Please revise the pricing to match budget",
    )
    proposal_negotiator.accept(proposal.id, "OWNER", 2, parties["buyer"])
    return proposal_negotiator.accept(proposal.id, "OTHER", 2, parties["vendor"])


@pytest.fixture()
def draft_contract(final_proposal):
    return contract_generator.get_for_proposal(final_proposal.id)


@pytest.fixture()
def signed_contract(draft_contract, parties):
    return contract_generator.sign(draft_contract.id, parties["buyer"])


@pytest.fixture()
def active_engagement(signed_contract, scopes):
    """PROJECT_EXECUTION engagement on SP-1, started."""
    engagement = engagement_scheduler.create(
        signed_contract.id, "SUB_PROJECT", scopes["sub_project"], "PROJECT_EXECUTION",
    )
    return engagement_scheduler.start(engagement.id)
