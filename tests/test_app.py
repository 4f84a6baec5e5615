"""Tests for the application factory, configuration and logging setup."""

import json
import logging

import pytest

from dealchain import create_app, init_collaborators
from dealchain.config import ProductionConfig, TestingConfig
from dealchain.core.exceptions import ValidationError
from dealchain.logging_config import JSONFormatter, ReadableFormatter
from dealchain.services.notification import LoggingDispatcher
from dealchain.services.party_resolver import PartyRole, StaticPartyResolver, resolve


def test_testing_config_defaults(app):
    assert app.config["TESTING"] is True
    assert app.config["SQLALCHEMY_DATABASE_URI"] == TestingConfig.SQLALCHEMY_DATABASE_URI
    assert app.config["PROPOSAL_VERSION_COMMENT_MIN_LENGTH"] == 10
    assert app.config["AUTO_GENERATE_CONTRACTS"] is True
    assert app.config["AUTO_CLOSE_ON_FINAL_ACCEPT"] is False


def test_collaborators_default_when_not_given():
    application = create_app("testing")
    ext = application.extensions["dealchain"]

    assert isinstance(ext["party_resolver"], StaticPartyResolver)
    assert isinstance(ext["dispatcher"], LoggingDispatcher)


def test_init_collaborators_keeps_existing_when_omitted():
    application = create_app("testing")
    resolver = StaticPartyResolver({"p-1": "BENEFICIARY"})

    init_collaborators(application, party_resolver=resolver)
    ext = init_collaborators(application)

    assert ext["party_resolver"] is resolver


def test_production_requires_database_url(monkeypatch):
    monkeypatch.setattr(ProductionConfig, "SQLALCHEMY_DATABASE_URI", None)

    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        ProductionConfig()


class TestPartyResolver:
    def test_register_accepts_several_shapes(self):
        resolver = StaticPartyResolver({
            "a": "CONSULTANT",
            "b": ("VENDOR_INDIVIDUAL", False),
            "c": PartyRole("SUB_CONTRACTOR"),
        })

        assert resolver.resolve_party_role("a") == PartyRole("CONSULTANT", True)
        assert resolver.resolve_party_role("b").verified is False
        assert resolver.resolve_party_role("c").type == "SUB_CONTRACTOR"
        assert resolver.resolve_party_role("zzz") is None

    def test_unknown_party_type_rejected(self):
        with pytest.raises(ValidationError):
            StaticPartyResolver({"a": "ASTRONAUT"})

    def test_resolve_uses_registered_resolver(self, parties):
        assert resolve(parties["sub"]).type == "SUB_CONTRACTOR"


class TestLogFormatters:
    def _record(self, **extra):
        record = logging.LogRecord(
            "dealchain.services.proposal_negotiator", logging.INFO, __file__, 10,
            "Proposal final-accepted", None, None,
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_formatter_promotes_context_fields(self):
        line = JSONFormatter().format(self._record(proposal_id="p-1", to_status="FINAL_ACCEPTED"))
        entry = json.loads(line)

        assert entry["message"] == "Proposal final-accepted"
        assert entry["proposal_id"] == "p-1"
        assert entry["to_status"] == "FINAL_ACCEPTED"
        assert "contract_id" not in entry

    def test_readable_formatter_shows_transition(self):
        line = ReadableFormatter().format(
            self._record(from_status="SUBMITTED", to_status="REJECTED"),
        )

        assert "[SUBMITTED → REJECTED]" in line
