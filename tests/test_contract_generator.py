"""
Tests: Contract generation and lifecycle.

Test blocks:
  1. generate_from_proposal (derivation, idempotence, preconditions)
  2. sign (buyer only, DRAFT only) and frozen terms
  3. sub-contracts (signed parent, buyer/provider rules, scope containment)
  4. cancel (dependent engagements and sub-contracts)
  5. listing
  6. multi-party contracts (members, shares, governance) and consent
"""

import pytest

from dealchain.core.exceptions import (
    AuthorizationError,
    InvalidStateError,
    PreconditionError,
    StateConflictError,
    ValidationError,
)
from dealchain.models import db as _db
from dealchain.models.contract import Contract, ContractParty, derive_contract_type
from dealchain.services import (
    contract_generator as cg,
    engagement_scheduler,
    opportunity_registry,
    proposal_negotiator as pn,
)


def _finalized(opportunity_id, initiator, owner, terms):
    """Submit v1 and have both sides accept it."""
    p = pn.submit(opportunity_id, initiator, terms)
    pn.accept(p.id, "OWNER", 1, owner)
    return pn.accept(p.id, "OTHER", 1, initiator)


# ── 1. generate_from_proposal ────────────────────────────────────────────────


class TestGenerateFromProposal:
    def test_contract_is_derived_from_accepted_version(self, draft_contract, final_proposal, parties):
        c = draft_contract

        assert c.contract_type == "PROJECT_CONTRACT"
        assert c.status == "DRAFT"
        assert (c.scope_type, c.scope_id) == ("PROJECT", "PRJ-1")
        assert (c.buyer_party_id, c.buyer_party_type) == (parties["buyer"], "BENEFICIARY")
        assert (c.provider_party_id, c.provider_party_type) == (parties["vendor"], "VENDOR_CORPORATE")
        assert c.opportunity_id == final_proposal.opportunity_id
        assert c.start_date.isoformat() == "2026-01-01"
        assert c.end_date.isoformat() == "2026-06-30"
        terms = c.terms_json
        assert terms["pricing"] == {"amount": 165000, "currency": "SAR"}
        assert terms["paymentTerms"]["type"] == "CASH"
        assert terms["deliverables"] == ["as-built drawings"]
        assert terms["source"]["proposalId"] == final_proposal.id
        assert terms["source"]["version"] == 2

    def test_generate_twice_returns_same_contract(self, draft_contract, final_proposal):
        again = cg.generate_from_proposal(final_proposal.id)
        third = cg.generate_from_proposal(final_proposal.id)

        assert again.id == third.id == draft_contract.id
        assert _db.session.query(Contract).filter_by(source_proposal_id=final_proposal.id).count() == 1

    def test_explicit_generation_when_auto_is_off(self, app, proposal, parties, monkeypatch, dispatcher):
        monkeypatch.setitem(app.config, "AUTO_GENERATE_CONTRACTS", False)
        pn.accept(proposal.id, "OWNER", 1, parties["buyer"])
        pn.accept(proposal.id, "OTHER", 1, parties["vendor"])
        assert cg.get_for_proposal(proposal.id) is None

        contract = cg.generate_from_proposal(proposal.id)

        assert contract.source_proposal_id == proposal.id
        assert contract.terms_json["pricing"]["amount"] == 175000
        assert dispatcher.types().count("ContractGenerated") == 1

    def test_negotiating_proposal_is_a_precondition_failure(self, proposal):
        with pytest.raises(PreconditionError):
            cg.generate_from_proposal(proposal.id)

        assert _db.session.query(Contract).count() == 0

    def test_consultant_provider_yields_advisory_contract(self, opportunity, parties, make_terms):
        p = _finalized(opportunity.id, parties["consultant"], parties["buyer"], make_terms(total=30000))

        assert cg.get_for_proposal(p.id).contract_type == "ADVISORY_CONTRACT"

    def test_plain_opportunity_yields_service_contract(self, parties, make_terms):
        opp = opportunity_registry.create({
            "title": "Monthly HVAC maintenance", "intent": "REQUEST_SERVICE",
            "creatorPartyId": parties["buyer"],
        })
        opportunity_registry.publish(opp.id)

        p = _finalized(opp.id, parties["provider"], parties["buyer"], make_terms(total=12000))
        contract = cg.get_for_proposal(p.id)

        assert contract.contract_type == "SERVICE_CONTRACT"
        assert (contract.scope_type, contract.scope_id) == ("OPPORTUNITY", opp.id)

    @pytest.mark.parametrize("scope_type, provider_type, expected", [
        ("MEGA_PROJECT", "VENDOR_CORPORATE", "MEGA_PROJECT_CONTRACT"),
        ("WORK_PACKAGE", "SERVICE_PROVIDER", "PROJECT_CONTRACT"),
        ("SERVICE_REQUEST", "VENDOR_INDIVIDUAL", "SERVICE_CONTRACT"),
        ("PROJECT", "CONSULTANT", "ADVISORY_CONTRACT"),
    ])
    def test_derive_contract_type(self, scope_type, provider_type, expected):
        assert derive_contract_type(scope_type, provider_type) == expected


# ── 2. sign ──────────────────────────────────────────────────────────────────


class TestSign:
    def test_buyer_signs(self, signed_contract, parties, dispatcher):
        assert signed_contract.status == "SIGNED"
        assert signed_contract.signed_by == parties["buyer"]
        assert signed_contract.signed_at is not None
        assert "ContractSigned" in dispatcher.types()

    def test_provider_cannot_sign(self, draft_contract, parties):
        with pytest.raises(AuthorizationError):
            cg.sign(draft_contract.id, parties["vendor"])

        assert cg.get(draft_contract.id).status == "DRAFT"

    def test_sign_twice_is_invalid(self, signed_contract, parties):
        with pytest.raises(InvalidStateError):
            cg.sign(signed_contract.id, parties["buyer"])

    def test_stale_generation(self, draft_contract, parties):
        with pytest.raises(StateConflictError):
            cg.sign(draft_contract.id, parties["buyer"], expected_generation=draft_contract.generation + 1)

    def test_amend_terms_while_draft(self, draft_contract, parties, make_terms):
        c = cg.amend_terms(
            draft_contract.id,
            make_terms(total=160000, timeline={"startDate": "2026-02-01", "endDate": "2026-07-31"}),
            parties["vendor"],
        )

        assert c.terms_json["pricing"]["amount"] == 160000
        assert c.terms_json["source"]["amendedBy"] == parties["vendor"]
        assert c.start_date.isoformat() == "2026-02-01"

    def test_signed_terms_cannot_be_amended(self, signed_contract, parties, make_terms):
        with pytest.raises(InvalidStateError):
            cg.amend_terms(signed_contract.id, make_terms(total=1), parties["buyer"])

        assert cg.get(signed_contract.id).terms_json["pricing"]["amount"] == 165000

    def test_signed_terms_are_frozen_at_the_model(self, signed_contract):
        contract = cg.get(signed_contract.id)
        assert contract.status == "SIGNED"
        contract.terms_json = {"pricing": {"amount": 1, "currency": "SAR"}}

        with pytest.raises(InvalidStateError):
            _db.session.commit()
        _db.session.rollback()

        assert cg.get(signed_contract.id).terms_json["pricing"]["amount"] == 165000


# ── 3. sub-contracts ─────────────────────────────────────────────────────────


class TestSubContract:
    def test_draft_parent_is_a_precondition_failure(self, draft_contract, parties, make_terms):
        with pytest.raises(PreconditionError):
            cg.generate_sub_contract(
                draft_contract.id, parties["vendor"], parties["sub"], make_terms(total=40000),
            )

        assert cg.list_sub_contracts(draft_contract.id) == []

    def test_sub_contract_under_signed_parent(self, signed_contract, parties, make_terms):
        sub = cg.generate_sub_contract(
            signed_contract.id, parties["vendor"], parties["sub"], make_terms(total=40000),
        )

        assert sub.contract_type == "SUB_CONTRACT"
        assert sub.status == "DRAFT"
        assert sub.parent_contract_id == signed_contract.id
        assert sub.source_proposal_id is None
        assert (sub.scope_type, sub.scope_id) == ("PROJECT", "PRJ-1")
        assert sub.buyer_party_id == parties["vendor"]
        assert sub.provider_party_type == "SUB_CONTRACTOR"
        assert sub.terms_json["source"] == {"parentContractId": signed_contract.id}

    def test_sub_contract_on_descendant_scope(self, signed_contract, parties, make_terms, scopes):
        sub = cg.generate_sub_contract(
            signed_contract.id, parties["vendor"], parties["sub"], make_terms(total=8000),
            scope_type="WORK_PACKAGE", scope_id=scopes["work_package"],
        )

        assert sub.scope_id == "WP-1"

    def test_sub_contract_outside_parent_scope(self, signed_contract, parties, make_terms, scopes):
        with pytest.raises(ValidationError):
            cg.generate_sub_contract(
                signed_contract.id, parties["vendor"], parties["sub"], make_terms(total=8000),
                scope_type="PROJECT", scope_id=scopes["other_project"],
            )

    def test_buyer_must_be_parent_provider(self, signed_contract, parties, make_terms):
        with pytest.raises(ValidationError) as exc:
            cg.generate_sub_contract(
                signed_contract.id, parties["buyer"], parties["sub"], make_terms(total=8000),
            )

        assert "buyerId" in exc.value.details

    def test_provider_must_be_sub_contractor(self, signed_contract, parties, make_terms):
        with pytest.raises(ValidationError) as exc:
            cg.generate_sub_contract(
                signed_contract.id, parties["vendor"], parties["provider"], make_terms(total=8000),
            )

        assert exc.value.details == {"providerPartyType": "SERVICE_PROVIDER"}

    def test_sub_contract_is_signed_by_its_buyer(self, signed_contract, parties, make_terms):
        sub = cg.generate_sub_contract(
            signed_contract.id, parties["vendor"], parties["sub"], make_terms(total=8000),
        )

        signed = cg.sign(sub.id, parties["vendor"])

        assert signed.status == "SIGNED"


# ── 4. cancel ────────────────────────────────────────────────────────────────


class TestCancel:
    def test_cancel_draft(self, draft_contract, parties, dispatcher):
        c = cg.cancel(draft_contract.id, reason="Scope changed", actor_id=parties["buyer"])

        assert c.status == "CANCELLED"
        assert c.cancel_reason == "Scope changed"
        assert c.cancelled_by == parties["buyer"]
        assert "ContractCancelled" in dispatcher.types()

    def test_cancel_is_idempotent(self, draft_contract, parties):
        first = cg.cancel(draft_contract.id, reason="first", actor_id=parties["buyer"])
        generation = first.generation

        again = cg.cancel(draft_contract.id, reason="second", actor_id=parties["vendor"])

        assert again.cancel_reason == "first"
        assert again.generation == generation

    def test_outsider_cannot_cancel(self, draft_contract, parties):
        with pytest.raises(AuthorizationError):
            cg.cancel(draft_contract.id, actor_id=parties["provider"])

    def test_signed_contract_can_be_cancelled(self, signed_contract, parties):
        assert cg.cancel(signed_contract.id, actor_id=parties["vendor"]).status == "CANCELLED"

    def test_cancelled_contract_cannot_be_signed(self, draft_contract, parties):
        cg.cancel(draft_contract.id, actor_id=parties["buyer"])

        with pytest.raises(InvalidStateError):
            cg.sign(draft_contract.id, parties["buyer"])

    def test_active_engagement_blocks_cancel(self, active_engagement, parties):
        with pytest.raises(PreconditionError):
            cg.cancel(active_engagement.contract_id, actor_id=parties["buyer"])

        assert cg.get(active_engagement.contract_id).status == "SIGNED"

    def test_planned_engagements_stay_planned(self, signed_contract, parties, scopes):
        engagement = engagement_scheduler.create(
            signed_contract.id, "PROJECT", scopes["project"], "PROJECT_EXECUTION",
        )

        contract = cg.cancel(signed_contract.id, actor_id=parties["buyer"])

        assert contract.status == "CANCELLED"
        assert engagement_scheduler.get(engagement.id).status == "PLANNED"

    def test_cancelled_engagement_blocks_cancel(self, signed_contract, parties, scopes):
        engagement = engagement_scheduler.create(
            signed_contract.id, "PROJECT", scopes["project"], "PROJECT_EXECUTION",
        )
        engagement_scheduler.cancel(engagement.id, reason="Re-planned")

        with pytest.raises(PreconditionError):
            cg.cancel(signed_contract.id, actor_id=parties["buyer"])

    def test_no_engagement_past_planned_under_unsigned_contract(
        self, signed_contract, parties, scopes,
    ):
        engagement_scheduler.create(
            signed_contract.id, "PROJECT", scopes["project"], "PROJECT_EXECUTION",
        )
        engagement_scheduler.create(
            signed_contract.id, "SUB_PROJECT", scopes["sub_project"], "PROJECT_EXECUTION",
        )
        cg.cancel(signed_contract.id, actor_id=parties["buyer"])

        for contract in _db.session.query(Contract).all():
            if contract.status != "SIGNED":
                statuses = {e.status for e in engagement_scheduler.list_for_contract(contract.id)}
                assert statuses <= {"PLANNED"}

    def test_signed_sub_contract_blocks_cancel(self, signed_contract, parties, make_terms):
        sub = cg.generate_sub_contract(
            signed_contract.id, parties["vendor"], parties["sub"], make_terms(total=8000),
        )
        cg.sign(sub.id, parties["vendor"])

        with pytest.raises(PreconditionError):
            cg.cancel(signed_contract.id, actor_id=parties["buyer"])

    def test_draft_sub_contracts_are_cancelled_along(self, signed_contract, parties, make_terms):
        sub = cg.generate_sub_contract(
            signed_contract.id, parties["vendor"], parties["sub"], make_terms(total=8000),
        )

        cg.cancel(signed_contract.id, actor_id=parties["buyer"])

        assert cg.get(sub.id).status == "CANCELLED"


# ── 5. listing ───────────────────────────────────────────────────────────────


class TestListing:
    def test_list_by_party(self, signed_contract, parties, make_terms):
        sub = cg.generate_sub_contract(
            signed_contract.id, parties["vendor"], parties["sub"], make_terms(total=8000),
        )

        as_buyer = {c.id for c in cg.list_by_party(parties["vendor"], role="BUYER")}
        as_provider = {c.id for c in cg.list_by_party(parties["vendor"], role="PROVIDER")}
        either = {c.id for c in cg.list_by_party(parties["vendor"])}

        assert as_buyer == {sub.id}
        assert as_provider == {signed_contract.id}
        assert either == {sub.id, signed_contract.id}

    def test_list_by_party_rejects_unknown_role(self, parties):
        with pytest.raises(ValidationError):
            cg.list_by_party(parties["vendor"], role="OWNER")

    def test_list_by_scope(self, draft_contract):
        assert [c.id for c in cg.list_by_scope("PROJECT", "PRJ-1")] == [draft_contract.id]
        assert cg.list_by_scope("PROJECT", "PRJ-2") == []


# ── 6. multi-party contracts ─────────────────────────────────────────────────


def _members(parties, buyer_share=40, vendor_share=35, provider_share=25):
    """Owner, lead vendor and a partner service provider."""
    return [
        {"partyId": parties["buyer"], "role": "OWNER", "share": buyer_share},
        {"partyId": parties["vendor"], "role": "LEAD", "share": vendor_share},
        {"partyId": parties["provider"], "role": "PARTNER", "share": provider_share},
    ]


@pytest.fixture()
def jv_contract(draft_contract, parties):
    return cg.generate_multi_party(
        draft_contract.source_proposal_id, _members(parties), contract_type="JV_CONTRACT",
    )


class TestMultiPartyGeneration:
    def test_draft_contract_is_converted_in_place(self, draft_contract, jv_contract, parties):
        assert jv_contract.id == draft_contract.id
        assert jv_contract.is_multi_party is True
        assert jv_contract.contract_type == "JV_CONTRACT"
        assert [p.party_id for p in jv_contract.parties] == [
            parties["buyer"], parties["vendor"], parties["provider"],
        ]
        assert [p.party_type for p in jv_contract.parties] == [
            "BENEFICIARY", "VENDOR_CORPORATE", "SERVICE_PROVIDER",
        ]
        assert jv_contract.pending_consents == [
            parties["buyer"], parties["vendor"], parties["provider"],
        ]

    def test_governance_and_terms(self, jv_contract, parties):
        governance = jv_contract.governance_json
        assert governance["entityType"] == "JOINT_VENTURE"
        assert governance["leadPartyId"] == parties["buyer"]
        assert governance["quorum"] == 2
        assert governance["decisionMaking"] == "Consensus"

        terms = jv_contract.terms_json
        assert terms["pricing"]["amount"] == 165000
        assert terms["parties"][1] == {"partyId": parties["vendor"], "role": "LEAD", "share": 35.0}
        assert terms["governance"] == governance
        assert jv_contract.to_dict()["parties"][2]["consentStatus"] == "PENDING"

    def test_repeat_call_returns_existing_contract(self, jv_contract, parties):
        again = cg.generate_multi_party(
            jv_contract.source_proposal_id, _members(parties, 50, 30, 20),
            contract_type="JV_CONTRACT",
        )

        assert again.id == jv_contract.id
        assert [p.share for p in again.parties] == [40.0, 35.0, 25.0]
        assert _db.session.query(ContractParty).count() == 3

    def test_generated_when_no_contract_exists(
        self, app, opportunity, parties, make_terms, monkeypatch, dispatcher,
    ):
        monkeypatch.setitem(app.config, "AUTO_GENERATE_CONTRACTS", False)
        proposal = _finalized(opportunity.id, parties["vendor"], parties["buyer"], make_terms())
        assert cg.get_for_proposal(proposal.id) is None

        c = cg.generate_multi_party(
            proposal.id, _members(parties), contract_type="CONSORTIUM_CONTRACT",
        )

        assert c.status == "DRAFT"
        assert c.source_proposal_id == proposal.id
        assert c.governance_json["liability"] == "JOINT_AND_SEVERAL"
        assert dispatcher.types()[-1] == "ContractGenerated"

    def test_explicit_governance_is_kept(self, draft_contract, parties):
        governance = {"entityType": "JOINT_VENTURE", "decisionMaking": "Lead partner"}

        c = cg.generate_multi_party(
            draft_contract.source_proposal_id, _members(parties),
            contract_type="JV_CONTRACT", governance=governance,
        )

        assert c.governance_json == governance

    @pytest.mark.parametrize("build_members", [
        lambda p: [{"partyId": p["buyer"], "role": "OWNER", "share": 100}],
        lambda p: _members(p, 40, 35, 15),
        lambda p: _members(p, 40, 35, 25) + [{"partyId": p["buyer"], "role": "MEMBER", "share": 1}],
        lambda p: [
            {"partyId": p["buyer"], "role": "CHAIR", "share": 50},
            {"partyId": p["vendor"], "role": "LEAD", "share": 50},
        ],
        lambda p: [
            {"partyId": p["buyer"], "role": "OWNER", "share": 0},
            {"partyId": p["vendor"], "role": "LEAD", "share": 100},
        ],
        lambda p: [
            {"partyId": p["buyer"], "role": "OWNER", "share": 60},
            {"partyId": p["provider"], "role": "PARTNER", "share": 40},
        ],
    ], ids=["single", "short-of-100", "duplicate", "bad-role", "zero-share", "vendor-missing"])
    def test_invalid_members_rejected(self, draft_contract, parties, build_members):
        with pytest.raises(ValidationError):
            cg.generate_multi_party(draft_contract.source_proposal_id, build_members(parties))

        contract = cg.get(draft_contract.id)
        assert contract.is_multi_party is False
        assert contract.contract_type == "PROJECT_CONTRACT"

    def test_fractional_shares_within_tolerance(self, draft_contract, parties):
        c = cg.generate_multi_party(
            draft_contract.source_proposal_id, _members(parties, 33.33, 33.33, 33.34),
        )

        assert c.contract_type == "MULTI_PARTY_CONTRACT"
        assert c.governance_json["leadPartyId"] == parties["provider"]

    def test_unverified_member_rejected(self, draft_contract, parties):
        members = _members(parties, 35, 35, 25) + [
            {"partyId": parties["unverified"], "role": "MEMBER", "share": 5},
        ]

        with pytest.raises(AuthorizationError):
            cg.generate_multi_party(draft_contract.source_proposal_id, members)

    def test_unknown_contract_type_rejected(self, draft_contract, parties):
        with pytest.raises(ValidationError):
            cg.generate_multi_party(
                draft_contract.source_proposal_id, _members(parties), contract_type="PROJECT_CONTRACT",
            )

    def test_spv_below_minimum_value(self, draft_contract, parties):
        with pytest.raises(ValidationError) as exc:
            cg.generate_multi_party(
                draft_contract.source_proposal_id, _members(parties), contract_type="SPV_CONTRACT",
            )

        assert "total" in exc.value.details

    def test_spv_board(self, app, draft_contract, parties, monkeypatch):
        monkeypatch.setitem(app.config, "SPV_MIN_CONTRACT_VALUE", 100000)

        c = cg.generate_multi_party(
            draft_contract.source_proposal_id, _members(parties), contract_type="SPV_CONTRACT",
        )

        board = c.governance_json["board"]
        assert board[0] == {"partyId": parties["buyer"], "seat": "CHAIRMAN"}
        assert [seat["seat"] for seat in board[1:]] == ["MEMBER", "MEMBER"]

    def test_signed_contract_cannot_be_converted(self, signed_contract, parties):
        with pytest.raises(InvalidStateError):
            cg.generate_multi_party(signed_contract.source_proposal_id, _members(parties))

    def test_requires_final_accepted_proposal(self, proposal, parties):
        with pytest.raises(PreconditionError):
            cg.generate_multi_party(proposal.id, _members(parties))


class TestConsent:
    def test_sign_waits_for_every_member(self, jv_contract, parties, dispatcher):
        cg.record_consent(jv_contract.id, parties["buyer"])
        cg.record_consent(jv_contract.id, parties["vendor"])

        with pytest.raises(PreconditionError):
            cg.sign(jv_contract.id, parties["buyer"])

        c = cg.record_consent(jv_contract.id, parties["provider"])
        assert c.pending_consents == []
        assert dispatcher.events[-1]["eventType"] == "ContractPartyConsented"
        assert dispatcher.events[-1]["payload"]["allConsented"] is True

        assert cg.sign(jv_contract.id, parties["buyer"]).status == "SIGNED"

    def test_consent_is_idempotent(self, jv_contract, parties, dispatcher):
        first = cg.record_consent(jv_contract.id, parties["vendor"])
        consented_at = first.parties[1].consented_at

        again = cg.record_consent(jv_contract.id, parties["vendor"])

        assert again.parties[1].consented_at == consented_at
        assert dispatcher.types().count("ContractPartyConsented") == 1

    def test_non_member_cannot_consent(self, jv_contract, parties):
        with pytest.raises(AuthorizationError):
            cg.record_consent(jv_contract.id, parties["consultant"])

    def test_bilateral_contract_has_no_consent(self, draft_contract, parties):
        with pytest.raises(ValidationError):
            cg.record_consent(draft_contract.id, parties["buyer"])

    def test_amending_terms_resets_consent(self, jv_contract, parties, make_terms):
        for key in ("buyer", "vendor", "provider"):
            cg.record_consent(jv_contract.id, parties[key])

        c = cg.amend_terms(jv_contract.id, make_terms(total=160000), parties["buyer"])

        assert len(c.pending_consents) == 3
        assert c.terms_json["pricing"]["amount"] == 160000
        assert [m["partyId"] for m in c.terms_json["parties"]] == [
            parties["buyer"], parties["vendor"], parties["provider"],
        ]
        with pytest.raises(PreconditionError):
            cg.sign(jv_contract.id, parties["buyer"])

    def test_members_are_listed_by_party(self, jv_contract, parties):
        assert [c.id for c in cg.list_by_party(parties["provider"])] == [jv_contract.id]
        assert [c.id for c in cg.list_by_party(parties["provider"], role="MEMBER")] == [jv_contract.id]
        assert cg.list_by_party(parties["provider"], role="PROVIDER") == []

    def test_signed_multi_party_contract_spawns_engagements(self, jv_contract, parties, scopes):
        for key in ("buyer", "vendor", "provider"):
            cg.record_consent(jv_contract.id, parties[key])
        cg.sign(jv_contract.id, parties["buyer"])

        engagement = engagement_scheduler.create(
            jv_contract.id, "SUB_PROJECT", scopes["sub_project"], "PROJECT_EXECUTION",
        )

        assert engagement.status == "PLANNED"
