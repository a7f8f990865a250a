"""
Unit Tests for ledger-code voting and resolution

Run with: pytest tests/test_ledger_codes.py -v
"""

import pytest
from datetime import datetime, timezone

from reconciliation.ledger_codes import (
    LedgerCodeResolver,
    LedgerCodeVotes,
    build_ledger_code_votes,
    majority_code,
)
from reconciliation.models import FacProvenance
from helpers import make_invoice, make_transaction

NOW = datetime(2025, 3, 12, 9, 0, tzinfo=timezone.utc)


class TestMajorityCode:

    def test_majority_wins(self):
        assert majority_code({"101.1": 3, "102.2": 1}) == ("101.1", 3)

    def test_tie_goes_to_first_seen(self):
        assert majority_code({"102.2": 2, "101.1": 2}) == ("102.2", 2)

    def test_empty(self):
        assert majority_code({}) is None
        assert majority_code(None) is None


class TestVotes:

    def test_votes_from_invoices_and_coded_transactions(self):
        invoices = [
            make_invoice("i1", customer_name="ACME", customer_email="a@acme.io", financial_account_code="101.1"),
            make_invoice("i2", customer_name="Acme", customer_email="b@acme.io", financial_account_code="101.1"),
            make_invoice("i3", customer_name="acme", financial_account_code="102.2"),
            make_invoice("i4", customer_name="No Code"),
        ]
        coded = [make_transaction("t1", financial_account_code="104.0")]

        votes = build_ledger_code_votes(invoices, coded)

        assert dict(votes.by_name["acme"]) == {"101.1": 2, "102.2": 1}
        assert dict(votes.by_domain["acme.io"]) == {"101.1": 2}
        assert dict(votes.by_source["braintree-api-revenue"]) == {"104.0": 1}
        assert "no code" not in votes.by_name

    def test_snapshot_is_read_only(self):
        votes = LedgerCodeVotes.from_counts(by_name={"acme": {"101.1": 1}})
        with pytest.raises(TypeError):
            votes.by_name["acme"]["101.1"] = 5


class TestResolver:

    @pytest.fixture
    def resolver(self):
        votes = LedgerCodeVotes.from_counts(
            by_name={"acme": {"101.1": 3, "102.2": 1}},
            by_domain={"bigco.com": {"103.3": 2}, "tiny.io": {"105.5": 1}},
            by_source={"stripe-eur": {"104.4": 7, "101.1": 2}},
        )
        return LedgerCodeResolver(votes, domain_min_votes=2)

    def test_customer_name_majority(self, resolver):
        assignment = resolver.resolve("t1", "stripe-eur", customer_name="Acme", now=NOW)
        assert assignment.code == "101.1"
        assert assignment.provenance == FacProvenance.CUSTOMER_NAME
        assert assignment.votes == 3

    def test_domain_needs_two_votes(self, resolver):
        assert resolver.resolve("t1", "unknown", customer_email="x@bigco.com", now=NOW).code == "103.3"
        assert resolver.resolve("t2", "unknown", customer_email="x@tiny.io", now=NOW) is None

    def test_source_dominant_fallback(self, resolver):
        assignment = resolver.resolve("t1", "stripe-eur", customer_name="Nobody", now=NOW)
        assert assignment.code == "104.4"
        assert assignment.provenance == FacProvenance.SOURCE_DOMINANT

    def test_patch_records_provenance(self, resolver):
        patch = resolver.resolve("t1", "stripe-eur", customer_email="x@bigco.com", now=NOW).to_patch()
        assert patch == {
            "matched_invoice_fac": "103.3",
            "fac_fallback_source": "email-domain",
            "fac_fallback_at": NOW.isoformat(),
        }


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
