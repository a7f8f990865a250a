"""
Unit Tests for the candidate index

Run with: pytest tests/test_candidate_index.py -v
"""

import pytest
from decimal import Decimal

from reconciliation.candidate_index import build_candidate_index, domain_amount_key
from helpers import make_invoice


class TestBuildCandidateIndex:

    @pytest.fixture
    def invoices(self):
        return [
            make_invoice("i1", "250.00", order_id="ABC1234", customer_email="Ana@Acme.io", customer_name="Acme Corp"),
            make_invoice("i2", "99.60", customer_email="bob@acme.io", customer_name="Bob Stone"),
            make_invoice("i3", "101.20"),
            make_invoice("i4", "100.00", customer_name="Acme Corp"),
        ]

    def test_every_invoice_is_counted(self, invoices):
        index = build_candidate_index(invoices)
        assert index.size == 4

    def test_order_id_lookup_normalizes_both_sides(self, invoices):
        index = build_candidate_index(invoices)
        assert [i.id for i in index.lookup_order_id("abc1234-5")] == ["i1"]

    def test_email_lookup(self, invoices):
        index = build_candidate_index(invoices)
        assert [i.id for i in index.lookup_email("ANA@acme.io")] == ["i1"]
        assert index.lookup_email(None) == []

    def test_domain_amount_key(self, invoices):
        index = build_candidate_index(invoices)
        assert domain_amount_key("acme.io", Decimal("99.60")) == "acme.io:100"
        assert [i.id for i in index.lookup_domain_amount("acme.io", Decimal("100.2"))] == ["i2"]

    def test_amount_lookup_starts_with_own_bucket(self, invoices):
        index = build_candidate_index(invoices)
        ids = [i.id for i in index.lookup_amount(Decimal("100.00"), spread=1)]
        # bucket 100 holds i2 and i4, bucket 101 holds i3
        assert ids == ["i2", "i4", "i3"]

    def test_name_lookup_keeps_insertion_order(self, invoices):
        index = build_candidate_index(invoices)
        assert [i.id for i in index.lookup_name("ACME CORP")] == ["i1", "i4"]

    def test_name_lookup_by_containment(self, invoices):
        index = build_candidate_index(invoices)
        assert [i.id for i in index.lookup_name("Bob Stone Ltd")] == ["i2"]

    def test_short_names_need_exact_hit(self, invoices):
        index = build_candidate_index(invoices)
        assert index.lookup_name("bob") == []

    def test_names_under_three_characters_not_indexed(self):
        index = build_candidate_index([
            make_invoice("s1", customer_name="S.L."),
            make_invoice("s2", customer_name="Nuevas Tecnologias SA"),
        ])

        assert list(index.by_name) == ["nuevas tecnologias sa"]
        assert index.lookup_name("Nuevas SL") == []

    def test_invoice_without_fields_still_reachable_by_amount(self):
        index = build_candidate_index([make_invoice("bare", "10.00")])
        assert index.by_order_id == {}
        assert [i.id for i in index.lookup_amount(Decimal("10.40"))] == ["bare"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
