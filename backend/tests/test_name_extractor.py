"""
Unit Tests for the narration name extractor

Run with: pytest tests/test_name_extractor.py -v
"""

import re
import pytest

from reconciliation.name_extractor import (
    NameExtractor,
    NarrationRule,
    UnextractableCategory,
    default_extractor,
    is_gateway_name,
    match_customer_name,
)


class TestExtract:

    def test_domestic_transfer(self):
        assert default_extractor.extract("Transf/JOHN SMITH") == "JOHN SMITH"

    @pytest.mark.parametrize("narration", [
        "Trans/MARIA LOPEZ",
        "Trans.inm/MARIA LOPEZ",
        "Trans inm/MARIA LOPEZ",
    ])
    def test_transfer_variants(self, narration):
        assert default_extractor.extract(narration) == "MARIA LOPEZ"

    def test_us_wire_stops_at_next_label(self):
        assert default_extractor.extract("ORIG CO NAME:ACME CORP ORIG ID:123") == "ACME CORP"

    def test_us_wire_without_trailing_label(self):
        assert default_extractor.extract("ORIG CO NAME:ACME CORP") == "ACME CORP"

    def test_international_prefix(self):
        assert default_extractor.extract("MXISO HANS MEIER GMBH") == "HANS MEIER GMBH"

    def test_no_rule_matches(self):
        assert default_extractor.extract("PAYPAL TRANSFER XYZ") is None
        assert default_extractor.extract("") is None
        assert default_extractor.extract(None) is None

    def test_extract_with_rule_names_the_rule(self):
        assert default_extractor.extract_with_rule("Transf/JOHN SMITH") == ("JOHN SMITH", "transfer")


class TestCustomerName:

    def test_normalized_name_returned(self):
        assert default_extractor.extract_customer_name("Transf/José Pérez") == ("jose perez", "transfer")

    def test_gateway_posing_as_payer_is_dropped(self):
        assert default_extractor.extract_customer_name("Transf/STRIPE PAYMENTS EUROPE") is None
        assert is_gateway_name("PayPal Europe")

    def test_added_rule_is_used(self):
        extractor = NameExtractor()
        extractor.add_rule(NarrationRule("sepa", re.compile(r"^SEPA CT FROM\s+(.+)", re.IGNORECASE)))
        assert extractor.extract_customer_name("SEPA CT FROM Jane Doe") == ("jane doe", "sepa")


class TestUnextractableCategories:

    @pytest.mark.parametrize("narration,category", [
        ("PAYPAL EUROPE SARL", UnextractableCategory.PAYPAL),
        ("AMERICAN EXPRESS SETTLEMENT", UnextractableCategory.AMEX),
        ("ABONO REMESA 0012", UnextractableCategory.REMESA),
        ("GOCARDLESS LTD PAYOUT", UnextractableCategory.GOCARDLESS),
        ("STRIPE PAYOUT", UnextractableCategory.STRIPE),
        ("TRASPASO DSD GROUP", UnextractableCategory.INTERCOMPANY),
        ("CARD FEE", UnextractableCategory.OTHER),
    ])
    def test_categories(self, narration, category):
        assert default_extractor.categorise_unextractable(narration) == category


class TestMatchCustomerName:

    KNOWN = ["acme corp", "bob stone", "ana"]

    def test_exact_hit(self):
        assert match_customer_name("ACME Corp", self.KNOWN) == "acme corp"

    def test_containment_either_way(self):
        assert match_customer_name("Acme Corp International", self.KNOWN) == "acme corp"
        assert match_customer_name("stone", ["bob stone"]) == "bob stone"

    def test_short_name_without_exact_hit(self):
        assert match_customer_name("acm", self.KNOWN) is None

    def test_short_name_exact_hit(self):
        assert match_customer_name("Ana", self.KNOWN) == "ana"

    def test_short_known_name_not_matched_inside_longer_payer(self):
        known = {"sl", "nuevas tecnologias sa"}
        name = default_extractor.extract_customer_name("Transf/NUEVAS SL")[0]

        assert name == "nuevas sl"
        assert match_customer_name(name, known) is None
        assert match_customer_name("SL", known) == "sl"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
