"""
Unit Tests for the repair pass and the false-positive sweep

Run with: pytest tests/test_repair.py -v
"""

import pytest
from datetime import date
from decimal import Decimal

from reconciliation.models import CorrectionCategory
from reconciliation.services.repair_service import (
    ExtractLayout,
    RepairService,
    build_expected_map,
    classify_mismatch,
    compare_to_extract,
    load_ledger_extract,
    parse_ledger_extract,
    repair_key,
)
from helpers import FakeRepository, make_settings, make_transaction, make_writer

HEADER = "Group;Sub Group;Amount;Currency;Benefit Date;Supplier;Description"

EXTRACT = [
    HEADER,
    "Opex;201.1 Office;-;EUR;05/03/2025;Landlord;Office rent March",
    "Opex;202.3 Software;(1.234,56);EUR;06/03/2025;Vendor;Licence credit note",
    "Opex;203.0 Travel;4.000,50;EUR;07/03/2025;Airline;Team offsite flights",
    "Opex;204.1 Legal;150,00;EUR;08/03/2025;Firm;Contract review",
    "Budget;201.1 Office;999,00;EUR;05/03/2025;;Budget line",
    "Opex;No code here;10,00;EUR;05/03/2025;;Uncoded",
    "Opex;205.5 Misc;abc;EUR;05/03/2025;;Unreadable amount",
    "Opex;205.5 Misc;10,00;EUR;2025-03-05;;Unreadable date",
]


def ledger_row(id, code, amount, day, description):
    return make_transaction(
        id, source="ledger-actuals", amount=amount, day=day,
        description=description, financial_account_code=code,
    )


class TestParseExtract:

    def test_rows_skips_and_rejects(self):
        extract = parse_ledger_extract(EXTRACT)

        assert [r.account_code for r in extract.rows] == ["201.1", "202.3", "203.0", "204.1"]
        assert [r.amount for r in extract.rows] == [
            Decimal("0"), Decimal("-1234.56"), Decimal("4000.50"), Decimal("150.00"),
        ]
        assert extract.rows[0].date == date(2025, 3, 5)
        assert extract.skipped == 2
        assert extract.rejected == 2

    def test_custom_skip_groups(self):
        extract = parse_ledger_extract(EXTRACT, ExtractLayout(skip_groups=()))
        assert "Budget line" in [r.description for r in extract.rows]

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "extract.csv"
        path.write_text("﻿" + "\n".join(EXTRACT) + "\n", encoding="utf-8")

        extract = load_ledger_extract(str(path))
        assert len(extract.rows) == 4

    def test_expected_map_keys_on_description_prefix(self):
        extract = parse_ledger_extract(EXTRACT)
        expected = build_expected_map(extract.rows)
        key = repair_key("203.0", date(2025, 3, 7), "team   offsite flights")
        assert expected[key] == [Decimal("4000.50")]


class TestClassification:

    @pytest.mark.parametrize("current,expected,category", [
        ("-50.00", "0", CorrectionCategory.PHANTOM_NEGATIVE),
        ("50.00", "0", CorrectionCategory.PHANTOM_POSITIVE),
        ("0", "-1234.56", CorrectionCategory.MISSING_VALUE),
        ("400.05", "4000.50", CorrectionCategory.WRONG_VALUE),
        ("150.00", "150", None),
    ])
    def test_categories(self, current, expected, category):
        assert classify_mismatch(Decimal(current), Decimal(expected)) == category


class TestCompare:

    def test_all_four_categories(self):
        extract = parse_ledger_extract(EXTRACT + [
            "Opex;206.0 Fees;-;EUR;09/03/2025;;Bank fees",
        ])
        records = [
            ledger_row("r1", "201.1", "-300.00", date(2025, 3, 5), "OFFICE RENT MARCH"),
            ledger_row("r2", "202.3", "0", date(2025, 3, 6), "Licence credit note"),
            ledger_row("r3", "203.0", "400.05", date(2025, 3, 7), "Team offsite flights"),
            ledger_row("r4", "204.1", "150.00", date(2025, 3, 8), "Contract review"),
            ledger_row("r5", "206.0", "12.00", date(2025, 3, 9), "Bank fees"),
            # Same date and description, different account: not compared
            ledger_row("r6", "299.9", "-300.00", date(2025, 3, 5), "Office rent March"),
        ]

        comparison = compare_to_extract(records, build_expected_map(extract.rows))
        categories = {c.transaction_id: c.category for c in comparison.corrections}

        assert categories == {
            "r1": CorrectionCategory.PHANTOM_NEGATIVE,
            "r2": CorrectionCategory.MISSING_VALUE,
            "r3": CorrectionCategory.WRONG_VALUE,
            "r5": CorrectionCategory.PHANTOM_POSITIVE,
        }
        assert comparison.in_agreement == 1
        assert comparison.records_without_extract_row == 1

    def test_exact_amounts_pair_first(self):
        extract = parse_ledger_extract([
            HEADER,
            "Opex;201.1 Office;100,00;EUR;05/03/2025;;Cleaning",
            "Opex;201.1 Office;200,00;EUR;05/03/2025;;Cleaning",
        ])
        records = [
            ledger_row("r1", "201.1", "150.00", date(2025, 3, 5), "Cleaning"),
            ledger_row("r2", "201.1", "100.00", date(2025, 3, 5), "Cleaning"),
        ]

        comparison = compare_to_extract(records, build_expected_map(extract.rows))

        assert comparison.in_agreement == 1
        assert len(comparison.corrections) == 1
        assert comparison.corrections[0].transaction_id == "r1"
        assert comparison.corrections[0].expected_amount == Decimal("200.00")

    def test_uncoded_records_counted(self):
        records = [make_transaction("r1", source="ledger-actuals")]
        assert compare_to_extract(records, {}).uncoded_records == 1


class TestRepairService:

    @pytest.fixture
    def repo(self):
        return FakeRepository([
            ledger_row("r1", "201.1", "-300.00", date(2025, 3, 5), "Office rent March"),
            ledger_row("r2", "202.3", "0", date(2025, 3, 6), "Licence credit note"),
            ledger_row("r3", "204.1", "150.00", date(2025, 3, 8), "Contract review"),
        ])

    @pytest.fixture
    def service(self, repo):
        return RepairService(settings=make_settings(), repository=repo, writer=make_writer(repo))

    @pytest.mark.asyncio
    async def test_dry_run_reports_without_writing(self, service, repo):
        report = await service.run_repair(parse_ledger_extract(EXTRACT), dry_run=True)

        assert report.by_category == {"phantom_negative": 1, "missing_value": 1}
        assert report.impact_by_account == {
            "201.1": {"count": 1, "impact": "300.00"},
            "202.3": {"count": 1, "impact": "-1234.56"},
        }
        assert repo.writes == 0
        assert repo.leases_taken == []
        assert repo.transactions["r1"].amount == Decimal("-300.00")

    @pytest.mark.asyncio
    async def test_apply_corrects_in_place(self, service, repo):
        report = await service.run_repair(parse_ledger_extract(EXTRACT), dry_run=False)

        assert report.write.written == 2
        assert len(repo.transactions) == 3
        corrected = repo.transactions["r1"]
        assert corrected.amount == Decimal("0")
        assert corrected.metadata.corrected_from == Decimal("-300.00")
        assert corrected.metadata.correction_category == "phantom_negative"
        assert corrected.metadata.corrected_at is not None
        assert repo.transactions["r2"].amount == Decimal("-1234.56")

    @pytest.mark.asyncio
    async def test_report_dict(self, service):
        report = await service.run_repair(parse_ledger_extract(EXTRACT), dry_run=True)
        data = report.to_dict(sample_size=1)

        assert data["corrections"] == 2
        assert data["extract_rows"] == 4
        assert data["extract_rejected"] == 2
        assert len(data["sample"]) == 1


class TestSweep:

    @pytest.fixture
    def repo(self):
        return FakeRepository([
            make_transaction("b1", source="bankinter-eur", amount="900.00", day=date(2025, 3, 20),
                             reconciled=True, disbursement_date="2025-03-01", match_type="disbursement",
                             payment_source="stripe-eur"),
            make_transaction("b2", source="bankinter-eur", amount="500.00", day=date(2025, 3, 20),
                             reconciled=True, disbursement_date="2025-03-10", match_type="disbursement"),
            make_transaction("b3", source="bankinter-eur", amount="70.00", day=date(2025, 3, 20),
                             reconciled=True, match_type="disbursement"),
            make_transaction("b4", source="bankinter-eur", amount="40.00", day=date(2025, 3, 20),
                             reconciled=True, financial_account_code="101.1"),
        ])

    @pytest.fixture
    def service(self, repo):
        return RepairService(settings=make_settings(), repository=repo, writer=make_writer(repo))

    @pytest.mark.asyncio
    async def test_only_rows_beyond_limit_are_reset(self, service, repo):
        report = await service.sweep_false_positives(dry_run=False)

        assert [c.transaction_id for c in report.candidates] == ["b1", "b3"]
        assert report.candidates[0].day_gap == 19
        assert repo.transactions["b1"].reconciled is False
        assert repo.transactions["b1"].metadata.payment_source is None
        assert repo.transactions["b1"].metadata.disbursement_date is None
        assert repo.transactions["b2"].reconciled is True
        assert repo.transactions["b4"].reconciled is True

    @pytest.mark.asyncio
    async def test_custom_limit_dry_run(self, service, repo):
        report = await service.sweep_false_positives(dry_run=True, max_days=5)

        assert [c.transaction_id for c in report.candidates] == ["b1", "b2", "b3"]
        assert report.to_dict()["reset_amount"] == "1470.00"
        assert repo.writes == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
