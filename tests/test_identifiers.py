"""
Tests for financial reference identifiers.

Validates:
- Generator/parser agreement for every identifier form
- One parser policy: MalformedReference on malformed input
- Absent WBS versus malformed memo tag
- Suffix uniqueness under a frozen clock and concurrent generation
"""

from __future__ import annotations

import random
import threading
from datetime import date, datetime, timezone

import pytest

from treasury_policy.errors import MalformedReference
from treasury_policy.finance.clock import ManualClock
from treasury_policy.finance.identifiers import (
    SUFFIX_COUNTER_SPAN,
    FinanceRefType,
    IdentifierFactory,
    format_finance_ref,
    generate_contract_number,
    generate_invoice_number,
    generate_payment_run_id,
    generate_receipt_id,
    generate_token_batch_id,
    generate_verification_gate_id,
    is_valid_finance_ref,
    is_valid_memo_tag,
    memo_tag,
    parse_contract_number,
    parse_finance_ref,
    parse_invoice_number,
    parse_memo_tag,
    parse_payment_run_id,
    parse_receipt_id,
    parse_token_batch_id,
    parse_verification_gate_id,
)


def _factory(seed: int = 7) -> IdentifierFactory:
    clock = ManualClock(datetime(2026, 3, 14, 9, 26, 53, 589000, tzinfo=timezone.utc))
    return IdentifierFactory(clock=clock, entropy=random.Random(seed))


class TestMemoTags:

    @pytest.mark.parametrize("project, invoice, wbs", [
        ("proj1", "inv7", "1.2.3"),
        ("P", "I", None),
        ("restoration42", "INV_0009", "WBS/4"),
    ])
    def test_parse_recovers_fields(self, project, invoice, wbs):
        parsed = parse_memo_tag(memo_tag(project, invoice, wbs))
        assert (parsed.project_id, parsed.invoice_id, parsed.wbs) == (project, invoice, wbs)

    def test_absent_wbs_is_none(self):
        assert memo_tag("p", "i") == "p:i"
        assert parse_memo_tag("p:i").wbs is None

    @pytest.mark.parametrize("bad", ["", "p", "p::w", ":i", "a:b:c:d", "p:i:"])
    def test_malformed_raises(self, bad):
        with pytest.raises(MalformedReference):
            parse_memo_tag(bad)
        assert is_valid_memo_tag(bad) is False

    def test_component_with_separator_refused(self):
        with pytest.raises(MalformedReference):
            memo_tag("p:x", "i")

    def test_dashed_components_round_trip(self):
        project = "3f2b8c1e-7a4d-4e21-9c0b-5d6f7a8b9c0d"
        parsed = parse_memo_tag(memo_tag(project, "inv-7", "1.2-a"))
        assert (parsed.project_id, parsed.invoice_id, parsed.wbs) == (project, "inv-7", "1.2-a")
        assert is_valid_memo_tag(f"{project}:inv-7")

    def test_predicate_never_raises(self):
        assert is_valid_memo_tag(None) is False  # type: ignore[arg-type]
        assert is_valid_memo_tag("p:i:w") is True


class TestFinanceRefs:

    def test_format_and_parse(self):
        ref = format_finance_ref(FinanceRefType.INVOICE, 42)
        assert ref == "INVOICE-42"
        parsed = parse_finance_ref(ref)
        assert parsed.type == FinanceRefType.INVOICE
        assert parsed.id == "42"

    def test_type_from_string(self):
        assert format_finance_ref("contract", "c9") == "CONTRACT-c9"

    def test_id_may_contain_dashes(self):
        parsed = parse_finance_ref("DISBURSEMENT-RUN-20260314-000001abcd")
        assert parsed.type == FinanceRefType.DISBURSEMENT
        assert parsed.id == "RUN-20260314-000001abcd"

    @pytest.mark.parametrize("bad", ["", "INVOICE", "INVOICE-", "PAYMENT-1", "-1"])
    def test_malformed(self, bad):
        with pytest.raises(MalformedReference):
            parse_finance_ref(bad)
        assert is_valid_finance_ref(bad) is False

    def test_unknown_type_refused_on_format(self):
        with pytest.raises(MalformedReference):
            format_finance_ref("refund", "1")


class TestCompositeIdentifiers:

    def setup_method(self):
        self.factory = _factory()

    def test_invoice_number(self):
        ref = generate_invoice_number("vendor9", 7)
        assert ref == "INV-vendor9-0007"
        parsed = parse_invoice_number(ref)
        assert (parsed.vendor_id, parsed.sequence) == ("vendor9", 7)

    def test_contract_number(self):
        ref = generate_contract_number("p1", "v2", 2026)
        assert ref == "CTR-p1-v2-2026"
        parsed = parse_contract_number(ref)
        assert (parsed.project_id, parsed.vendor_id, parsed.year) == ("p1", "v2", 2026)

    def test_payment_run_uses_clock_date(self):
        ref = generate_payment_run_id(factory=self.factory)
        assert ref.startswith("RUN-20260314-")
        assert parse_payment_run_id(ref).run_date == date(2026, 3, 14)

    def test_receipt(self):
        ref = generate_receipt_id("p1", "b7", factory=self.factory)
        parsed = parse_receipt_id(ref)
        assert (parsed.project_id, parsed.beneficiary_id) == ("p1", "b7")

    def test_verification_gate_phase_upper(self):
        ref = generate_verification_gate_id("p1", "planting", factory=self.factory)
        assert ref.split("-")[2] == "PLANTING"
        parsed = parse_verification_gate_id(ref)
        assert (parsed.project_id, parsed.phase) == ("p1", "PLANTING")

    def test_token_batch(self):
        ref = generate_token_batch_id("p1", "acre", factory=self.factory)
        parsed = parse_token_batch_id(ref)
        assert (parsed.project_id, parsed.unit_type) == ("p1", "ACRE")

    def test_suffix_has_millisecond_tail(self):
        suffix = self.factory.suffix()
        millis = int(self.factory.clock.now().timestamp() * 1000)
        assert suffix[:6] == f"{millis % 1_000_000:06d}"
        assert len(suffix) == 10

    @pytest.mark.parametrize("bad", [
        "RUN-2026031-000001abcd",
        "RUN-20261340-000001abcd",
        "RUN-20260314-short",
        "RCP-p1-000001abcd",
        "VG-p1-planting-000001abcd",
        "LU-p1-ACRE-000001ABCD",
        "INV-v-seven",
    ])
    def test_malformed_composites(self, bad):
        parsers = [
            parse_payment_run_id, parse_receipt_id, parse_verification_gate_id,
            parse_token_batch_id, parse_invoice_number,
        ]
        for parser in parsers:
            with pytest.raises(MalformedReference):
                parser(bad)

    def test_generator_refuses_separator_in_component(self):
        with pytest.raises(MalformedReference):
            generate_receipt_id("p-1", "b", factory=self.factory)


class TestSuffixUniqueness:

    def test_unique_under_frozen_clock(self):
        factory = _factory()
        suffixes = {factory.suffix() for _ in range(20_000)}
        assert len(suffixes) == 20_000

    def test_unique_under_concurrent_generation(self):
        factory = _factory()
        results: list[str] = []
        lock = threading.Lock()

        def worker():
            local = [generate_payment_run_id(factory=factory) for _ in range(2_000)]
            with lock:
                results.extend(local)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(results) == len(set(results)) == 16_000

    def test_counter_wraps_after_documented_bound(self):
        """With a frozen clock, the first repeat is exactly 36**4 generations later."""
        factory = _factory()
        first = factory.suffix()
        factory._counter = (factory._counter + SUFFIX_COUNTER_SPAN - 2) % SUFFIX_COUNTER_SPAN
        assert factory.suffix() != first
        assert factory.suffix() == first

    def test_seeded_entropy_is_reproducible(self):
        assert _factory(3).suffix() == _factory(3).suffix()
