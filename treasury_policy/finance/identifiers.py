"""
Financial Reference Identifiers — Structured, parseable finance tokens.

Every financial object the engine reasons about (invoices, contracts,
disbursements, payment runs, receipts, verification gates, token batches) is
tagged with one of these identifiers so approvals, disbursements and the
audit trail can be cross-referenced.

Forms:
    INV-<vendor>-<seq:04d>              invoice number
    CTR-<project>-<vendor>-<year>       contract number
    RUN-<YYYYMMDD>-<suffix>             payment run
    RCP-<project>-<beneficiary>-<suffix> receipt
    VG-<project>-<PHASE>-<suffix>       verification gate
    LU-<project>-<UNIT>-<suffix>        token batch
    <project>:<invoice>[:<wbs>]         memo tag
    <TYPE>-<id>                         typed finance reference

Parser policy: every ``parse_*`` raises MalformedReference on input it cannot
read. The ``is_valid_*`` predicates never raise. An absent optional field
(the WBS code of a memo tag) parses to None, which is distinct from a
malformed tag.

Suffix uniqueness: timestamp-suffixed forms take their suffix from an
IdentifierFactory. A suffix is the last six digits of the clock's epoch
milliseconds followed by a four-character base-36 counter advanced under a
lock. Two suffixes from the same factory can only be equal if they were
issued exactly a multiple of 36**4 (1,679,616) generations apart and also
landed on the same millisecond tail. Within any run of fewer than 1,679,616
generations per factory they are unique even with a frozen clock.
"""

from __future__ import annotations

import enum
import random
import re
import string
import threading
from datetime import date, datetime

from pydantic import BaseModel, ConfigDict

from treasury_policy.errors import MalformedReference
from treasury_policy.finance.clock import Clock, SystemClock

SUFFIX_COUNTER_WIDTH = 4
SUFFIX_COUNTER_SPAN = 36 ** SUFFIX_COUNTER_WIDTH
_BASE36 = string.digits + string.ascii_lowercase
_SUFFIX_RE = re.compile(r"^\d{6}[0-9a-z]{4}$")


class FinanceRefType(str, enum.Enum):
    """Closed set of types a typed finance reference may carry."""

    INVOICE = "invoice"
    CONTRACT = "contract"
    DISBURSEMENT = "disbursement"
    RECEIPT = "receipt"


# ════════════════════════════════════════════════════════════════
# Parsed forms
# ════════════════════════════════════════════════════════════════


class _Parsed(BaseModel):
    model_config = ConfigDict(frozen=True)


class MemoTag(_Parsed):
    project_id: str
    invoice_id: str
    wbs: str | None = None


class FinanceRef(_Parsed):
    type: FinanceRefType
    id: str


class InvoiceNumber(_Parsed):
    vendor_id: str
    sequence: int


class ContractNumber(_Parsed):
    project_id: str
    vendor_id: str
    year: int


class PaymentRunId(_Parsed):
    run_date: date
    suffix: str


class ReceiptId(_Parsed):
    project_id: str
    beneficiary_id: str
    suffix: str


class VerificationGateId(_Parsed):
    project_id: str
    phase: str
    suffix: str


class TokenBatchId(_Parsed):
    project_id: str
    unit_type: str
    suffix: str


# ════════════════════════════════════════════════════════════════
# Suffix factory
# ════════════════════════════════════════════════════════════════


def _base36(value: int, width: int) -> str:
    digits = []
    for _ in range(width):
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


class IdentifierFactory:
    """
    Issues collision-avoiding suffixes for timestamp-derived identifiers.

    Args:
        clock: Time source. Defaults to the system clock.
        entropy: Random source used once, to pick the counter's starting
            offset so separate processes are unlikely to share a sequence.
            Pass a seeded ``random.Random`` for reproducible output.
    """

    def __init__(
        self,
        clock: Clock | None = None,
        entropy: random.Random | None = None,
    ) -> None:
        self.clock = clock or SystemClock()
        source = entropy if entropy is not None else random.SystemRandom()
        self._counter = source.randrange(SUFFIX_COUNTER_SPAN)
        self._lock = threading.Lock()

    def suffix(self) -> str:
        with self._lock:
            millis = int(self.clock.now().timestamp() * 1000)
            sequence = self._counter
            self._counter = (self._counter + 1) % SUFFIX_COUNTER_SPAN
        return f"{millis % 1_000_000:06d}{_base36(sequence, SUFFIX_COUNTER_WIDTH)}"

    def today(self) -> date:
        return self.clock.now().date()


default_factory = IdentifierFactory()


# ════════════════════════════════════════════════════════════════
# Helpers
# ════════════════════════════════════════════════════════════════


def _component(value: str | int, name: str, separator: str = "-") -> str:
    """A token component; it must not contain the separator of its own form."""
    text = str(value).strip()
    if not text:
        raise MalformedReference(f"{name} must not be empty", field=name)
    if separator in text:
        raise MalformedReference(
            f"{name} must not contain '{separator}' (got {text!r})", field=name
        )
    return text


def _split(ref: str, prefix: str, parts: int, kind: str) -> list[str]:
    if not isinstance(ref, str):
        raise MalformedReference(f"{kind} must be a string", value=ref)
    pieces = ref.strip().split("-")
    if len(pieces) != parts or pieces[0] != prefix or not all(pieces):
        raise MalformedReference(f"Malformed {kind}: {ref!r}", value=ref)
    return pieces


def _check_suffix(suffix: str, ref: str, kind: str) -> str:
    if not _SUFFIX_RE.match(suffix):
        raise MalformedReference(f"Malformed {kind} suffix in {ref!r}", value=ref)
    return suffix


# ════════════════════════════════════════════════════════════════
# Invoice / contract numbers
# ════════════════════════════════════════════════════════════════


def generate_invoice_number(vendor_id: str | int, sequence: int) -> str:
    if isinstance(sequence, bool) or not isinstance(sequence, int) or sequence < 0:
        raise MalformedReference("Invoice sequence must be a non-negative int", sequence=sequence)
    return f"INV-{_component(vendor_id, 'vendor_id')}-{sequence:04d}"


def parse_invoice_number(ref: str) -> InvoiceNumber:
    _, vendor_id, sequence = _split(ref, "INV", 3, "invoice number")
    if not sequence.isdigit():
        raise MalformedReference(f"Malformed invoice sequence in {ref!r}", value=ref)
    return InvoiceNumber(vendor_id=vendor_id, sequence=int(sequence))


def generate_contract_number(project_id: str | int, vendor_id: str | int, year: int) -> str:
    if isinstance(year, bool) or not isinstance(year, int) or year <= 0:
        raise MalformedReference("Contract year must be a positive int", year=year)
    return (
        f"CTR-{_component(project_id, 'project_id')}-"
        f"{_component(vendor_id, 'vendor_id')}-{year}"
    )


def parse_contract_number(ref: str) -> ContractNumber:
    _, project_id, vendor_id, year = _split(ref, "CTR", 4, "contract number")
    if not year.isdigit():
        raise MalformedReference(f"Malformed contract year in {ref!r}", value=ref)
    return ContractNumber(project_id=project_id, vendor_id=vendor_id, year=int(year))


# ════════════════════════════════════════════════════════════════
# Timestamp-suffixed identifiers
# ════════════════════════════════════════════════════════════════


def generate_payment_run_id(
    run_date: date | None = None,
    factory: IdentifierFactory | None = None,
) -> str:
    factory = factory or default_factory
    run_date = run_date or factory.today()
    return f"RUN-{run_date.strftime('%Y%m%d')}-{factory.suffix()}"


def parse_payment_run_id(ref: str) -> PaymentRunId:
    _, stamp, suffix = _split(ref, "RUN", 3, "payment run id")
    try:
        run_date = datetime.strptime(stamp, "%Y%m%d").date()
    except ValueError as e:
        raise MalformedReference(f"Malformed payment run date in {ref!r}", value=ref) from e
    if len(stamp) != 8:
        raise MalformedReference(f"Malformed payment run date in {ref!r}", value=ref)
    return PaymentRunId(run_date=run_date, suffix=_check_suffix(suffix, ref, "payment run id"))


def generate_receipt_id(
    project_id: str | int,
    beneficiary_id: str | int,
    factory: IdentifierFactory | None = None,
) -> str:
    factory = factory or default_factory
    return (
        f"RCP-{_component(project_id, 'project_id')}-"
        f"{_component(beneficiary_id, 'beneficiary_id')}-{factory.suffix()}"
    )


def parse_receipt_id(ref: str) -> ReceiptId:
    _, project_id, beneficiary_id, suffix = _split(ref, "RCP", 4, "receipt id")
    return ReceiptId(
        project_id=project_id,
        beneficiary_id=beneficiary_id,
        suffix=_check_suffix(suffix, ref, "receipt id"),
    )


def generate_verification_gate_id(
    project_id: str | int,
    phase: str,
    factory: IdentifierFactory | None = None,
) -> str:
    factory = factory or default_factory
    return (
        f"VG-{_component(project_id, 'project_id')}-"
        f"{_component(phase, 'phase').upper()}-{factory.suffix()}"
    )


def parse_verification_gate_id(ref: str) -> VerificationGateId:
    _, project_id, phase, suffix = _split(ref, "VG", 4, "verification gate id")
    if phase != phase.upper():
        raise MalformedReference(f"Verification gate phase must be upper case in {ref!r}", value=ref)
    return VerificationGateId(
        project_id=project_id,
        phase=phase,
        suffix=_check_suffix(suffix, ref, "verification gate id"),
    )


def generate_token_batch_id(
    project_id: str | int,
    unit_type: str,
    factory: IdentifierFactory | None = None,
) -> str:
    factory = factory or default_factory
    return (
        f"LU-{_component(project_id, 'project_id')}-"
        f"{_component(unit_type, 'unit_type').upper()}-{factory.suffix()}"
    )


def parse_token_batch_id(ref: str) -> TokenBatchId:
    _, project_id, unit_type, suffix = _split(ref, "LU", 4, "token batch id")
    if unit_type != unit_type.upper():
        raise MalformedReference(f"Token batch unit type must be upper case in {ref!r}", value=ref)
    return TokenBatchId(
        project_id=project_id,
        unit_type=unit_type,
        suffix=_check_suffix(suffix, ref, "token batch id"),
    )


# ════════════════════════════════════════════════════════════════
# Memo tags
# ════════════════════════════════════════════════════════════════


def memo_tag(project_id: str | int, invoice_id: str | int, wbs: str | None = None) -> str:
    """Build ``project:invoice[:wbs]``; an empty WBS is omitted."""
    parts = [
        _component(project_id, "project_id", ":"),
        _component(invoice_id, "invoice_id", ":"),
    ]
    if wbs is not None and str(wbs).strip():
        parts.append(_component(wbs, "wbs", ":"))
    return ":".join(parts)


def parse_memo_tag(memo: str) -> MemoTag:
    if not isinstance(memo, str):
        raise MalformedReference("Memo tag must be a string", value=memo)
    parts = memo.strip().split(":")
    if len(parts) not in (2, 3) or not all(parts):
        raise MalformedReference(f"Malformed memo tag: {memo!r}", value=memo)
    return MemoTag(
        project_id=parts[0],
        invoice_id=parts[1],
        wbs=parts[2] if len(parts) == 3 else None,
    )


def is_valid_memo_tag(memo: str) -> bool:
    try:
        parse_memo_tag(memo)
    except MalformedReference:
        return False
    return True


# ════════════════════════════════════════════════════════════════
# Typed finance references
# ════════════════════════════════════════════════════════════════


def format_finance_ref(ref_type: FinanceRefType | str, ref_id: str | int) -> str:
    if isinstance(ref_type, FinanceRefType):
        kind = ref_type
    else:
        try:
            kind = FinanceRefType(str(ref_type).lower())
        except ValueError as e:
            raise MalformedReference(f"Unknown finance reference type: {ref_type!r}") from e
    text = str(ref_id).strip()
    if not text:
        raise MalformedReference("Finance reference id must not be empty")
    return f"{kind.value.upper()}-{text}"


def parse_finance_ref(ref: str) -> FinanceRef:
    if not isinstance(ref, str):
        raise MalformedReference("Finance reference must be a string", value=ref)
    type_part, sep, id_part = ref.strip().partition("-")
    if not sep or not id_part:
        raise MalformedReference(f"Malformed finance reference: {ref!r}", value=ref)
    try:
        kind = FinanceRefType(type_part.lower())
    except ValueError as e:
        raise MalformedReference(
            f"Unknown finance reference type {type_part!r} in {ref!r}", value=ref
        ) from e
    return FinanceRef(type=kind, id=id_part)


def is_valid_finance_ref(ref: str) -> bool:
    try:
        parse_finance_ref(ref)
    except MalformedReference:
        return False
    return True
