from dataclasses import replace

from batch_processor import ExtractionOutcome
from csv_reconciler import (
    DUPLICATE_MARKER,
    fill_shared_identifier,
    is_header_line,
    merge,
    rows_from_fragment,
)
from prompts import INVOICE_PROFILE, INVOICE_SCHEMA, RECEIPT_DETAIL_PROFILE

HEADER = "Invoice Number,Date,Amount,Currency,Merchant,Transaction Type"


def test_header_stripping_is_idempotent():
    body = "INV1,2024-01-01,5.00,USD,Shop,Card\nINV2,2024-01-02,7.00,USD,Cafe,Cash"

    with_header = rows_from_fragment(f"{HEADER}\n{body}", INVOICE_PROFILE)
    without_header = rows_from_fragment(body, INVOICE_PROFILE)

    assert with_header == without_header
    assert len(with_header) == 2


def test_header_match_ignores_case_and_spacing():
    assert is_header_line("invoice number, date,Amount ,CURRENCY,Merchant,Transaction  Type", INVOICE_SCHEMA)
    assert not is_header_line("INV1,2024-01-01,5.00,USD,Shop,Card", INVOICE_SCHEMA)


def test_single_data_line_without_header_is_one_row():
    rows = rows_from_fragment("INV9,2024-03-01,12.50,EUR,Bakery,Card", INVOICE_PROFILE)

    assert rows == [["INV9", "2024-03-01", "12.50", "EUR", "Bakery", "Card"]]


def test_header_only_reply_yields_no_rows():
    assert rows_from_fragment(HEADER, INVOICE_PROFILE) == []


def test_blank_and_fenced_replies():
    assert rows_from_fragment("", INVOICE_PROFILE) == []
    assert rows_from_fragment("\n\n  \n", INVOICE_PROFILE) == []

    fenced = f"```csv\n{HEADER}\nINV1,2024-01-01,5.00,USD,Shop,Card\n```"
    assert rows_from_fragment(fenced, INVOICE_PROFILE) == [
        ["INV1", "2024-01-01", "5.00", "USD", "Shop", "Card"],
    ]


def test_short_rows_are_padded_and_long_rows_truncated():
    rows = rows_from_fragment("INV1,2024-01-01,5.00\nA,B,C,D,E,F,G", INVOICE_PROFILE)

    assert rows[0] == ["INV1", "2024-01-01", "5.00", "", "", ""]
    assert rows[1] == ["A", "B", "C", "D", "E", "F"]


def test_quoted_field_with_comma_stays_one_field():
    rows = rows_from_fragment('INV1,2024-01-01,5.00,USD,"Smith, Jones & Co",Card', INVOICE_PROFILE)

    assert rows[0][4] == "Smith, Jones & Co"


def test_shared_invoice_number_is_filled_forward():
    fragment = "\n".join([
        HEADER,
        "INV1,2024-01-01,5.00,USD,Shop,Card",
        ",2024-01-01,8.50,USD,Shop,Card",
    ])

    table = merge([ExtractionOutcome.success("multi.png", fragment)], INVOICE_PROFILE)

    assert table.rows[1][0] == "INV1"
    assert table.rows[1][2] == "8.50"


def test_shared_identifier_not_invented_when_first_row_is_blank():
    rows = [["", "d1"], ["", "d2"], ["X", "d3"]]

    fill_shared_identifier(rows, 0)

    assert [r[0] for r in rows] == ["", "", "X"]


def test_shared_identifier_does_not_cross_files():
    outcomes = [
        ExtractionOutcome.success("a.png", "INV1,2024-01-01,5.00,USD,Shop,Card"),
        ExtractionOutcome.success("b.png", ",2024-02-01,9.00,USD,Cafe,Cash"),
    ]

    table = merge(outcomes, INVOICE_PROFILE)

    assert table.rows[1][0] == ""


def test_duplicate_across_files_flags_only_later_row():
    row = "INV1,2024-01-01,5.00,USD,Shop,Card"
    outcomes = [
        ExtractionOutcome.success("first.png", row),
        ExtractionOutcome.success("second.png", row.replace("INV1", "INV7")),
    ]

    table = merge(outcomes, INVOICE_PROFILE)

    assert len(table.rows) == 2
    assert table.rows[0][4] == "Shop"
    assert DUPLICATE_MARKER in table.rows[1][4]
    assert table.rows[1][4].startswith("Shop")


def test_duplicates_not_flagged_when_profile_disables_it():
    row = "INV1,2024-01-01,5.00,USD,Shop,Card"
    profile = replace(INVOICE_PROFILE, flag_duplicates=False)
    outcomes = [ExtractionOutcome.success("a.png", row), ExtractionOutcome.success("b.png", row)]

    table = merge(outcomes, profile)

    assert [r[4] for r in table.rows] == ["Shop", "Shop"]


def test_rows_with_empty_duplicate_key_are_not_flagged():
    outcomes = [
        ExtractionOutcome.success("a.png", "INV1,,,USD,,Card"),
        ExtractionOutcome.success("b.png", "INV2,,,USD,,Card"),
    ]

    table = merge(outcomes, INVOICE_PROFILE)

    assert [r[4] for r in table.rows] == ["", ""]


def test_failures_are_listed_not_merged():
    outcomes = [
        ExtractionOutcome.success("ok.png", "INV1,2024-01-01,5.00,USD,Shop,Card"),
        ExtractionOutcome.failure("big.png", "File too large. Maximum size is 1MB."),
        ExtractionOutcome.success("empty.png", ""),
    ]

    table = merge(outcomes, INVOICE_PROFILE)

    assert len(table.rows) == 1
    assert [e.to_dict() for e in table.errors] == [
        {"filename": "big.png", "error": "File too large. Maximum size is 1MB."},
    ]


def test_rows_follow_file_submission_order():
    outcomes = [
        ExtractionOutcome.success("a.png", "A1,2024-01-01,1.00,USD,A,Card\nA2,2024-01-01,2.00,USD,A,Card"),
        ExtractionOutcome.success("b.png", "B1,2024-01-02,3.00,USD,B,Cash"),
    ]

    table = merge(outcomes, INVOICE_PROFILE)

    assert [r[0] for r in table.rows] == ["A1", "A2", "B1"]


def test_to_csv_emits_header_once_and_quotes_only_commas():
    outcomes = [
        ExtractionOutcome.success("a.png", f'{HEADER}\nINV1,2024-01-01,5.00,USD,"Smith, Jones",Card'),
        ExtractionOutcome.success("b.png", f"{HEADER}\nINV2,2024-01-02,6.00,EUR,Cafe,Cash"),
    ]

    csv_text = merge(outcomes, INVOICE_PROFILE).to_csv()

    assert csv_text.split("\n") == [
        HEADER,
        'INV1,2024-01-01,5.00,USD,"Smith, Jones",Card',
        "INV2,2024-01-02,6.00,EUR,Cafe,Cash",
    ]


def test_empty_table_still_has_header():
    assert merge([], INVOICE_PROFILE).to_csv() == HEADER


def test_receipt_detail_profile_fills_source_filename():
    fragment = ",true,15.50,,ILS,Cafe Nuri,2025-03-15,false,778,Tel Aviv,he,\"[\"\"15.50\"\"]\",[],meals"

    table = merge([ExtractionOutcome.success("nuri.jpg", fragment)], RECEIPT_DETAIL_PROFILE)

    record = table.as_records()[0]
    assert record["source_filename"] == "nuri.jpg"
    assert record["total_amount"] == "15.50"
    assert record["all_totals"] == '["15.50"]'
    assert record["spend_category"] == "meals"
