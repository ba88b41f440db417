"""
prompts.py

Extraction profiles: one CSV schema paired with the prompt that asks Gemini
for it. Exactly one profile is selected at startup (config.EXTRACTION_PROFILE)
and shared by the AI client, the scheduler and the reconciler.
"""

from dataclasses import dataclass, replace
from datetime import date
from typing import Optional

# ── Profile type ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ExtractionProfile:
    name: str
    schema: tuple[str, ...]
    prompt: str
    # Field copied from a file's first row into later rows that leave it empty.
    id_field: Optional[str] = None
    # Rows sharing these fields across the batch are flagged as duplicates.
    duplicate_key: tuple[str, ...] = ()
    duplicate_marker_field: Optional[str] = None
    flag_duplicates: bool = False
    # Field filled with the uploaded file's name when the model leaves it empty.
    filename_field: Optional[str] = None

    @property
    def header(self) -> str:
        return ",".join(self.schema)

    def render_prompt(self, today: Optional[date] = None) -> str:
        today = today or date.today()
        return self.prompt.replace("{current_year}", str(today.year))


# ── Invoice profile (default) ──────────────────────────────────────────────────

INVOICE_SCHEMA = (
    "Invoice Number", "Date", "Amount", "Currency", "Merchant", "Transaction Type",
)

INVOICE_PROMPT = """You are a deterministic receipt data extractor. Return only a CSV that matches the exact schema and column order below. Do not include explanations, code fences, JSON, or any extra text. Output the CSV only.

Schema

CSV header and order must be exactly:
Invoice Number,Date,Amount,Currency,Merchant,Transaction Type

Field definitions

Invoice Number: Receipt number, invoice ID, transaction reference, or order number EXTRACTED FROM THE DOCUMENT. Never invent or generate invoice numbers. If no invoice number is visible, leave the field empty. If several rows belong to the same invoice, use the same invoice number for all of them.

Date: Transaction date in YYYY-MM-DD. If only month and year are present, use the first day of that month. If both order and payment dates appear, use the payment date. Leave blank if unknown.

Amount: Final amount paid as a positive decimal with a period for decimals. Include tax and tip if they are part of the final total. If the document indicates a refund or return, make the amount negative.

Currency: ISO 4217 code in uppercase. If the receipt shows a symbol, map it to the likely ISO code. If multiple currencies appear, choose the currency of the charged total. Leave blank if unknown.

Merchant: Merchant or brand name, normalized by removing legal suffixes (Inc, LLC, Ltd, GmbH). Keep the primary brand name.

Transaction Type: One of only these values: Card, Cash, Wire, Transfer, Invoice, Refund, Credit, Debit, Other.

Map examples:
Visa, Mastercard, Amex, credit card, POS card slip -> Card
Cash, paid in cash -> Cash
Bank transfer, ACH, SEPA, wire -> Wire
Internal account transfer -> Transfer
Invoice to be paid or invoice paid later -> Invoice
Refund receipt or return processed -> Refund
Store credit issued -> Credit
Debit card -> Debit
Unclear -> Other

Extraction rules

One row per distinct receipt or transaction. If a file contains multiple receipts, output one row per receipt.
Prefer "Total" or "Amount paid" for Amount. If a final total exists, do not recompute from subtotal and tax.
Strip currency symbols and thousand separators in Amount. Keep two decimal places when present.
Normalize dates to YYYY-MM-DD.
If authorization and settlement differ, use the settled amount.
If multiple currencies appear with a conversion, choose the currency actually charged.
If payment instrument is unclear but a card brand or last 4 digits appear, set Transaction Type to Card.
If the file is a quote, pro forma, or only a shopping cart with no payment, do not output a row.
If a field is truly missing, leave the cell empty. Do not invent values.
Do not add or remove columns. Do not reorder columns. Include the header exactly once.

Output format

Return only the CSV.
Use commas as separators. No trailing commas.
Do not wrap values in quotes unless a field contains a comma. Dates and amounts should not be quoted."""

INVOICE_PROFILE = ExtractionProfile(
    name="invoice",
    schema=INVOICE_SCHEMA,
    prompt=INVOICE_PROMPT,
    id_field="Invoice Number",
    duplicate_key=("Merchant", "Date", "Amount"),
    duplicate_marker_field="Merchant",
    flag_duplicates=True,
)


# ── Receipt-detail profile ─────────────────────────────────────────────────────

SPEND_CATEGORIES = (
    "meals", "transportation", "lodging", "fuel",
    "supplies", "entertainment", "utilities", "other",
)

RECEIPT_DETAIL_SCHEMA = (
    "source_filename", "is_receipt", "total_amount", "vat_amount",
    "currency_ISO_4217", "merchant_name_localized", "date_ISO_8601",
    "is_month_explicit", "receipt_id", "merchant_address",
    "document_language_ISO_639", "all_totals", "all_dates", "spend_category",
)

_CATEGORY_LIST = ", ".join(SPEND_CATEGORIES)

RECEIPT_DETAIL_PROMPT = f"""Extract data from this receipt/invoice. Handle receipts in any language (Hebrew, English, etc.) and any format (retail receipts, hotel invoices, digital receipts, etc.).

CSV Header (exact order):
{",".join(RECEIPT_DETAIL_SCHEMA)}

Field rules:
- source_filename: leave empty, it is filled in by the caller
- is_receipt: true if this is a receipt or invoice, false otherwise
- total_amount: numeric with dot as decimal separator
- vat_amount: numeric with dot as decimal separator, empty if not shown
- currency_ISO_4217: ISO 4217 code (USD, EUR, GBP, ILS, etc.)
- merchant_name_localized: merchant name in its original script/language
- date_ISO_8601: YYYY-MM-DD or YYYY-MM-DDThh:mm, assume {{current_year}} if no year is shown
- is_month_explicit: true if the date uses a textual month like "March", false if fully numeric
- receipt_id: receipt/invoice number
- merchant_address: full address as shown
- document_language_ISO_639: ISO 639 language code (en, he, fr, es, etc.)
- all_totals: JSON array of every total amount found, as strings, e.g. ["15.50","17.25"]
- all_dates: JSON array of every ISO 8601 date found, e.g. ["2025-03-15","2025-03-16"]
- spend_category: one of [{_CATEGORY_LIST}]

Special instructions:
- For Hebrew receipts: keep the Hebrew text as-is for merchant_name_localized
- For hotel invoices: use "lodging" as spend_category
- For retail receipts: choose spend_category from the purchased items
- Handle different date formats (DD/MM/YYYY, MM/DD/YYYY, etc.)
- Extract VAT amounts even if shown as percentages
- Quote any field that contains a comma

Return format:
Output only the CSV text with the header and one row per receipt. No markdown, no code fences, no explanations."""

RECEIPT_DETAIL_PROFILE = ExtractionProfile(
    name="receipt_detail",
    schema=RECEIPT_DETAIL_SCHEMA,
    prompt=RECEIPT_DETAIL_PROMPT,
    id_field="receipt_id",
    duplicate_key=("merchant_name_localized", "date_ISO_8601", "total_amount"),
    duplicate_marker_field="merchant_name_localized",
    flag_duplicates=False,
    filename_field="source_filename",
)


PROFILES: dict[str, ExtractionProfile] = {
    INVOICE_PROFILE.name:        INVOICE_PROFILE,
    RECEIPT_DETAIL_PROFILE.name: RECEIPT_DETAIL_PROFILE,
}


def get_profile(name: str, flag_duplicates: Optional[bool] = None) -> ExtractionProfile:
    """Look up a profile by name, optionally overriding its duplicate flag."""
    try:
        profile = PROFILES[name]
    except KeyError:
        raise ValueError(
            f"Unknown extraction profile '{name}'. "
            f"Choose one of: {', '.join(sorted(PROFILES))}."
        ) from None

    if flag_duplicates is not None and flag_duplicates != profile.flag_duplicates:
        profile = replace(profile, flag_duplicates=flag_duplicates)
    return profile
