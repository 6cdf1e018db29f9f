# Prompts for logistics invoice extraction.
# - LOGISTICS_EXTRACTION_PROMPT: master invoice plus supporting transport
#   documents, with line-item matching. Used per chunk; every chunk carries
#   the invoice header pages.
# - CHUNK_CONTEXT_NOTE: appended when the call sees only part of the document.
# - DOCUMENT_CLASSIFICATION_PROMPT: first stage of the review pipeline.

from docflow.core.exceptions import ConfigurationError

LOGISTICS_REQUIRED_FIELDS = [
    "Invoice Header (Number, Dates, Supplier, Customer, Totals)",
    "Transport Line Items from Invoice",
    "Supporting Documents (Delivery Notes, CMR, Transport Logs)",
    "Document-to-Invoice Matching",
    "Handwriting Detection on Documents",
    "Unclaimed/Unmatched Documents Identification",
]

# =============================================================================
# LOGISTICS EXTRACTION PROMPT
# =============================================================================
LOGISTICS_EXTRACTION_PROMPT = r"""
You are a data extraction and logistics auditing system. The attached PDF holds
a master invoice followed by supporting transport documents (Delivery Notes,
CMRs, Transport Logs, Weighing Slips).

Return ONLY a valid JSON object. No markdown, no commentary.

===============================================================================
## 1. PROCESS
===============================================================================
1. Invoice (leading pages): extract the header (number, dates, supplier,
   customer, totals) and every line item of the invoiced services table.
2. Supporting documents (remaining pages): identify each document and read
   recipient, destination, order numbers, delivery note numbers and dates.
   Flag documents that contain handwriting.
3. Matching: for each invoice line item, find supporting documents by
   destination and date proximity and nest them under the line item.
4. Exceptions:
   - A line item without a matching document gets match_status "Unmatched"
     and a match_reason.
   - A document that cannot be linked to a line item goes to
     unclaimed_documents.

===============================================================================
## 2. OUTPUT SCHEMA
===============================================================================
{
  "invoice_header": {
    "invoice_number": "string",
    "dates": {"issue_date": "string", "tax_date": "string", "due_date": "string"},
    "supplier": {"name": "string", "vat_id": "string"},
    "customer": {"name": "string", "vat_id": "string"},
    "totals": {
      "net_amount": number,
      "vat_amount": number,
      "total_amount_due": number,
      "currency": "string"
    }
  },
  "transport_line_items": [
    {
      "line_id": integer,
      "description": "string, exact invoice text",
      "invoice_amount": number,
      "vat_rate": "string",
      "match_status": "Matched" | "Unmatched",
      "match_reason": "string",
      "associated_documents": [
        {
          "document_type": "string",
          "document_number": "string or N/A",
          "source_page_index": integer,
          "recipient_name": "string",
          "destination_address": "string",
          "reference_numbers": {"order_number": "string", "delivery_number": "string"},
          "contains_handwriting": boolean
        }
      ]
    }
  ],
  "unclaimed_documents": [
    {
      "source_page_index": integer,
      "document_type": "string",
      "content_summary": "string",
      "reason_for_unclaimed": "string"
    }
  ],
  "present_fields": ["field types found"],
  "missing_fields": ["field types not found"],
  "confidence": number between 0.0 and 1.0
}

===============================================================================
## 3. RULES
===============================================================================
- snake_case keys only
- numbers as bare numbers, never strings
- dates as DD.MM.YYYY
- line_id values are the invoice's own line numbers so results from different
  page ranges of the same invoice can be combined
- always include present_fields, missing_fields and confidence

Information types checked:
{required_fields}

Generate the JSON response now.
"""

CHUNK_CONTEXT_NOTE = r"""
NOTE: This file is part {chunk_number} of {chunk_total} of a larger document.
The first {header_page_count} page(s) are the invoice header pages, repeated in
every part. The remaining pages are original pages {body_first} to {body_last}.
Report source_page_index values using the original page numbers. Only match
documents that appear in this part.
"""

DOCUMENT_CLASSIFICATION_PROMPT = r"""
Classify the attached document. Return ONLY:

{
  "document_type": "logistics_invoice" | "delivery_note" | "cmr" | "transport_log" | "other",
  "confidence": number between 0.0 and 1.0
}
"""

PROMPT_VARIANTS = {
    "logistics": LOGISTICS_EXTRACTION_PROMPT,
}


def build_extraction_prompt(
    variant: str = "logistics",
    chunk_number: int = None,
    chunk_total: int = None,
    header_page_count: int = 0,
    body_first: int = None,
    body_last: int = None,
) -> str:
    """Render the extraction prompt, adding chunk context for partial calls.

    Page numbers are 1-based as shown to the model.
    """
    if variant not in PROMPT_VARIANTS:
        raise ConfigurationError(f"Unknown prompt variant: {variant}")
    fields = "\n".join(f"{i}. {field}" for i, field in enumerate(LOGISTICS_REQUIRED_FIELDS, 1))
    prompt = PROMPT_VARIANTS[variant].replace("{required_fields}", fields)
    if chunk_total and chunk_total > 1:
        prompt += CHUNK_CONTEXT_NOTE.format(
            chunk_number=chunk_number,
            chunk_total=chunk_total,
            header_page_count=header_page_count,
            body_first=body_first,
            body_last=body_last,
        )
    return prompt
