"""Prompt text and strict response formats for the categorization service.

Each of the three service operations gets:

- system instructions (short, stable strings);
- user content that embeds its payload as JSON between ``BEGIN_<NAME>_JSON``
  and ``END_<NAME>_JSON`` markers;
- a strict JSON Schema ``response_format`` for the OpenAI Responses API.

Payload serialization is deterministic (fixed key order, no sorting of the
caller's items) so identical inputs produce identical requests.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

from openai.types.responses.response_format_text_json_schema_config_param import (
    ResponseFormatTextJSONSchemaConfigParam,
)

from .models import ROLES, STANDARD_CATEGORY_LABELS, MerchantQuery

COLUMNS_BLOCK = "COLUMNS"
CATEGORIES_BLOCK = "CATEGORIES"
MERCHANTS_BLOCK = "MERCHANTS"


def embed_json(block: str, payload: Any) -> str:
    """Wrap ``payload`` as JSON between the block's BEGIN/END markers."""

    body = json.dumps(payload, ensure_ascii=False)
    return f"BEGIN_{block}_JSON\n{body}\nEND_{block}_JSON"


def _taxonomy_line() -> str:
    return "Allowed categories: " + ", ".join(STANDARD_CATEGORY_LABELS) + "."


# ---------------------------------------------------------------------------
# classify_columns
# ---------------------------------------------------------------------------


def build_columns_instructions() -> str:
    return (
        "You map the columns of a bank statement CSV export to semantic roles. "
        "Only ever answer with header names copied exactly from the supplied header "
        "list, or null. Never invent or rename columns. Output JSON only that "
        "conforms to the specified schema."
    )


def build_columns_user_content(headers: Sequence[str], sample_row: Sequence[str]) -> str:
    payload = {"headers": list(headers), "sample_row": list(sample_row)}
    return (
        "Roles:\n"
        "- date: the transaction or posting date\n"
        "- merchant: the free-text description, payee, or memo\n"
        "- amount: a single signed amount column (expenses negative)\n"
        "- debit: money-out column when the file splits amounts in two\n"
        "- credit: money-in column when the file splits amounts in two\n"
        "- category: the bank's own category label, if any\n"
        "Use either amount or the debit/credit pair, not both. Use null when no "
        "column fits a role.\n\n" + embed_json(COLUMNS_BLOCK, payload)
    )


def build_columns_response_format(
    headers: Sequence[str],
) -> ResponseFormatTextJSONSchemaConfigParam:
    # enum keeps a well-behaved model on the literal header set; the caller
    # still validates, since the schema is advice, not a guarantee.
    choices: list[str | None] = [*dict.fromkeys(headers), None]
    role_schema = {"type": ["string", "null"], "enum": choices}
    return {
        "type": "json_schema",
        "name": "column_roles",
        "schema": {
            "type": "object",
            "properties": {role: role_schema for role in ROLES},
            "required": list(ROLES),
            "additionalProperties": False,
        },
        "strict": True,
    }


# ---------------------------------------------------------------------------
# standardize_categories
# ---------------------------------------------------------------------------


def build_standardize_instructions() -> str:
    return (
        "You translate bank-provided transaction category labels into a fixed "
        "budgeting taxonomy. Choose exactly one allowed category per label. Never "
        "invent categories. Output JSON only that conforms to the specified schema."
    )


def build_standardize_user_content(labels: Sequence[str]) -> str:
    return (
        _taxonomy_line()
        + "\nReturn one mapping per input label, echoing the label verbatim in "
        "'source'.\n\n"
        + embed_json(CATEGORIES_BLOCK, list(labels))
    )


def build_standardize_response_format() -> ResponseFormatTextJSONSchemaConfigParam:
    return {
        "type": "json_schema",
        "name": "category_mappings",
        "schema": {
            "type": "object",
            "properties": {
                "mappings": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "source": {"type": "string"},
                            "category": {
                                "type": "string",
                                "enum": list(STANDARD_CATEGORY_LABELS),
                            },
                        },
                        "required": ["source", "category"],
                        "additionalProperties": False,
                    },
                }
            },
            "required": ["mappings"],
            "additionalProperties": False,
        },
        "strict": True,
    }


# ---------------------------------------------------------------------------
# categorize_merchants
# ---------------------------------------------------------------------------


def serialize_merchant_batch(items: Sequence[MerchantQuery]) -> list[dict[str, Any]]:
    """Batch-relative ``idx`` plus the fields the model sees, in fixed order."""

    return [
        {
            "idx": i,
            "merchant": item.signature,
            "amount": f"{item.amount:.2f}",
            "recent": list(item.context),
        }
        for i, item in enumerate(items)
    ]


def build_merchants_instructions() -> str:
    return (
        "You categorize bank transactions by merchant for a personal budget. "
        "Choose exactly one allowed category per item. Negative amounts are "
        "expenses and positive amounts are income. Never invent categories. "
        "Output JSON only that conforms to the specified schema."
    )


def build_merchants_user_content(items: Sequence[MerchantQuery]) -> str:
    return (
        _taxonomy_line()
        + "\n'recent' lists merchants categorized just before this batch as "
        "'merchant: category'; use it only to disambiguate.\n"
        "Return one result per item with the same idx.\n\n"
        + embed_json(MERCHANTS_BLOCK, serialize_merchant_batch(items))
    )


def build_merchants_response_format() -> ResponseFormatTextJSONSchemaConfigParam:
    return {
        "type": "json_schema",
        "name": "merchant_categories",
        "schema": {
            "type": "object",
            "properties": {
                "results": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "idx": {"type": "integer"},
                            "category": {
                                "type": "string",
                                "enum": list(STANDARD_CATEGORY_LABELS),
                            },
                        },
                        "required": ["idx", "category"],
                        "additionalProperties": False,
                    },
                }
            },
            "required": ["results"],
            "additionalProperties": False,
        },
        "strict": True,
    }
