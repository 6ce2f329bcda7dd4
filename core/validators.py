"""
Shared validation helpers for ChatRecall services.
"""

from __future__ import annotations

from typing import Optional

from core.config import MAX_EMBEDDING_TEXT_LENGTH
from core.errors import ValidationIssue


def validate_required_text(value: str, field: str, max_len: int) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationIssue(f"{field} must be a non-empty string", field=field, error_type="required")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_optional_text(value: Optional[str], field: str, max_len: int) -> None:
    if value is None:
        return
    if not isinstance(value, str):
        raise ValidationIssue(f"{field} must be a string", field=field, error_type="invalid_type")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_limit(value: int, field: str, max_value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationIssue(f"{field} must be an integer", field=field, error_type="invalid_type")
    if value <= 0 or value > max_value:
        raise ValidationIssue(f"{field} must be between 1 and {max_value}", field=field, error_type="out_of_range")


def validate_embedding_text(text: str) -> None:
    validate_required_text(text, "text", MAX_EMBEDDING_TEXT_LENGTH)


def validate_query_vector(vector, dim: Optional[int] = None) -> None:
    if not vector:
        raise ValidationIssue("query_vector must be a non-empty sequence", field="query_vector", error_type="required")
    if dim is not None and len(vector) != dim:
        raise ValidationIssue(
            f"query_vector must have {dim} dimensions",
            field="query_vector",
            error_type="invalid_dimensions",
        )
