"""Shared utility functions for blueprints.

get_or_404:          tuple-return lookup (NOT abort)
parse_date:          returns None on bad input
parse_date_input:    raises ValueError on bad input
parse_expected_version: body field or If-Match header → int | None
"""
from datetime import date, datetime

from flask import jsonify, request

from app.models import db


def get_or_404(model, pk, label=None):
    """Fetch a model instance by primary key or return a 404 error tuple.

    - Success: (obj, None)
    - Failure: (None, (jsonify_response, 404))

        obj, err = get_or_404(Notification, nid)
        if err:
            return err
    """
    label = label or model.__name__
    obj = db.session.get(model, pk)
    if not obj:
        return None, (jsonify({"error": f"{label} not found", "code": "ERR_NOT_FOUND"}), 404)
    return obj, None


def parse_date(value):
    """Parse a date string (ISO or DD/MM/YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD/MM/YYYY (Colombian day-first format)
    """
    if not value:
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d/%m/%Y").date()
    except (ValueError, TypeError):
        return None


def parse_date_input(value):
    """Parse a date string, raising ValueError on bad input."""
    if not value:
        return None
    if isinstance(value, date):
        return value
    parsed = parse_date(value)
    if parsed is None:
        raise ValueError("Invalid date format. Use YYYY-MM-DD or DD/MM/YYYY.")
    return parsed


def parse_expected_version(data=None):
    """Optimistic-lock version from ``expected_version`` or ``If-Match``.

    Accepts ``If-Match: 3`` and ``If-Match: "3"`` (quoted ETag form).
    Returns None when absent.

    Raises:
        ValueError: the supplied value is not an integer.
    """
    raw = (data or {}).get("expected_version")
    if raw is None:
        raw = request.headers.get("If-Match")
        if raw is not None:
            raw = raw.strip().removeprefix("W/").strip('"')
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool):
        raise ValueError("expected_version must be an integer")
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError("expected_version must be an integer") from exc
