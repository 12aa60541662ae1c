"""
Opaque keyset page tokens shared by the store adapters.

A token encodes the (created_at, record_id) key of the last record on a page;
the next page starts strictly after it. Keyset tokens stay valid while records
are inserted or removed between calls.
"""

from __future__ import annotations

import base64
import json
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from hybridstore.protocols import Page, Record, format_timestamp, parse_timestamp

SortKey = Tuple[datetime, str]


def encode_key(key: SortKey) -> str:
    raw = json.dumps([format_timestamp(key[0]), key[1]], separators=(",", ":"))
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def decode_key(token: str) -> SortKey:
    try:
        created_at, record_id = json.loads(base64.urlsafe_b64decode(token.encode("ascii")))
        return parse_timestamp(created_at), str(record_id)
    except (ValueError, TypeError) as e:
        raise ValueError(f"Malformed page token: {token!r}") from e


def after_key(key: SortKey, anchor: Optional[SortKey], descending: bool) -> bool:
    """Whether ``key`` comes strictly after ``anchor`` in scan order."""
    if anchor is None:
        return True
    return key < anchor if descending else key > anchor


def paginate(records: Sequence[Record], page_token: Optional[str], limit: int, descending: bool) -> Page:
    """Slice an unordered record sequence into one keyset page."""
    if limit < 1:
        raise ValueError("limit must be positive")
    anchor = decode_key(page_token) if page_token else None
    ordered: List[Record] = sorted(records, key=lambda r: r.sort_key, reverse=descending)
    remaining = [r for r in ordered if after_key(r.sort_key, anchor, descending)]
    page = remaining[:limit]
    next_token = encode_key(page[-1].sort_key) if len(remaining) > limit else None
    return Page(records=page, next_token=next_token)
