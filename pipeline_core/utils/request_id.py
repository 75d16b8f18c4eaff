"""
Request identifiers: PREFIX-YYYYMMDD-NNNNN-RANDOM8

The date is UTC, NNNNN is a per-process counter modulo 100000 and RANDOM8 is the first
eight hex characters of a UUID4, upper-cased. Uniqueness comes from the random part; the
counter only makes ids from one process sort roughly by creation.
"""
import itertools
import re
import threading
import uuid
from datetime import datetime, timezone

from pipeline_core.core.config import REQUEST_ID_PREFIX

_ID_PATTERN = re.compile(r"^([A-Z][A-Z0-9]*)-(\d{8})-(\d{5})-([A-Z0-9]{8})$")

_counter = itertools.count(1)
_counter_lock = threading.Lock()


def generate(prefix: str = REQUEST_ID_PREFIX) -> str:
    date = datetime.now(timezone.utc).strftime("%Y%m%d")
    with _counter_lock:
        seq = next(_counter) % 100000
    random_part = uuid.uuid4().hex[:8].upper()
    return f"{prefix}-{date}-{seq:05d}-{random_part}"


def is_valid(request_id: str, prefix: str = None) -> bool:
    if not request_id:
        return False
    match = _ID_PATTERN.match(request_id)
    if not match:
        return False
    return prefix is None or match.group(1) == prefix


def extract_date(request_id: str) -> str:
    """Returns the YYYYMMDD part of a valid request id."""
    match = _ID_PATTERN.match(request_id or "")
    if not match:
        raise ValueError(f"Invalid request id: {request_id}")
    return match.group(2)
