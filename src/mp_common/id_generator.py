"""Prefixed random ids ("txn_3f9c...").

A transaction id is minted before its ledger row is written so that the
processor idempotency keys and intent metadata can already reference it.
"""

import uuid


def generate_id(prefix: str = "") -> str:
    return f"{prefix}{uuid.uuid4().hex}"
