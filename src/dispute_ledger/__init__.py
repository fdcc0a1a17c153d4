"""
Dispute Ledger - evidence integrity and dispute case lifecycle.

Parties to a rental agreement submit evidence references (lease terms,
payment receipts, messages, maintenance tickets). A dispute case commits a
chosen evidence subset to a single Merkle root, is anchored to immutable
storage, and moves through pending -> resolved / expired.
"""

__version__ = "0.1.0"
