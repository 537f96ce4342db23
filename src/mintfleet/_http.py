"""HTTP status codes shared by error mapping and read retries."""

from __future__ import annotations

#: Statuses an RPC endpoint returns for overload or transient faults.
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 425, 429, 500, 502, 503, 504})
