from __future__ import annotations

import math
from typing import Optional

# Fixed surcharges applied where no delegate reports real usage
NO_FLOW_TOKEN_OVERHEAD = 20
ESTIMATE_TOKEN_OVERHEAD = 20
ESTIMATE_NO_FLOW_OVERHEAD = 50
ERROR_NOMINAL_TOKENS = 10
DELEGATE_ERROR_NOMINAL_TOKENS = 15


def estimate_token_count(text: str) -> int:
    """Character based token estimate, one token per four characters.

    Deliberately simple so token metrics can be reproduced from the message and
    response alone.
    """

    if not text:
        return 0
    return math.ceil(len(text) / 4)


def estimate_turn_tokens(
    message: str, response: str, nodes_visited: int, *, per_hop_overhead: int = 5
) -> int:
    """Tokens charged for a turn whose nodes reported no usage of their own."""

    return (
        estimate_token_count(message)
        + estimate_token_count(response)
        + max(0, nodes_visited) * per_hop_overhead
    )


def estimate_flow_tokens(message: str, node_count: Optional[int]) -> int:
    """Pre-flight estimate for a message against a flow of ``node_count`` nodes.

    Larger flows scale the base estimate up to 1.5x. ``None`` means the tenant
    has no flow and a flat surcharge applies instead.
    """

    base = estimate_token_count(message)
    if node_count is None:
        return base + ESTIMATE_NO_FLOW_OVERHEAD
    complexity = min(1.5, 1 + node_count / 100)
    return math.ceil(base * complexity) + ESTIMATE_TOKEN_OVERHEAD
