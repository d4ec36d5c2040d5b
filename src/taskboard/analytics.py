"""Completion-rate arithmetic and analytics payload shaping."""

from typing import Dict, Any, List


def completion_rate(assigned: int, completed: int) -> int:
    """
    Percentage of ``assigned`` that is ``completed``, rounded half up.

    Integer arithmetic avoids both float error and Python's round-half-even,
    so 1 of 8 gives 13 rather than 12. An empty set has a rate of 0.
    """
    if not assigned:
        return 0
    return (200 * completed + assigned) // (2 * assigned)


def build_analytics(totals: Dict[str, int], per_user: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Attach completion rates to the raw counts from the database."""
    return {
        "totals": {
            "assigned": totals["assigned"],
            "completed": totals["completed"],
            "completion_rate": completion_rate(totals["assigned"], totals["completed"]),
        },
        "perUser": [
            {**row, "completion_rate": completion_rate(row["assigned"], row["completed"])}
            for row in per_user
        ],
    }
