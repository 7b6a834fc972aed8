"""
MCP tools for the circulation engine.

Each tool is a dictionary with a name, description, JSON input schema and
async handler; ``server.py`` registers every entry of ``all_tools``.
"""

from .circulation import (
    cancel_reservation,
    checkout_book,
    fulfill_reservation,
    renew_book,
    reserve_book,
    return_book,
)
from .fines import pay_fine, waive_fine

all_tools = [
    checkout_book,
    return_book,
    renew_book,
    reserve_book,
    cancel_reservation,
    fulfill_reservation,
    pay_fine,
    waive_fine,
]

__all__ = [
    "all_tools",
    "cancel_reservation",
    "checkout_book",
    "fulfill_reservation",
    "pay_fine",
    "renew_book",
    "reserve_book",
    "return_book",
    "waive_fine",
]
