"""Library circulation engine: loans, reservations and fines over a shared pool of book copies."""

__version__ = "0.1.0"
