"""Online rebuilding of PostgreSQL tables and indexes over caller-supplied connections, with an optional ALTER TABLE step."""

__version__ = "1.0.0"

__all__ = ["__version__"]