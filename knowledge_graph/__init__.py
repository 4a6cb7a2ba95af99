"""Cross-document entity and relationship knowledge-graph engine."""

__version__ = "0.1.0"
