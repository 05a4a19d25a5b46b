"""RowQueue core: relational job storage primitives."""
__version__ = "0.1.0"
