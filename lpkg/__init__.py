# lpkg/__init__.py
"""lpkg - package metadata pipeline and build engine for LFS-family books."""

__version__ = "0.1.0"
