"""
LayeredDSL
==========

Parser and cross-referential validator for LayeredDSL, a layered YAML
language describing software systems conceptually.

This package provides:
- Type-expression parsing for field, parameter and output types
- Per-layer loaders building a typed, immutable document model
- Cross-layer reference resolution and dependency cycle detection
- Diagnostic reporting with categories, severities and source locations
"""

__version__ = "1.0.0"
__author__ = "LayeredDSL Team"
