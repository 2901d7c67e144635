"""
Core Business Logic
==================

Core modules for LayeredDSL processing.

Modules:
- dsl: type-expression parsing, layer loading, reference resolution and validation
"""
