"""
DSL Processing Module
====================

LayeredDSL parsing, resolution and validation.

Components:
- type_parser: type-expression strings to typed ASTs
- symbols: namespaced symbol table shared by the layer loaders
- loaders: per-layer conversion of raw YAML subtrees into typed entities
- shapes: Cerberus shape rules for raw layer items
- resolver: cross-layer reference resolution and relationship inference
- graph: dependency graphs and cycle detection
- validator: orchestration of the whole pipeline
- parser: YAML / JSON content front end
"""
