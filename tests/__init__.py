"""
Test Suite
==========

Test suite matching the layered_dsl/ package structure.

Test Categories:
- unit: Unit tests for individual components
- integration: End-to-end tests from YAML text to document model
"""
