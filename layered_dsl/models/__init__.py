"""
Data Models
===========

Pydantic models for the LayeredDSL document model and diagnostics.
"""
