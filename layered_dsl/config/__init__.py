"""
Configuration Management
=======================

Environment-based configuration using Pydantic Settings.

Components:
- settings: Parser and validator settings with environment overrides
- logging: Structured logging configuration
"""
