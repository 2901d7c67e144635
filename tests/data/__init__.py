"""
Test Data Package
================

Sample LayeredDSL documents used across the unit and integration tests.
"""

from .sample_dsl_documents import (
    ALL_TEST_DOCUMENTS,
    get_test_document,
    get_invalid_documents,
    BILLING_DOCUMENT_YAML,
    TASKS_DOCUMENT,
    DANGLING_REFERENCE_DOCUMENT,
    CYCLIC_COMPONENTS_DOCUMENT,
    UNMAPPED_OPERATION_DOCUMENT,
    EMPTY_DOCUMENT,
)

__all__ = [
    'ALL_TEST_DOCUMENTS',
    'get_test_document',
    'get_invalid_documents',
    'BILLING_DOCUMENT_YAML',
    'TASKS_DOCUMENT',
    'DANGLING_REFERENCE_DOCUMENT',
    'CYCLIC_COMPONENTS_DOCUMENT',
    'UNMAPPED_OPERATION_DOCUMENT',
    'EMPTY_DOCUMENT',
]
