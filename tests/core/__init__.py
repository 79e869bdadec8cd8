"""Tests for scruv core structures.

This package contains tests for the container data model:
- ScContainer: Top-level container with cell metadata and assays
- Assay: Gene space with multiple layers
- ScMatrix: Expression matrix storage
- ProvenanceLog: Operation audit trail
"""
