"""
Tests package - Test suite for the GitOps operator.

Contains:
- unit/: Unit tests for individual components and lifecycle scenarios
- fixtures/: In-memory Kubernetes API used by the scenario tests
"""
