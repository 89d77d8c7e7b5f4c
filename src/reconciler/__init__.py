"""Reconciliation engine for declarative infrastructure documents.

Builds a dependency graph from a desired-state document, diffs it against
stored actual state, plans batched execution and drives a provisioning
backend until actual state matches the document.
"""
