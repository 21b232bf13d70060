"""Integration test package.

These tests run the full analysis pipeline, from raw study records to
forest plot and publication bias output.  They are pure computation and
need no network access.
"""
