"""Test suite for the meta-analysis engine.

Unit tests cover each engine (effect sizes, pooling, heterogeneity,
forest plot layout, publication bias) and the shared helpers. To run
the tests, execute `pytest` from the project root.
"""
