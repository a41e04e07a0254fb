"""
reldb - a minimal embeddable relational query engine.

SQL text is parsed with sqlglot, planned into pull-based operator
pipelines and run against multi-version row storage with B+Tree indexes,
under four isolation levels and a durable commit log.
"""

__version__ = "0.1.0"
