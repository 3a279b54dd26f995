"""
dbretire
========

Safe, rename-based deprecation of database schema elements with usage
monitoring, alerting and rollback.
"""

__version__ = "0.3.0"
