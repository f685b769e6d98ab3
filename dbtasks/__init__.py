"""
dbtasks - schema migrations and database tasks for SQL databases.
"""

__version__ = "0.1.0"
